"""Aggregation and the exposed cost-monitoring operations."""
