"""Normalization and calendar utilities for multi-cloud spend monitoring."""
