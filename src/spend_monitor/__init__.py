"""
Multi-Cloud Spend Monitor

Normalizes spending data from AWS, Azure, and GCP billing backends into a
single cost model and evaluates budget, spike, and summary alert rules
against it on a fixed schedule.
"""

__version__ = "1.0.0"
__author__ = "Spend Monitor Team"
