"""
FundSync Core Package

Resumable, time-budgeted ingestion of company fundamentals from several
rate-limited providers into one consolidated record per ticker and year.
"""

__version__ = "0.1.0"
__author__ = "FundSync Team"
