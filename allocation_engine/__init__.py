"""
Case Allocation Engine

Assigns delinquent-loan collection cases to agents under capacity and
geography constraints, ingests bulk allocation files and keeps an
auditable ownership history.
"""

__version__ = "1.0.0"
