"""
license-sync - External License Reconciliation Engine

Keeps the internal license ledger consistent with a third-party license
API while detecting and consolidating duplicate business entities across
both systems.
"""

__version__ = "0.1.0"
