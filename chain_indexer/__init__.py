"""
Incremental chain-event indexer.

Scans (network, contract, event-schema) sources for confirmed log events,
stores each log exactly once and drives business handlers from the stored
records, with a bounded retry sweep for handler failures.
"""

__version__ = "0.1.0"
