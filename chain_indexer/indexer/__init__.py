"""
Chain event indexer: pollers, supervisor and business handlers.
"""
