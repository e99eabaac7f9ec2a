"""
Storage and chain access services used by the indexer.
"""
