"""
Scripts Package.

Operational scripts for the indexer.

Scripts:
- run_continuous_sync: Run a sync session for one contract
"""
