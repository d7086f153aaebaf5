"""
Tally Sync - Tally XML to PostgreSQL synchronization.

Pulls master and transaction data from TallyPrime over its HTTP XML
interface, normalizes the several response layouts Tally produces, and
upserts the records into PostgreSQL scoped by company and division.

Key Features:
- Declarative table catalogue (tables.yaml) driving generated TDL exports
- Full and AlterID-based incremental sync
- Batched idempotent upserts with per-batch retry and isolation
- Structured per-table results instead of exceptions

Usage:
    # Incremental sync (default)
    python -m tally_sync

    # Full sync of specific tables
    python -m tally_sync --mode full --tables ledgers vouchers

    # HTTP API
    python -m tally_sync --serve
"""

__version__ = "1.0.0"

from .config import SyncConfig
from .sync import TallySync, run_sync

__all__ = ["SyncConfig", "TallySync", "run_sync", "__version__"]
