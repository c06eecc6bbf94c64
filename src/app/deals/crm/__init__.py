"""Persistence gateway layer -- the remote deal store behind the pipeline cache.

Provides the abstract PersistenceGateway interface and its PostgreSQL
implementation:
- PersistenceGateway: fetch_all / update_stage contract consumed by PipelineCache
- PostgresGateway: DealRepository-backed gateway with retry and error translation
"""

from src.app.deals.crm.adapter import PersistenceGateway
from src.app.deals.crm.postgres import PostgresGateway

__all__ = [
    "PersistenceGateway",
    "PostgresGateway",
]
