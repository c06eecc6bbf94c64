"""Deal pipeline module -- data models, persistence, and the stage-partitioned cache.

Provides Pydantic schemas (DealStage, Deal, PipelineStats), SQLAlchemy models
and DealRepository for async CRUD, the PersistenceGateway boundary, and
PipelineCache for optimistic Kanban-style stage moves.
"""
