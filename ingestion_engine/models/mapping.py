"""
Table mapping model: a named, reusable source-to-target column mapping.
"""
import uuid
from sqlalchemy import Column, String, DateTime, Boolean, JSON, Uuid, func
from sqlalchemy.orm import relationship

from ingestion_engine.db.base import Base


class TableMapping(Base):
    """
    Persisted mapping between a source (table, join set or file) and a target.

    ``source`` and ``target`` hold serialized ``SourceDescriptor`` documents,
    ``column_mappings`` the ordered list of column mappings and ``config`` the
    per-mapping ingestion configuration. Ad hoc mappings are created on the fly
    by one-shot import/export requests and are hidden from listings.
    """
    __tablename__ = "table_mappings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    source = Column(JSON, nullable=False)
    target = Column(JSON, nullable=False)
    column_mappings = Column(JSON, nullable=False)
    config = Column(JSON, nullable=False)
    adhoc = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    jobs = relationship("IngestionJob", back_populates="mapping", cascade="all, delete-orphan")
