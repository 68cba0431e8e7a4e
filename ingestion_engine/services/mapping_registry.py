"""
Mapping registry: persistence and validation of table mappings and their
ingestion configuration.
"""
import logging
from typing import List
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ingestion_engine.core.errors import (
    IncompatibleMapping,
    IncompleteJoinGraph,
    InvalidJoinCondition,
    InvalidRequest,
    InvalidStateTransition,
    MappingNotFound,
)
from ingestion_engine.models.ingestion_job import ACTIVE_STATES, IngestionJob
from ingestion_engine.models.mapping import TableMapping
from ingestion_engine.schemas.connection import SourceDescriptor
from ingestion_engine.schemas.ingestion import IngestionConfig
from ingestion_engine.schemas.mapping import ColumnMappingIn, MappingCreate, MappingOut, MappingUpdate
from ingestion_engine.services.transformations import available_transformations, is_known
from ingestion_engine.services.type_mapping import compatible

logger = logging.getLogger(__name__)


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


def _redacted(descriptor: SourceDescriptor) -> SourceDescriptor:
    config = descriptor.connection_config
    if config.password is None:
        return descriptor
    return descriptor.model_copy(
        update={"connection_config": config.model_copy(update={"password": None})}
    )


def _keep_password(new: SourceDescriptor, old: SourceDescriptor) -> SourceDescriptor:
    """Clients never see stored passwords, so an update without one keeps the old one."""
    if new.connection_config.password is not None or old.connection_config.password is None:
        return new
    config = new.connection_config.model_copy(update={"password": old.connection_config.password})
    return new.model_copy(update={"connection_config": config})


def validate_descriptor(descriptor: SourceDescriptor, role: str) -> None:
    """Static checks that need no connection; joins are fully validated when composed."""
    if not descriptor.tables and not descriptor.table and not descriptor.connection_config.file_ref:
        raise InvalidRequest(f"The {role} names no table or file")
    if len(descriptor.tables) > 1 and not descriptor.join_conditions:
        raise IncompleteJoinGraph(
            f"The {role} declares {len(descriptor.tables)} tables but no join conditions"
        )
    aliases = {selection.effective_alias for selection in descriptor.tables}
    for cond in descriptor.join_conditions:
        for alias in (cond.left_alias, cond.right_alias):
            if alias not in aliases:
                raise InvalidJoinCondition(f"Join condition references undeclared alias '{alias}'")


def validate_column_mappings(mappings: List[ColumnMappingIn]) -> None:
    """
    Gate mapping creation on schema compatibility.

    Raises:
        IncompatibleMapping: duplicate target column, unknown transformation,
            or a declared source type incompatible with its target type
    """
    problems = []
    seen = set()
    for m in mappings:
        if m.target_column in seen:
            problems.append(f"target column '{m.target_column}' is mapped twice")
        seen.add(m.target_column)
        if not is_known(m.transformation):
            problems.append(
                f"unknown transformation '{m.transformation}' on '{m.source_column}' "
                f"(available: {', '.join(available_transformations())})"
            )
        if m.source_type and not compatible(m.source_type, m.target_type):
            problems.append(f"'{m.source_column}' ({m.source_type}) cannot map to {m.target_type}")
    if problems:
        raise IncompatibleMapping("Invalid column mappings: " + "; ".join(problems))


def mapping_out(mapping: TableMapping) -> MappingOut:
    return MappingOut(
        id=mapping.id,
        name=mapping.name,
        source=_redacted(SourceDescriptor.model_validate(mapping.source)),
        target=_redacted(SourceDescriptor.model_validate(mapping.target)),
        mappings=[ColumnMappingIn.model_validate(raw) for raw in mapping.column_mappings],
        config=IngestionConfig.model_validate(mapping.config or {}),
        created_at=mapping.created_at,
        updated_at=mapping.updated_at,
    )


class MappingRegistry:
    """CRUD over saved mappings."""

    def __init__(self, db: Session):
        self.db = db

    def _get(self, mapping_id: UUID) -> TableMapping:
        mapping = self.db.get(TableMapping, mapping_id)
        if mapping is None:
            raise MappingNotFound(f"Mapping not found: {mapping_id}")
        return mapping

    def _has_active_job(self, mapping_id: UUID) -> bool:
        stmt = select(IngestionJob.id).where(
            IngestionJob.mapping_id == mapping_id,
            IngestionJob.state.in_(ACTIVE_STATES),
        ).limit(1)
        return self.db.execute(stmt).scalar_one_or_none() is not None

    def list(self, include_adhoc: bool = False) -> List[MappingOut]:
        stmt = select(TableMapping).order_by(TableMapping.created_at.desc(), TableMapping.name)
        if not include_adhoc:
            stmt = stmt.where(TableMapping.adhoc.is_(False))
        return [mapping_out(m) for m in self.db.execute(stmt).scalars().all()]

    def get(self, mapping_id: UUID) -> MappingOut:
        return mapping_out(self._get(mapping_id))

    def _create(self, payload: MappingCreate, adhoc: bool) -> TableMapping:
        validate_descriptor(payload.source, "source")
        validate_descriptor(payload.target, "target")
        validate_column_mappings(payload.mappings)
        mapping = TableMapping(
            name=payload.name,
            source=_dump(payload.source),
            target=_dump(payload.target),
            column_mappings=[_dump(m) for m in payload.mappings],
            config=_dump(payload.config),
            adhoc=adhoc,
        )
        self.db.add(mapping)
        self.db.commit()
        self.db.refresh(mapping)
        logger.info("Created %smapping %s (%s)", "ad hoc " if adhoc else "", mapping.id, mapping.name)
        return mapping

    def create(self, payload: MappingCreate) -> MappingOut:
        return mapping_out(self._create(payload, adhoc=False))

    def create_adhoc(self, payload: MappingCreate) -> UUID:
        """Mapping backing a one-shot import or export; hidden from listings."""
        return self._create(payload, adhoc=True).id

    def update(self, mapping_id: UUID, payload: MappingUpdate) -> MappingOut:
        mapping = self._get(mapping_id)
        structural = any(v is not None for v in (payload.source, payload.target, payload.mappings))
        if structural and self._has_active_job(mapping_id):
            raise InvalidStateTransition(
                f"Mapping {mapping_id} has an active job; stop it before changing source, target or columns"
            )
        if payload.name is not None:
            mapping.name = payload.name
        if payload.source is not None:
            source = _keep_password(payload.source, SourceDescriptor.model_validate(mapping.source))
            validate_descriptor(source, "source")
            mapping.source = _dump(source)
        if payload.target is not None:
            target = _keep_password(payload.target, SourceDescriptor.model_validate(mapping.target))
            validate_descriptor(target, "target")
            mapping.target = _dump(target)
        if payload.mappings is not None:
            if not payload.mappings:
                raise IncompatibleMapping("At least one column mapping is required")
            validate_column_mappings(payload.mappings)
            mapping.column_mappings = [_dump(m) for m in payload.mappings]
        if payload.config is not None:
            mapping.config = _dump(payload.config)
        self.db.commit()
        self.db.refresh(mapping)
        return mapping_out(mapping)

    def delete(self, mapping_id: UUID) -> None:
        mapping = self._get(mapping_id)
        if self._has_active_job(mapping_id):
            raise InvalidStateTransition(f"Mapping {mapping_id} has an active job; stop it first")
        self.db.delete(mapping)
        self.db.commit()
        logger.info("Deleted mapping %s", mapping_id)

    def get_config(self, mapping_id: UUID) -> IngestionConfig:
        return IngestionConfig.model_validate(self._get(mapping_id).config or {})

    def update_config(self, mapping_id: UUID, config: IngestionConfig) -> IngestionConfig:
        """Replace the mapping's configuration; running jobs keep the copy they started with."""
        mapping = self._get(mapping_id)
        mapping.config = _dump(config)
        self.db.commit()
        return config

