"""
Tests for the mapping registry: validation, persistence and the active-job guard.
"""
import pytest
from uuid import uuid4

from ingestion_engine.core.errors import (
    IncompatibleMapping,
    IncompleteJoinGraph,
    InvalidJoinCondition,
    InvalidRequest,
    InvalidStateTransition,
    MappingNotFound,
)
from ingestion_engine.schemas.connection import (
    ConnectionConfig,
    JoinCondition,
    SourceDescriptor,
    SourceKind,
    TableSelection,
)
from ingestion_engine.schemas.ingestion import IngestionConfig
from ingestion_engine.schemas.mapping import ColumnMappingIn, MappingCreate, MappingUpdate
from ingestion_engine.services.mapping_registry import MappingRegistry, validate_column_mappings


def clickhouse(table="events", password="s3cret"):
    return SourceDescriptor(
        source_type=SourceKind.DATABASE,
        connection_config=ConnectionConfig(host="ch.internal", password=password),
        table=table,
    )


def payload(**overrides):
    data = dict(
        name="events",
        source=clickhouse(),
        target=SourceDescriptor(source_type=SourceKind.FLATFILE, table="events.csv"),
        mappings=[ColumnMappingIn(source_column="id", target_column="id", target_type="Int64", source_type="UInt32")],
    )
    data.update(overrides)
    return MappingCreate(**data)


@pytest.fixture
def registry(db):
    return MappingRegistry(db)


class TestColumnMappingValidation:

    def test_compatible(self):
        validate_column_mappings([
            ColumnMappingIn(source_column="a", target_column="a", target_type="Float64", source_type="Int8"),
            ColumnMappingIn(source_column="b", target_column="b", target_type="Date", source_type="String"),
        ])

    def test_incompatible_types(self):
        with pytest.raises(IncompatibleMapping) as exc:
            validate_column_mappings([
                ColumnMappingIn(source_column="d", target_column="d", target_type="Int64", source_type="Date"),
            ])
        assert "'d' (Date) cannot map to Int64" in exc.value.message

    def test_duplicate_target(self):
        with pytest.raises(IncompatibleMapping):
            validate_column_mappings([
                ColumnMappingIn(source_column="a", target_column="x"),
                ColumnMappingIn(source_column="b", target_column="x"),
            ])

    def test_unknown_transformation(self):
        with pytest.raises(IncompatibleMapping):
            validate_column_mappings([
                ColumnMappingIn(source_column="a", target_column="a", transformation="reverse"),
            ])

    def test_undeclared_source_type_is_not_checked(self):
        validate_column_mappings([ColumnMappingIn(source_column="a", target_column="a", target_type="Int64")])


class TestRegistry:

    def test_create_and_get(self, registry):
        created = registry.create(payload())
        fetched = registry.get(created.id)
        assert fetched.name == "events"
        assert fetched.mappings[0].target_type == "Int64"
        assert fetched.config == IngestionConfig()

    def test_passwords_are_redacted(self, registry):
        created = registry.create(payload())
        assert created.source.connection_config.password is None
        assert created.source.connection_config.host == "ch.internal"

    def test_update_without_password_keeps_it(self, registry, db):
        from ingestion_engine.models.mapping import TableMapping
        created = registry.create(payload())
        registry.update(created.id, MappingUpdate(source=clickhouse(table="events_v2", password=None)))
        stored = db.get(TableMapping, created.id)
        db.refresh(stored)
        assert stored.source["connectionConfig"]["password"] == "s3cret"
        assert stored.source["table"] == "events_v2"

    def test_list_hides_adhoc_mappings(self, registry):
        registry.create(payload(name="saved"))
        registry.create_adhoc(payload(name="one-shot"))
        assert [m.name for m in registry.list()] == ["saved"]
        assert len(registry.list(include_adhoc=True)) == 2

    def test_update_name_and_config(self, registry):
        created = registry.create(payload())
        updated = registry.update(created.id, MappingUpdate(name="renamed", config=IngestionConfig(batch_size=10)))
        assert updated.name == "renamed"
        assert registry.get_config(created.id).batch_size == 10

    def test_update_config(self, registry):
        created = registry.create(payload())
        registry.update_config(created.id, IngestionConfig(error_action="CONTINUE"))
        assert registry.get_config(created.id).error_action.value == "CONTINUE"

    def test_update_rejects_incompatible_mappings(self, registry):
        created = registry.create(payload())
        with pytest.raises(IncompatibleMapping):
            registry.update(created.id, MappingUpdate(mappings=[
                ColumnMappingIn(source_column="d", target_column="d", target_type="Bool", source_type="Date"),
            ]))

    def test_delete(self, registry):
        created = registry.create(payload())
        registry.delete(created.id)
        with pytest.raises(MappingNotFound):
            registry.get(created.id)

    def test_unknown_mapping(self, registry):
        with pytest.raises(MappingNotFound):
            registry.get(uuid4())


class TestDescriptorValidation:

    def test_missing_table(self, registry):
        with pytest.raises(InvalidRequest):
            registry.create(payload(source=SourceDescriptor(source_type=SourceKind.DATABASE)))

    def test_join_without_conditions(self, registry):
        source = SourceDescriptor(
            source_type=SourceKind.DATABASE,
            tables=[TableSelection(table="a"), TableSelection(table="b")],
        )
        with pytest.raises(IncompleteJoinGraph):
            registry.create(payload(source=source))

    def test_condition_on_undeclared_alias(self, registry):
        source = SourceDescriptor(
            source_type=SourceKind.DATABASE,
            tables=[TableSelection(table="a"), TableSelection(table="b")],
            join_conditions=[JoinCondition(left_alias="a", left_column="id", right_alias="c", right_column="id")],
        )
        with pytest.raises(InvalidJoinCondition):
            registry.create(payload(source=source))


class TestActiveJobGuard:
    """Structural changes wait until the mapping's job has finished."""

    @pytest.fixture
    def running_mapping(self, deferred_manager, create_mapping, write_upload, file_descriptor):
        ref = write_upload("a.csv", "a\n1\n")
        mapping_id = create_mapping(file_descriptor(ref), file_descriptor("out.csv"), [("a", "a", "Int64")])
        deferred_manager.start_job(mapping_id)
        return mapping_id

    def test_structural_update_is_rejected(self, registry, running_mapping):
        with pytest.raises(InvalidStateTransition):
            registry.update(running_mapping, MappingUpdate(
                mappings=[ColumnMappingIn(source_column="a", target_column="b")],
            ))

    def test_rename_is_allowed(self, registry, running_mapping):
        assert registry.update(running_mapping, MappingUpdate(name="renamed")).name == "renamed"

    def test_delete_is_rejected(self, registry, running_mapping):
        with pytest.raises(InvalidStateTransition):
            registry.delete(running_mapping)

    def test_allowed_once_the_job_finishes(self, registry, running_mapping, deferred_executor):
        deferred_executor.run_all()
        registry.delete(running_mapping)
