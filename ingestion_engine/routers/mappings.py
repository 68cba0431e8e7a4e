"""
Mapping CRUD router.
"""
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status

from ingestion_engine.core.deps import get_registry
from ingestion_engine.schemas.mapping import MappingCreate, MappingOut, MappingUpdate
from ingestion_engine.services.mapping_registry import MappingRegistry

router = APIRouter(prefix="/mappings", tags=["mappings"])


@router.get("", response_model=List[MappingOut])
def list_mappings(
    include_adhoc: bool = False,
    registry: MappingRegistry = Depends(get_registry),
):
    """Saved mappings, newest first. Ad hoc import/export mappings are hidden unless asked for."""
    return registry.list(include_adhoc=include_adhoc)


@router.post("", response_model=MappingOut, status_code=status.HTTP_201_CREATED)
def create_mapping(
    payload: MappingCreate,
    registry: MappingRegistry = Depends(get_registry),
):
    """
    Save a mapping.

    Every column mapping that declares a ``sourceType`` must be compatible
    with its ``targetType``; incompatible pairs are rejected with 400.
    """
    return registry.create(payload)


@router.get("/{mapping_id}", response_model=MappingOut)
def get_mapping(
    mapping_id: UUID,
    registry: MappingRegistry = Depends(get_registry),
):
    return registry.get(mapping_id)


@router.put("/{mapping_id}", response_model=MappingOut)
def update_mapping(
    mapping_id: UUID,
    payload: MappingUpdate,
    registry: MappingRegistry = Depends(get_registry),
):
    return registry.update(mapping_id, payload)


@router.delete("/{mapping_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_mapping(
    mapping_id: UUID,
    registry: MappingRegistry = Depends(get_registry),
):
    registry.delete(mapping_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
