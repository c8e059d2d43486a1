"""
Pydantic schemas for hierarchy requests and responses.
"""
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from hierarchy_auth.features.hierarchy.levels import EntityType


# ============================================================================
# Node Schemas
# ============================================================================

class NodeCreate(BaseModel):
    """Schema for creating a node under an existing parent."""
    entity_type: EntityType = Field(..., description="union, conference, church, team or service")
    name: str = Field(..., min_length=1, max_length=255)
    parent_id: Optional[str] = Field(None, description="Parent node ID (omit for unions)")


class NodeResponse(BaseModel):
    """Schema for node responses."""
    id: str
    entity_type: EntityType
    level: int
    name: str
    parent_id: Optional[str]
    path: str
    version: int

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Move Schemas
# ============================================================================

class MoveRequest(BaseModel):
    """Schema for moving a node and its subtree under a new parent."""
    entity_type: EntityType
    entity_id: str = Field(..., min_length=1)
    new_parent_id: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=1000)


class BatchMoveItem(BaseModel):
    entity_type: EntityType
    entity_id: str = Field(..., min_length=1)
    new_parent_id: str = Field(..., min_length=1)


class BatchMoveRequest(BaseModel):
    """Schema for a batch of independent moves."""
    moves: List[BatchMoveItem] = Field(..., min_length=1, max_length=100)
    reason: Optional[str] = Field(None, max_length=1000)

    @field_validator("moves")
    @classmethod
    def unique_entities(cls, v: List[BatchMoveItem]) -> List[BatchMoveItem]:
        """Each entity may appear once per batch."""
        ids = [item.entity_id for item in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Each entity may only be moved once per batch")
        return v


class PathChangeResponse(BaseModel):
    node_id: str
    entity_type: EntityType
    old_path: str
    new_path: str

    model_config = ConfigDict(from_attributes=True)


class MoveResponse(BaseModel):
    """Schema for a completed move."""
    entity_id: str
    entity_type: EntityType
    old_parent_id: Optional[str]
    new_parent_id: str
    old_path: str
    new_path: str
    changes: List[PathChangeResponse] = []

    model_config = ConfigDict(from_attributes=True)


class BatchMoveItemResponse(BaseModel):
    entity_id: str
    success: bool
    result: Optional[MoveResponse] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class BatchMoveResponse(BaseModel):
    successful: int
    failed: int
    items: List[BatchMoveItemResponse] = []

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Maintenance Schemas
# ============================================================================

class RebuildRequest(BaseModel):
    dry_run: bool = Field(False, description="Compute changes without writing them")


class NodeIssueResponse(BaseModel):
    node_id: str
    entity_type: str
    error: str

    model_config = ConfigDict(from_attributes=True)


class RebuildResponse(BaseModel):
    """Schema for a path rebuild report."""
    processed: int
    updated: int
    dry_run: bool
    errors: List[NodeIssueResponse] = []
    changes: List[PathChangeResponse] = []

    model_config = ConfigDict(from_attributes=True)


class IntegrityResponse(BaseModel):
    """Schema for a path integrity report."""
    checked: int
    is_valid: bool
    invalid_paths: List[NodeIssueResponse] = []
    depth_mismatches: List[NodeIssueResponse] = []
    level_mismatches: List[NodeIssueResponse] = []
    missing_parents: List[NodeIssueResponse] = []
    prefix_mismatches: List[NodeIssueResponse] = []
    circular_paths: List[NodeIssueResponse] = []

    model_config = ConfigDict(from_attributes=True)
