"""
Pydantic input schemas for graph mutations.

Host request layers hand raw payloads to these models; the engine converts
pydantic errors into GraphValidationError so callers only see one taxonomy.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import GraphValidationError
from .models import (
    DependencyImpact,
    DependencyStatus,
    DependencyType,
    RelationshipType,
)


class DependencyCreate(BaseModel):
    """Payload for a new predecessor/successor edge."""
    predecessor_id: str = Field(..., min_length=1)
    successor_id: str = Field(..., min_length=1)
    dependency_type: DependencyType = DependencyType.FINISH_TO_START
    lag_days: int = Field(default=0, description="Signed lag in days; range checked against settings")
    is_critical: bool = False
    impact: DependencyImpact = DependencyImpact.NONE
    description: Optional[str] = Field(default=None, max_length=2000)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DependencyPatch(BaseModel):
    """Partial update; only fields explicitly set are applied."""
    dependency_type: Optional[DependencyType] = None
    lag_days: Optional[int] = None
    is_critical: Optional[bool] = None
    impact: Optional[DependencyImpact] = None
    status: Optional[DependencyStatus] = None
    description: Optional[str] = Field(default=None, max_length=2000)
    metadata: Optional[Dict[str, Any]] = None


class RelationshipCreate(BaseModel):
    source_id: str = Field(..., min_length=1)
    target_id: str = Field(..., min_length=1)
    relationship_type: RelationshipType
    metadata: Dict[str, Any] = Field(default_factory=dict)


def parse_payload(model_cls, payload: Any):
    """Validate a dict (or pass through a model instance) into model_cls."""
    if isinstance(payload, model_cls):
        return payload
    try:
        return model_cls.model_validate(payload)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        raise GraphValidationError(
            f"Invalid {model_cls.__name__}: {errors[0]['field']} {errors[0]['message']}",
            details={"errors": errors},
        ) from exc
