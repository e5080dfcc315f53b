"""
Error taxonomy for graph mutations and queries.

Every interactive failure carries an ErrorCode so the host request layer can
map it onto its own transport (404, 400, 409...).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    SELF_DEPENDENCY = "SELF_DEPENDENCY"
    DUPLICATE_EDGE = "DUPLICATE_EDGE"
    CIRCULAR_DEPENDENCY = "CIRCULAR_DEPENDENCY"
    CROSS_SCOPE = "CROSS_SCOPE"
    COMPUTATION_TIMEOUT = "COMPUTATION_TIMEOUT"  # logged only, never raised


_VALIDATION_CODES = {ErrorCode.VALIDATION, ErrorCode.SELF_DEPENDENCY, ErrorCode.DUPLICATE_EDGE}


class GraphEngineError(Exception):
    """Base error raised by the relationship and dependency engine."""

    code: ErrorCode = ErrorCode.VALIDATION

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    @property
    def category(self) -> ErrorCode:
        """Coarse taxonomy bucket (self-dependency and duplicates are validation errors)."""
        if self.code in _VALIDATION_CODES:
            return ErrorCode.VALIDATION
        return self.code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(GraphEngineError):
    """Raised when a node, edge or program does not exist."""
    code = ErrorCode.NOT_FOUND


class GraphValidationError(GraphEngineError):
    """Raised on invalid input (out of range lag, bad patch, tree violations)."""
    code = ErrorCode.VALIDATION


class SelfDependencyError(GraphValidationError):
    code = ErrorCode.SELF_DEPENDENCY


class DuplicateEdgeError(GraphValidationError):
    code = ErrorCode.DUPLICATE_EDGE


class CircularDependencyError(GraphEngineError):
    """Raised when a mutation would close a loop in an acyclic subgraph."""
    code = ErrorCode.CIRCULAR_DEPENDENCY


class CrossScopeError(GraphEngineError):
    """Raised when an edge would join nodes owned by different tenants."""
    code = ErrorCode.CROSS_SCOPE
