"""
Tests for environment configuration, error taxonomy and input schemas.
"""
import pytest

from portfolio_engine.config import EngineSettings, Settings, load_settings_from_env
from portfolio_engine.errors import (
    CrossScopeError,
    DuplicateEdgeError,
    ErrorCode,
    GraphValidationError,
    NotFoundError,
)
from portfolio_engine.models import DependencyImpact, DependencyType
from portfolio_engine.schemas import DependencyCreate, parse_payload


class TestSettings:
    """PORTFOLIO_ENGINE_* variables."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("PORTFOLIO_ENGINE_MAX_TRAVERSAL_DEPTH", raising=False)
        settings = load_settings_from_env()
        assert settings.max_traversal_depth == 20
        assert settings.cache_ttl.total_seconds() == 15 * 60
        assert settings.refresh_critical_flags is True

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("PORTFOLIO_ENGINE_MAX_TRAVERSAL_DEPTH", "50")
        monkeypatch.setenv("PORTFOLIO_ENGINE_CACHE_TTL_MINUTES", "2.5")
        monkeypatch.setenv("PORTFOLIO_ENGINE_REFRESH_CRITICAL_FLAGS", "false")
        settings = load_settings_from_env()
        assert settings.max_traversal_depth == 50
        assert settings.cache_ttl_minutes == 2.5
        assert settings.refresh_critical_flags is False

    @pytest.mark.parametrize("value", ["abc", "0", "-3"])
    def test_invalid_values_ignored(self, monkeypatch, value):
        monkeypatch.setenv("PORTFOLIO_ENGINE_JOB_WORKERS", value)
        assert load_settings_from_env().job_workers == EngineSettings().job_workers

    def test_singleton_reset(self, monkeypatch):
        monkeypatch.setenv("PORTFOLIO_ENGINE_MAX_LAG_DAYS", "30")
        first = Settings.get()
        assert first is Settings.get()
        assert first.max_lag_days == 30

        monkeypatch.setenv("PORTFOLIO_ENGINE_MAX_LAG_DAYS", "60")
        Settings.reset()
        assert Settings.get().max_lag_days == 60


class TestErrors:
    """Codes and categories."""

    def test_codes(self):
        assert NotFoundError("x").code == ErrorCode.NOT_FOUND
        assert CrossScopeError("x").category == ErrorCode.CROSS_SCOPE
        assert DuplicateEdgeError("x").code == ErrorCode.DUPLICATE_EDGE
        assert DuplicateEdgeError("x").category == ErrorCode.VALIDATION
        assert isinstance(DuplicateEdgeError("x"), GraphValidationError)

    def test_to_dict(self):
        payload = NotFoundError("Node n not found", details={"node_id": "n"}).to_dict()
        assert payload == {
            "code": "NOT_FOUND",
            "category": "NOT_FOUND",
            "message": "Node n not found",
            "details": {"node_id": "n"},
        }


class TestSchemas:
    """Pydantic payload validation."""

    def test_parse_dependency(self):
        payload = parse_payload(DependencyCreate, {
            "predecessor_id": "a",
            "successor_id": "b",
            "dependency_type": "START_TO_START",
            "impact": "HIGH",
        })
        assert payload.dependency_type == DependencyType.START_TO_START
        assert payload.impact == DependencyImpact.HIGH
        assert payload.lag_days == 0

    def test_invalid_payload(self):
        with pytest.raises(GraphValidationError) as exc_info:
            parse_payload(DependencyCreate, {"predecessor_id": "a", "successor_id": "b", "lag_days": "soon"})
        assert exc_info.value.details["errors"][0]["field"] == "lag_days"
