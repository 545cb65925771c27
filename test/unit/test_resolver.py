"""Tests for backend selection."""

import pytest
from structlog.testing import capture_logs

from pydynastore.resolver import Backend, resolve_backend


class TestOverride:
    """Test that the explicit override decides when present."""

    @pytest.mark.parametrize("override", ["test", "mock", "memory", "TEST", " Mock "])
    def test_emulated_overrides(self, override: str) -> None:
        assert resolve_backend(override, "prod") is Backend.EMULATED

    @pytest.mark.parametrize("override", ["prod", "production", "PROD"])
    def test_networked_overrides(self, override: str) -> None:
        assert resolve_backend(override, "dev") is Backend.NETWORKED

    def test_unknown_override_defers_to_stage(self) -> None:
        with capture_logs() as logs:
            backend = resolve_backend("staging-ish", "dev")

        assert backend is Backend.EMULATED
        assert logs == [
            {
                "event": "unknown_backend_override",
                "log_level": "warning",
                "override": "staging-ish",
            }
        ]

    def test_unknown_override_without_stage_is_networked(self) -> None:
        with capture_logs() as logs:
            backend = resolve_backend("qa", None)

        assert backend is Backend.NETWORKED
        assert [log["event"] for log in logs] == ["unknown_backend_override", "no_backend_signal"]

    def test_unknown_override_and_unknown_stage_is_networked(self) -> None:
        with capture_logs() as logs:
            backend = resolve_backend("qa", "sandbox")

        assert backend is Backend.NETWORKED
        assert [log["event"] for log in logs] == ["unknown_backend_override", "unknown_stage"]

    def test_blank_override_is_ignored(self) -> None:
        assert resolve_backend("  ", "dev") is Backend.EMULATED


class TestStage:
    """Test stage-based selection when no override is given."""

    @pytest.mark.parametrize("stage", ["dev", "development", "test", "Dev"])
    def test_emulated_stages(self, stage: str) -> None:
        assert resolve_backend(None, stage) is Backend.EMULATED

    @pytest.mark.parametrize("stage", ["staging", "prod", "production"])
    def test_networked_stages(self, stage: str) -> None:
        assert resolve_backend(None, stage) is Backend.NETWORKED

    def test_unknown_stage_falls_back_to_networked(self) -> None:
        with capture_logs() as logs:
            backend = resolve_backend(None, "qa")

        assert backend is Backend.NETWORKED
        assert logs[0]["event"] == "unknown_stage"
        assert logs[0]["stage"] == "qa"


class TestNoSignal:
    """Test the default when neither signal is set."""

    def test_defaults_to_networked(self) -> None:
        with capture_logs() as logs:
            backend = resolve_backend(None, None)

        assert backend is Backend.NETWORKED
        assert logs == [
            {"event": "no_backend_signal", "log_level": "warning", "backend": "networked"}
        ]

    def test_is_deterministic(self) -> None:
        results = {resolve_backend("mock", "prod") for _ in range(10)}

        assert results == {Backend.EMULATED}
