"""Backend selection strategy.

``resolve_backend`` maps the two environment signals to the backend a service
should use. It is a pure function: no state, no environment access, and the
same inputs always give the same answer. An unrecognized override is logged
and ignored; an unrecognized or missing stage falls back to the networked
backend with a warning.

Precedence:
    1. The explicit override ("test", "mock", "memory" -> emulated;
       "prod", "production" -> networked). Other values are skipped.
    2. The deployment stage ("dev", "development", "test" -> emulated;
       "staging", "prod", "production" -> networked).
    3. Networked.
"""

from enum import Enum

from pydynastore.observability import get_logger

logger = get_logger(__name__)


class Backend(str, Enum):
    """The implementation backing a service."""

    NETWORKED = "networked"
    EMULATED = "emulated"


_OVERRIDES: dict[str, Backend] = {
    "test": Backend.EMULATED,
    "mock": Backend.EMULATED,
    "memory": Backend.EMULATED,
    "prod": Backend.NETWORKED,
    "production": Backend.NETWORKED,
}

_STAGES: dict[str, Backend] = {
    "dev": Backend.EMULATED,
    "development": Backend.EMULATED,
    "test": Backend.EMULATED,
    "staging": Backend.NETWORKED,
    "prod": Backend.NETWORKED,
    "production": Backend.NETWORKED,
}


def _normalize(signal: str | None) -> str | None:
    if signal is None:
        return None
    return signal.strip().lower() or None


def resolve_backend(override: str | None, stage: str | None) -> Backend:
    """Decide which backend to construct.

    Args:
        override: The explicit override signal (``CLASS_RESOLVER_OVERRIDE``).
        stage: The deployment stage signal (``APP_ENV``).

    Returns:
        The selected backend.

    Example:
        resolve_backend(None, "dev") == Backend.EMULATED
        resolve_backend("prod", "dev") == Backend.NETWORKED

    """
    normalized_override = _normalize(override)
    if normalized_override is not None:
        backend = _OVERRIDES.get(normalized_override)
        if backend is not None:
            return backend
        logger.warning("unknown_backend_override", override=override)

    normalized_stage = _normalize(stage)
    if normalized_stage is not None:
        backend = _STAGES.get(normalized_stage)
        if backend is None:
            logger.warning(
                "unknown_stage",
                stage=stage,
                backend=Backend.NETWORKED.value,
            )
            return Backend.NETWORKED
        return backend

    logger.warning("no_backend_signal", backend=Backend.NETWORKED.value)
    return Backend.NETWORKED


__all__ = [
    "Backend",
    "resolve_backend",
]
