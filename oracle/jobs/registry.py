"""Job registry mapping job names to async entry points."""

from __future__ import annotations

from collections.abc import Callable

from oracle.core.logging import get_logger


logger = get_logger("jobs.registry")

_registry: dict[str, Callable] = {}


def register_job(name: str) -> Callable:
    """
    Decorator to register a job function.

    Usage:
        @register_job("resolve_expired")
        async def resolve_expired_job() -> str:
            ...
    """

    def decorator(func: Callable) -> Callable:
        _registry[name] = func
        logger.debug(f"Registered job: {name}")
        return func

    return decorator


def get_job(name: str) -> Callable | None:
    """Get a registered job function by name."""
    return _registry.get(name)


def get_all_jobs() -> dict[str, Callable]:
    return _registry.copy()


def list_job_names() -> list[str]:
    return list(_registry.keys())
