"""Feature gate decorator."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

if TYPE_CHECKING:
    from toggle_engine.core.feature_toggles.manager import ToggleManager

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def feature_gate(
    manager: "ToggleManager",
    key: str,
    fallback: Optional[Callable[..., Any]] = None,
) -> Callable[[F], F]:
    """Gate a function behind a feature.

    The manager is passed explicitly; there is no ambient global. When the
    feature is disabled ``fallback`` is called with the same arguments, or
    None is returned.

    Example:
        @feature_gate(manager, "weather_maps", fallback=render_static_map)
        async def render_live_map(location):
            ...
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            if manager.is_feature_enabled(key):
                return await func(*args, **kwargs)
            if fallback is None:
                logger.debug(f"Feature '{key}' is disabled, skipping {func.__name__}")
                return None
            result = fallback(*args, **kwargs)
            if asyncio.iscoroutine(result):
                return await result
            return result

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            if manager.is_feature_enabled(key):
                return func(*args, **kwargs)
            if fallback is None:
                logger.debug(f"Feature '{key}' is disabled, skipping {func.__name__}")
                return None
            return fallback(*args, **kwargs)

        if asyncio.iscoroutinefunction(func):
            return async_wrapper  # type: ignore
        return sync_wrapper  # type: ignore

    return decorator
