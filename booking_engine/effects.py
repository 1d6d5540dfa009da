"""
Best-effort side effects.

Work that must never change the outcome of a committed booking operation
(emails, audit entries, housekeeping bookkeeping) runs through
``run_best_effort``: failures are logged and counted, never raised.
"""

from typing import Any, Awaitable, Callable

import structlog
from prometheus_client import Counter

logger = structlog.get_logger(__name__)

SIDE_EFFECTS = Counter(
    "booking_side_effects_total",
    "Best-effort side effects by name and outcome",
    ["effect", "outcome"]  # outcome: success, failure
)


async def run_best_effort(
    effect: str,
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    **kwargs: Any,
) -> Any:
    """
    Await ``func(*args, **kwargs)`` and swallow any failure.

    Returns:
        The function's result, or None if it raised
    """
    try:
        result = await func(*args, **kwargs)
    except Exception as e:
        SIDE_EFFECTS.labels(effect=effect, outcome="failure").inc()
        logger.warning(
            "Side effect failed",
            effect=effect,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True
        )
        return None

    SIDE_EFFECTS.labels(effect=effect, outcome="success").inc()
    return result
