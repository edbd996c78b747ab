"""Materiality threshold for proposed value changes.

A change auto-passes review only when it is below both the absolute (USD)
limit and the relative (percent) limit. A change from a zero or negative
baseline counts as a 100% change.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

DEFAULT_USD_LIMIT = 5000.0
DEFAULT_PERCENT_LIMIT = 10.0

# Keys in the system_settings table
USD_LIMIT_KEY = "approvalThresholdUsd"
PERCENT_LIMIT_KEY = "approvalThresholdPercent"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThresholdSettings:
    usd_limit: float = DEFAULT_USD_LIMIT
    percent_limit: float = DEFAULT_PERCENT_LIMIT

    @classmethod
    def from_values(
        cls,
        usd_limit: Any = None,
        percent_limit: Any = None,
        *,
        defaults: Optional["ThresholdSettings"] = None,
    ) -> "ThresholdSettings":
        """Build settings from stored values, falling back per field when unset."""
        defaults = defaults or cls()
        return cls(
            usd_limit=_coerce(usd_limit, defaults.usd_limit),
            percent_limit=_coerce(percent_limit, defaults.percent_limit),
        )


def _coerce(value: Any, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric threshold %r, using %s", value, default)
        return default


def change_percent(old_value: float, new_value: float) -> float:
    change_amount = abs(new_value - old_value)
    return (change_amount / old_value) * 100 if old_value > 0 else 100.0


def is_below_threshold(old_value: float, new_value: float, settings: ThresholdSettings) -> bool:
    """True when the change needs no human review."""
    change_amount = abs(new_value - old_value)
    return (
        change_amount < settings.usd_limit
        and change_percent(old_value, new_value) < settings.percent_limit
    )


def requires_review(
    old_value: Optional[float],
    new_value: Optional[float],
    settings: ThresholdSettings,
) -> bool:
    """
    Decide whether a proposed change is material.

    A change without both values has no numeric delta and always needs review.
    """
    if old_value is None or new_value is None:
        return True
    return not is_below_threshold(old_value, new_value, settings)
