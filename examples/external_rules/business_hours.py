"""
Time-based routing predicates.

Reference them from a rule like::

    {"type": "externalFunction",
     "externalFunction": {"path": "examples/external_rules/business_hours.py",
                          "functionName": "is_business_hours"}}
"""

import logging
from datetime import datetime

logger = logging.getLogger(__name__)

WORK_START_HOUR = 9
WORK_END_HOUR = 18
PEAK_WINDOWS = ((9, 11), (14, 17))


def _now() -> datetime:
    return datetime.now()


def is_business_hours(context, condition, now=None) -> bool:
    """Monday to Friday, 09:00 to 18:00 local time."""
    now = now or _now()
    in_hours = now.weekday() < 5 and WORK_START_HOUR <= now.hour < WORK_END_HOUR
    logger.debug("Business hours check", extra={"hour": now.hour, "weekday": now.weekday(), "result": in_hours})
    return in_hours


def is_peak_hours(context, condition, now=None) -> bool:
    """Morning or afternoon peak."""
    now = now or _now()
    return any(start <= now.hour < end for start, end in PEAK_WINDOWS)


# Picked up when a rule names no function.
default = is_business_hours
