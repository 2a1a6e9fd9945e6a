"""Frequency aliases for user-facing schedules.

Backup and task definitions may carry either a literal cron expression or
one of the names below. Anything that is not an alias is passed through
untouched; the trigger parser in the dispatch guard decides whether it is
valid, so custom expressions are never rejected here.
"""

from types import MappingProxyType
from typing import Mapping

FREQUENCY_ALIASES: Mapping[str, str] = MappingProxyType({
    "every_minute": "* * * * *",
    "every_five_minutes": "*/5 * * * *",
    "every_ten_minutes": "*/10 * * * *",
    "every_fifteen_minutes": "*/15 * * * *",
    "every_thirty_minutes": "*/30 * * * *",
    "hourly": "0 * * * *",
    "daily": "0 0 * * *",
    "weekly": "0 0 * * 0",
    "monthly": "0 0 1 * *",
    "yearly": "0 0 1 1 *",
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 * *",
    "@yearly": "0 0 1 1 *",
})


def is_alias(value: str) -> bool:
    """Check whether a frequency string is a known alias."""
    return value.strip() in FREQUENCY_ALIASES


def resolve(frequency_or_alias: str) -> str:
    """Translate a frequency alias into its cron expression.

    Args:
        frequency_or_alias: Alias name or literal cron expression

    Returns:
        The mapped expression for an alias, otherwise the input unchanged
        (minus surrounding whitespace)
    """
    value = frequency_or_alias.strip()
    return FREQUENCY_ALIASES.get(value, value)
