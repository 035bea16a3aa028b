"""Minimal cron-subset evaluator.

Only two cadences are recognized: a ``*`` minute field means every minute,
anything else means hourly. This is not general cron.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from foreman.core.errors import ScheduleError

EVERY_MINUTE = timedelta(minutes=1)
HOURLY = timedelta(hours=1)


def validate_expression(expression: str) -> list[str]:
    """Split an expression into fields, rejecting empty ones."""
    fields = expression.split()
    if not fields:
        raise ScheduleError(
            "Cron expression must not be empty",
            {"cron_expression": expression},
        )
    return fields


def calculate_next_run(expression: str, after: datetime) -> datetime:
    """Next run time strictly after ``after``."""
    fields = validate_expression(expression)
    interval = EVERY_MINUTE if fields[0] == "*" else HOURLY
    return after + interval


__all__ = ["EVERY_MINUTE", "HOURLY", "calculate_next_run", "validate_expression"]
