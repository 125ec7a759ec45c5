"""Cron expressions of integrations and the Celery beat entries built from them."""

import logging
import re

from celery.schedules import crontab

logger = logging.getLogger(__name__)

SYNC_TASK_NAME = "parksync.tasks.integrations.sync_integration"

_STEP_GAP = re.compile(r"\*\s+/(\d+)")
_FIELD = re.compile(r"^(\*|\d+(-\d+)?)(/\d+)?(,(\*|\d+(-\d+)?)(/\d+)?)*$")
_FIELD_RANGES = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 7))


def normalize_cron(expression: str) -> str:
    """Return a five field cron expression or raise ``ValueError``.

    Accepts the shapes operators type into the admin form: a four field
    expression gets ``*`` appended for day-of-week and ``* /5`` is read
    as ``*/5``.
    """
    if not expression or not expression.strip():
        raise ValueError("Cron expression is empty")
    text = _STEP_GAP.sub(r"*/\1", expression.strip())
    parts = text.split()
    if len(parts) == 4:
        parts.append("*")
    if len(parts) != 5:
        raise ValueError(f"Cron expression must have 5 fields: {expression!r}")
    for part, (low, high) in zip(parts, _FIELD_RANGES):
        if not _FIELD.match(part):
            raise ValueError(f"Invalid cron field {part!r} in {expression!r}")
        for number in re.findall(r"\d+", part.split("/")[0]):
            if not low <= int(number) <= high:
                raise ValueError(f"Cron value {number} out of range in {expression!r}")
    return " ".join(parts)


def crontab_for(expression: str) -> crontab:
    minute, hour, day_of_month, month_of_year, day_of_week = normalize_cron(expression).split()
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


def build_beat_schedule(integrations) -> dict:
    schedule = {}
    for integration in integrations:
        if not integration.schedule or not integration.is_active:
            continue
        try:
            entry_schedule = crontab_for(integration.schedule)
        except ValueError as exc:
            logger.warning(
                "ERP_SYNC_SCHEDULE_INVALID integration_id=%s error=%s", integration.id, exc
            )
            continue
        schedule[f"erp-sync-{integration.id}"] = {
            "task": SYNC_TASK_NAME,
            "schedule": entry_schedule,
            "args": [str(integration.id)],
            "kwargs": {"trigger": "cron"},
        }
    return schedule
