from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from tzlocal import get_localzone

from agent_scheduler.models import AtSchedule, CronSchedule, EverySchedule, ScheduleDescriptor
from agent_scheduler.util import parse_iso_ms

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def host_timezone() -> tzinfo:
    """IANA zone of the host, so DST transitions apply to local crons."""
    return get_localzone()


def resolve_cron_timezone(tz: str | None) -> tzinfo:
    """Zone for evaluating a cron expression; blank or missing means host-local.

    Raises ``ZoneInfoNotFoundError`` (or ``ValueError`` for malformed keys)
    when the name is not a known IANA zone.
    """
    trimmed = tz.strip() if isinstance(tz, str) else ""
    if trimmed:
        return ZoneInfo(trimmed)
    return host_timezone()


def _to_ms(value: datetime) -> int:
    return (value - _EPOCH) // _ONE_MS


def _from_ms(value: int, tz: tzinfo) -> datetime:
    return (_EPOCH + timedelta(milliseconds=value)).astimezone(tz)


def _cron_next_ms(expr: str, tz: tzinfo, after_ms: int) -> int | None:
    try:
        next_dt = croniter(expr, _from_ms(after_ms, tz)).get_next(datetime)
    except (ValueError, KeyError, OverflowError) as exc:
        logger.debug("Cron evaluation failed for %r: %s", expr, exc)
        return None
    if next_dt.tzinfo is None:
        next_dt = next_dt.replace(tzinfo=tz)
    return _to_ms(next_dt)


def _compute_cron(schedule: CronSchedule, now_ms: int) -> int | None:
    expr = schedule.expr.strip()
    if not expr:
        return None

    try:
        tz = resolve_cron_timezone(schedule.tz)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown cron timezone: %r", schedule.tz)
        return None

    next_ms = _cron_next_ms(expr, tz, now_ms)
    if next_ms is None:
        return None
    if next_ms > now_ms:
        return next_ms

    # Evaluators can hand back "now" on an exact second boundary; retry from
    # the next whole second so a job never refires on the same instant.
    next_second_ms = (now_ms // 1000) * 1000 + 1000
    retry_ms = _cron_next_ms(expr, tz, next_second_ms)
    if retry_ms is not None and retry_ms > now_ms:
        return retry_ms
    return None


def _compute_every(schedule: EverySchedule, now_ms: int) -> int:
    every_ms = max(1, int(schedule.every_ms))
    anchor = schedule.anchor_ms if schedule.anchor_ms is not None else now_ms
    anchor = max(0, int(anchor))
    if now_ms < anchor:
        return anchor
    elapsed = now_ms - anchor
    steps = max(1, (elapsed + every_ms - 1) // every_ms)
    return anchor + steps * every_ms


def compute_next_run_at_ms(schedule: ScheduleDescriptor, now_ms: int) -> int | None:
    """Next execution instant for ``schedule`` relative to ``now_ms``, or None.

    Invalid schedules (unparsable instants, empty or malformed cron
    expressions, unknown zones) yield None instead of raising.
    """
    if isinstance(schedule, AtSchedule):
        at_ms = parse_iso_ms(schedule.at)
        if at_ms is None:
            return None
        return at_ms if at_ms > now_ms else None

    if isinstance(schedule, EverySchedule):
        return _compute_every(schedule, now_ms)

    if isinstance(schedule, CronSchedule):
        return _compute_cron(schedule, now_ms)

    return None
