"""
Autoreach - Cron Occurrences
Next-run computation for follow-up tasks scheduled in cron mode.

Accepted grammar:
  - standard 5-field expressions ("0 9 * * MON")
  - 6-field expressions with a leading seconds field ("30 0 9 * * MON")
  - descriptors: @yearly @annually @monthly @weekly @daily @midnight @hourly
  - fixed intervals: "@every 1h30m"
"""
import re
import logging
from datetime import datetime, timedelta
from croniter import croniter
from autoreach.errors import InvalidRequestError

logger = logging.getLogger(__name__)

DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_EVERY_PART = re.compile(r"(\d+)([hms])")
_EVERY_UNITS = {"h": "hours", "m": "minutes", "s": "seconds"}


def parse_every(duration: str) -> timedelta:
    """Duration of an @every descriptor, e.g. "1h30m" or "45s"."""
    text = (duration or "").strip().lower()
    parts = _EVERY_PART.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise InvalidRequestError(f"Invalid @every duration: {duration!r}")
    delta = timedelta()
    try:
        for amount, unit in parts:
            delta += timedelta(**{_EVERY_UNITS[unit]: int(amount)})
    except OverflowError as e:
        raise InvalidRequestError(f"@every duration is out of range: {duration!r}") from e
    if delta <= timedelta():
        raise InvalidRequestError(f"@every duration must be positive: {duration!r}")
    return delta


def to_croniter_expression(expression: str) -> str:
    """croniter keeps seconds in the last field, so a seconds-first expression is rotated."""
    fields = expression.split()
    if len(fields) == 5:
        return " ".join(fields).lower()
    if len(fields) == 6:
        return " ".join(fields[1:] + fields[:1]).lower()
    raise InvalidRequestError(f"Invalid cron expression: {expression}")


def next_occurrence(expression: str, now: datetime) -> datetime:
    """First time strictly after `now` that satisfies the expression."""
    expr = (expression or "").strip()
    if not expr:
        raise InvalidRequestError("cron expression is required")

    lowered = expr.lower()
    if lowered.startswith("@every"):
        delta = parse_every(expr[len("@every"):])
        try:
            return now + delta
        except OverflowError as e:
            raise InvalidRequestError(f"Cron expression has no future occurrence: {expression}") from e
    if expr.startswith("@"):
        if lowered not in DESCRIPTORS:
            raise InvalidRequestError(f"Unknown cron descriptor: {expr}")
        cron_expr = DESCRIPTORS[lowered]
    else:
        cron_expr = to_croniter_expression(expr)

    if not croniter.is_valid(cron_expr):
        raise InvalidRequestError(f"Invalid cron expression: {expression}")
    try:
        nxt = croniter(cron_expr, now).get_next(datetime)
    except (ValueError, KeyError, OverflowError) as e:
        # CroniterBadDateError: the fields can never line up (e.g. Feb 31)
        raise InvalidRequestError(f"Cron expression has no future occurrence: {expression}") from e

    if nxt <= now:
        raise InvalidRequestError(f"Cron expression has no future occurrence: {expression}")
    logger.debug(f"Cron {expression!r} next after {now.isoformat()}: {nxt.isoformat()}")
    return nxt
