"""Target progress state machine.

A Target is always in exactly one of ``behind``, ``on-track`` or ``exceeded``.
The only input is a "deal recorded" event for the target's agent and period:

1. ``current_sales += deal_amount`` and ``current_deals += 1`` (no decrease path)
2. progress ratios are recomputed against ``monthly_target`` and ``deals_target``
3. status: exceeded if either ratio >= 100, on-track if either >= 70, else behind

Every function here is pure and returns new Target values, so a period can be
replayed deterministically from its deal events.
"""

from __future__ import annotations

import calendar
import re
from collections.abc import Iterable
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from src.salesops.records.schemas import Target, TargetStatus

EXCEEDED_THRESHOLD = Decimal("100")
ON_TRACK_THRESHOLD = Decimal("70")

_HUNDRED = Decimal("100")
_ZERO = Decimal("0")

_MONTHS = {name.lower(): index for index, name in enumerate(calendar.month_name) if name}
_MONTHS.update({name.lower(): index for index, name in enumerate(calendar.month_abbr) if name})

_NUMERIC_PERIOD = re.compile(r"^(\d{4})-(\d{1,2})(?:-\d{1,2})?")


# ── Progress ────────────────────────────────────────────────────────────────


def progress_percent(current: Decimal | int, goal: Decimal | int) -> Decimal:
    """Percentage of ``goal`` reached; 0 when the goal is 0."""
    goal = Decimal(goal)
    if goal <= _ZERO:
        return _ZERO
    return Decimal(current) / goal * _HUNDRED


def classify(sales_progress: Decimal, deals_progress: Decimal) -> TargetStatus:
    """Status tier for a pair of progress percentages."""
    if sales_progress >= EXCEEDED_THRESHOLD or deals_progress >= EXCEEDED_THRESHOLD:
        return TargetStatus.EXCEEDED
    if sales_progress >= ON_TRACK_THRESHOLD or deals_progress >= ON_TRACK_THRESHOLD:
        return TargetStatus.ON_TRACK
    return TargetStatus.BEHIND


def recompute(target: Target) -> Target:
    """Return ``target`` with progress ratios and status derived from its counters."""
    sales_progress = progress_percent(target.current_sales, target.monthly_target)
    deals_progress = progress_percent(target.current_deals, target.deals_target)
    return target.model_copy(
        update={
            "sales_progress": round(float(sales_progress), 2),
            "deals_progress": round(float(deals_progress), 2),
            "status": classify(sales_progress, deals_progress),
        }
    )


def apply_deal_event(target: Target, deal_amount: Decimal | int | str) -> Target:
    """Apply one recorded deal to a target and return the new value.

    Raises:
        ValueError: If the amount is negative or not a number.
    """
    try:
        amount = Decimal(str(deal_amount))
    except InvalidOperation:
        raise ValueError(f"deal amount is not a number: {deal_amount!r}") from None
    if not amount.is_finite() or amount < _ZERO:
        raise ValueError(f"deal amount must be a non-negative number: {deal_amount!r}")

    updated = target.model_copy(
        update={
            "current_sales": target.current_sales + amount,
            "current_deals": target.current_deals + 1,
        }
    )
    return recompute(updated)


def replay(target: Target, deal_amounts: Iterable[Decimal | int | str]) -> Target:
    """Fold a sequence of deal events over a target."""
    for amount in deal_amounts:
        target = apply_deal_event(target, amount)
    return target


# ── Periods ─────────────────────────────────────────────────────────────────


def period_of(moment: date | datetime) -> str:
    """Year-month period (``YYYY-MM``) containing ``moment``."""
    return f"{moment.year:04d}-{moment.month:02d}"


def normalize_period(raw: object) -> str | None:
    """Normalize ``2025-01``, ``2025-1``, ``2025-01-15`` or ``January 2025`` to ``YYYY-MM``.

    Returns None when the value cannot be read as a period.
    """
    if isinstance(raw, (date, datetime)):
        return period_of(raw)
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    match = _NUMERIC_PERIOD.match(text)
    if match:
        year, month = int(match.group(1)), int(match.group(2))
        if 1 <= month <= 12:
            return f"{year:04d}-{month:02d}"
        return None

    parts = text.replace(",", " ").split()
    if len(parts) == 2:
        month_name, year_text = parts
        month = _MONTHS.get(month_name.lower())
        if month and year_text.isdigit() and len(year_text) == 4:
            return f"{int(year_text):04d}-{month:02d}"
    return None
