"""Step reconciliation engine.

For a given user + date, gathers every raw_step_readings row across the
user's linked accounts and writes one authoritative daily_step_totals row.

Modes:
    daily     No intraday rows exist; the daily aggregates compete directly.
    intraday  At least one intraday row exists; rows are grouped by
              time-of-day and only slots reported by more than one account
              go through the conflict policy.  The total is the sum of the
              resolved slots.

Conflict policy, first match wins:
    1. the user's preferred provider, if it is among the candidates
    2. the most recently synced candidate
    3. the first candidate in input order (account creation, then account id)

The stored total is a materialized cache: reconciling the same readings any
number of times yields the same row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, time
from typing import Iterable
from uuid import UUID

from stepsync.steps.base import DailyTotal, Granularity, RawReading, utc_now
from stepsync.steps.errors import DuplicateRowError
from stepsync.steps.store import StepStore

logger = logging.getLogger("stepsync.steps.reconcile")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class SlotResolution:
    """Winner of one time slot (or of the whole day in daily mode).

    Attributes:
        time_of_day: Slot start, None in daily mode.
        winner:      The reading whose value is used.
        candidates:  Number of accounts that reported this slot.
        rule:        Which conflict rule picked the winner
                     ('single', 'preferred', 'recency', 'order').
    """

    time_of_day: time | None
    winner: RawReading
    candidates: int = 1
    rule: str = "single"


@dataclass
class ReconcileOutcome:
    """Everything ``compute_daily_total`` decided for one user+date."""

    user_id: UUID
    date: date
    mode: Granularity
    steps: int
    primary_account_id: UUID | None
    slots: list[SlotResolution] = field(default_factory=list)

    @property
    def conflicts(self) -> int:
        return sum(1 for s in self.slots if s.candidates > 1)

    @property
    def rules_applied(self) -> dict[str, int]:
        """How many contested slots each conflict rule decided."""
        counts: dict[str, int] = {}
        for s in self.slots:
            if s.candidates > 1:
                counts[s.rule] = counts.get(s.rule, 0) + 1
        return counts


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def resolve_conflict(
    candidates: list[RawReading],
    preferred_provider: str | None = None,
) -> tuple[RawReading, str]:
    """Pick the winning reading among ``candidates`` for the same slot.

    Returns:
        (winner, rule) where rule names the policy step that decided.

    Raises:
        ValueError: If ``candidates`` is empty.
    """
    if not candidates:
        raise ValueError("resolve_conflict needs at least one candidate")
    if len(candidates) == 1:
        return candidates[0], "single"

    if preferred_provider:
        for reading in candidates:
            if reading.provider == preferred_provider:
                return reading, "preferred"

    latest = max(r.synced_at for r in candidates)
    recent = [r for r in candidates if r.synced_at == latest]
    if len(recent) < len(candidates):
        # max() keeps the first of equal elements, preserving input order
        return recent[0], "recency"

    return candidates[0], "order"


def merge_intraday(
    readings: Iterable[RawReading],
    preferred_provider: str | None = None,
) -> list[SlotResolution]:
    """Resolve intraday readings slot by slot.

    Slots with a single contributing account are kept as-is, so samples
    from different providers at different times are all summed.
    """
    slots: dict[time, list[RawReading]] = {}
    for reading in readings:
        if reading.granularity != Granularity.intraday or reading.time_of_day is None:
            continue
        slots.setdefault(reading.time_of_day, []).append(reading)

    resolved: list[SlotResolution] = []
    for slot_time in sorted(slots):
        candidates = slots[slot_time]
        winner, rule = resolve_conflict(candidates, preferred_provider)
        resolved.append(
            SlotResolution(
                time_of_day=slot_time,
                winner=winner,
                candidates=len(candidates),
                rule=rule,
            )
        )
    return resolved


def compute_daily_total(
    user_id: UUID,
    target_date: date,
    readings: list[RawReading],
    preferred_provider: str | None = None,
) -> ReconcileOutcome | None:
    """Compute the daily total for ``readings`` without touching storage.

    Returns None if there are no readings at all.
    """
    if not readings:
        return None

    has_intraday = any(r.granularity == Granularity.intraday for r in readings)

    if has_intraday:
        slots = merge_intraday(readings, preferred_provider)
        steps = sum(s.winner.steps for s in slots)
        # Provenance is the account that reported the latest slot of the day
        primary = slots[-1].winner.account_id if slots else None
        return ReconcileOutcome(
            user_id=user_id,
            date=target_date,
            mode=Granularity.intraday,
            steps=steps,
            primary_account_id=primary,
            slots=slots,
        )

    daily = [r for r in readings if r.granularity == Granularity.daily]
    winner, rule = resolve_conflict(daily, preferred_provider)
    return ReconcileOutcome(
        user_id=user_id,
        date=target_date,
        mode=Granularity.daily,
        steps=winner.steps,
        primary_account_id=winner.account_id,
        slots=[SlotResolution(time_of_day=None, winner=winner, candidates=len(daily), rule=rule)],
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ReconciliationEngine:
    """Recompute and persist DailyTotal rows from stored readings.

    Call ``reconcile`` after any write to raw_step_readings for a user+date.
    """

    def __init__(self, store: StepStore) -> None:
        self._store = store

    async def reconcile(self, user_id: UUID, target_date: date) -> DailyTotal | None:
        """Recompute the user's total for ``target_date`` and upsert it.

        Returns the stored DailyTotal, or None if the user has no readings
        for that date (nothing is written).
        """
        readings = await self._store.fetch_readings(user_id, target_date)
        if not readings:
            logger.debug("No readings for user %s on %s", user_id, target_date)
            return None

        preferred = await self._store.get_preferred_provider(user_id)
        outcome = compute_daily_total(user_id, target_date, readings, preferred)
        if outcome is None:
            return None

        if outcome.conflicts:
            logger.info(
                "Resolved %d conflicting slot(s) for user %s on %s (%s mode): %s",
                outcome.conflicts,
                user_id,
                target_date,
                outcome.mode.value,
                outcome.rules_applied,
            )

        total = DailyTotal(
            user_id=user_id,
            date=target_date,
            steps=outcome.steps,
            primary_account_id=outcome.primary_account_id,
            updated_at=utc_now(),
        )
        await self._upsert(total)
        return total

    async def reconcile_many(self, user_id: UUID, dates: Iterable[date]) -> list[DailyTotal]:
        """Reconcile each distinct date once, in chronological order."""
        results: list[DailyTotal] = []
        for target_date in sorted(set(dates)):
            total = await self.reconcile(user_id, target_date)
            if total is not None:
                results.append(total)
        return results

    async def _upsert(self, total: DailyTotal) -> None:
        existing = await self._store.get_daily_total(total.user_id, total.date)
        if existing is not None:
            await self._store.update_daily_total(total)
            return

        try:
            await self._store.insert_daily_total(total)
        except DuplicateRowError:
            # A concurrent reconcile inserted first; last writer wins
            logger.info(
                "Concurrent insert for user %s on %s, updating instead",
                total.user_id,
                total.date,
            )
            await self._store.update_daily_total(total)
