"""Reconciliation ledger: stores pending forecasts and closes them out.

A forecast is recorded as ``pending`` for its target date and later
``completed`` exactly once, when the realized close for that date is known.
All SQL is isolated behind this interface.

Invariants:
  - At most one pending record per target date. Checked before insert and
    backed by a partial unique index for concurrent runs.
  - pending -> completed happens once. The update is conditional on the
    row still being pending, so a lost race changes nothing.
  - actual_price, difference and percentage_error are written together in
    that single update.

CRITICAL: Prices are stored as TEXT and restored as Decimal on read.
"""

import uuid
from collections.abc import Callable
from datetime import date, timedelta
from decimal import Decimal

import aiosqlite

from predictor.exceptions import DuplicateForecast, ReconciliationMiss
from predictor.ledger.database import PredictionDatabase
from predictor.logging import get_logger
from predictor.models import (
    AccuracyStats,
    Action,
    ForecastResult,
    PredictionRecord,
    PredictionStatus,
    Trend,
    now_ms,
    round_cents,
)

logger = get_logger(__name__)

# Lookback in days on made_on_date; None means no filter
HISTORY_SCOPES: dict[str, int | None] = {
    "7days": 7,
    "1month": 30,
    "all": None,
}

_COLUMNS = (
    "id, actor_id, made_on_date, target_date, predicted_price, confidence, trend, "
    "reasoning, action, entry_zone, target, stop_loss, market_context, status, "
    "actual_price, difference, percentage_error, created_at, updated_at"
)

_ORDER_NEWEST = "ORDER BY created_at DESC, rowid DESC"


def _optional_decimal(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _row_to_record(row: tuple) -> PredictionRecord:
    return PredictionRecord(
        id=row[0],
        actor_id=row[1],
        made_on_date=date.fromisoformat(row[2]),
        target_date=date.fromisoformat(row[3]),
        predicted_price=Decimal(row[4]),
        confidence=row[5],
        trend=Trend(row[6]),
        reasoning=row[7],
        action=Action(row[8]),
        entry_zone=row[9],
        target=row[10],
        stop_loss=row[11],
        market_context=row[12],
        status=PredictionStatus(row[13]),
        actual_price=_optional_decimal(row[14]),
        difference=_optional_decimal(row[15]),
        percentage_error=_optional_decimal(row[16]),
        created_at=row[17],
        updated_at=row[18],
    )


def _scope_start(scope: str, today: date | None) -> date | None:
    if scope not in HISTORY_SCOPES:
        raise ValueError(f"Unknown history scope {scope!r}")
    days = HISTORY_SCOPES[scope]
    if days is None:
        return None
    return (today or date.today()) - timedelta(days=days)


class ReconciliationLedger:
    """Persistence and matching policy for stored forecasts.

    Args:
        database: Connected PredictionDatabase.
        system_actor: Identity recorded on forecasts created without an
            explicit actor (scheduled runs).
        clock: Time source in epoch milliseconds for created_at/updated_at.
    """

    def __init__(
        self,
        database: PredictionDatabase,
        system_actor: str = "system",
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._database = database
        self._system_actor = system_actor
        self._clock = clock

    # ──────────────────────────────────────────────
    # Write methods
    # ──────────────────────────────────────────────

    async def create_pending_forecast(
        self,
        target_date: date,
        made_on_date: date,
        result: ForecastResult,
        actor: str | None = None,
    ) -> PredictionRecord:
        """Insert a pending forecast for ``target_date``.

        Raises:
            DuplicateForecast: A pending forecast for ``target_date`` already
                exists; the exception carries it unchanged.
        """
        existing = await self.find_pending(target_date)
        if existing is not None:
            raise DuplicateForecast(existing)

        record = PredictionRecord(
            id=uuid.uuid4().hex,
            actor_id=actor or self._system_actor,
            made_on_date=made_on_date,
            target_date=target_date,
            predicted_price=round_cents(result.predicted_price),
            confidence=result.confidence,
            trend=result.trend,
            reasoning=result.reasoning,
            action=result.recommendation.action,
            entry_zone=result.recommendation.entry_zone,
            target=result.recommendation.target,
            stop_loss=result.recommendation.stop_loss,
            market_context=result.market_context,
            status=PredictionStatus.PENDING,
            created_at=self._clock(),
        )

        try:
            await self._database.db.execute(
                f"INSERT INTO predictions ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL, ?, NULL)",
                (
                    record.id,
                    record.actor_id,
                    record.made_on_date.isoformat(),
                    record.target_date.isoformat(),
                    str(record.predicted_price),
                    record.confidence,
                    record.trend.value,
                    record.reasoning,
                    record.action.value,
                    record.entry_zone,
                    record.target,
                    record.stop_loss,
                    record.market_context,
                    record.status.value,
                    record.created_at,
                ),
            )
            await self._database.db.commit()
        except aiosqlite.IntegrityError:
            # Another run inserted between our check and the insert
            await self._database.db.rollback()
            winner = await self.find_pending(target_date)
            if winner is None:
                raise
            raise DuplicateForecast(winner) from None

        logger.info(
            "forecast_recorded",
            id=record.id,
            actor=record.actor_id,
            target_date=record.target_date.isoformat(),
            predicted_price=str(record.predicted_price),
        )
        return record

    async def record_pending_forecast(
        self,
        target_date: date,
        made_on_date: date,
        result: ForecastResult,
        actor: str | None = None,
    ) -> PredictionRecord:
        """Idempotent insert: returns the existing pending record on duplicate."""
        try:
            return await self.create_pending_forecast(target_date, made_on_date, result, actor)
        except DuplicateForecast as dup:
            logger.info(
                "duplicate_forecast_skipped",
                target_date=target_date.isoformat(),
                existing_id=dup.existing.id,
            )
            return dup.existing

    async def complete_forecast(
        self, target_date: date, actual_price: Decimal
    ) -> PredictionRecord:
        """Close out the pending forecast for ``target_date``.

        difference = round(actual - predicted, 2);
        percentage_error = (actual - predicted) / predicted * 100.

        Raises:
            ReconciliationMiss: No pending forecast targets ``target_date``,
                or a concurrent run completed it first.
        """
        pending = await self.find_pending(target_date)
        if pending is None:
            raise ReconciliationMiss(target_date)

        delta = actual_price - pending.predicted_price
        difference = round_cents(delta)
        percentage_error = delta / pending.predicted_price * 100
        stored_actual = round_cents(actual_price)
        updated_at = self._clock()

        cursor = await self._database.db.execute(
            "UPDATE predictions SET actual_price = ?, difference = ?, "
            "percentage_error = ?, status = ?, updated_at = ? "
            "WHERE id = ? AND status = ?",
            (
                str(stored_actual),
                str(difference),
                str(percentage_error),
                PredictionStatus.COMPLETED.value,
                updated_at,
                pending.id,
                PredictionStatus.PENDING.value,
            ),
        )
        await self._database.db.commit()

        if cursor.rowcount != 1:
            logger.info("reconciliation_lost_race", id=pending.id)
            raise ReconciliationMiss(target_date)

        pending.actual_price = stored_actual
        pending.difference = difference
        pending.percentage_error = percentage_error
        pending.status = PredictionStatus.COMPLETED
        pending.updated_at = updated_at

        logger.info(
            "forecast_reconciled",
            id=pending.id,
            target_date=target_date.isoformat(),
            predicted_price=str(pending.predicted_price),
            actual_price=str(stored_actual),
            difference=str(difference),
            percentage_error=f"{percentage_error:.2f}",
        )
        return pending

    async def reconcile(
        self, target_date: date, actual_price: Decimal
    ) -> PredictionRecord | None:
        """Close out the forecast for ``target_date``; None when there is none."""
        try:
            return await self.complete_forecast(target_date, actual_price)
        except ReconciliationMiss:
            logger.info("reconciliation_miss", target_date=target_date.isoformat())
            return None

    async def purge_all(self) -> int:
        """Delete every record. Returns the number deleted."""
        cursor = await self._database.db.execute("DELETE FROM predictions")
        await self._database.db.commit()
        logger.warning("ledger_purged", count=cursor.rowcount)
        return cursor.rowcount

    async def purge_latest(self) -> PredictionRecord | None:
        """Delete the most recently created record and return it."""
        latest = await self.latest()
        if latest is None:
            return None
        await self._database.db.execute("DELETE FROM predictions WHERE id = ?", (latest.id,))
        await self._database.db.commit()
        logger.warning("ledger_latest_purged", id=latest.id)
        return latest

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def find_pending(self, target_date: date) -> PredictionRecord | None:
        cursor = await self._database.db.execute(
            f"SELECT {_COLUMNS} FROM predictions WHERE target_date = ? AND status = ?",
            (target_date.isoformat(), PredictionStatus.PENDING.value),
        )
        row = await cursor.fetchone()
        return _row_to_record(row) if row is not None else None

    async def get(self, record_id: str) -> PredictionRecord | None:
        cursor = await self._database.db.execute(
            f"SELECT {_COLUMNS} FROM predictions WHERE id = ?", (record_id,)
        )
        row = await cursor.fetchone()
        return _row_to_record(row) if row is not None else None

    async def latest(self) -> PredictionRecord | None:
        """Most recently created record regardless of status."""
        cursor = await self._database.db.execute(
            f"SELECT {_COLUMNS} FROM predictions {_ORDER_NEWEST} LIMIT 1"
        )
        row = await cursor.fetchone()
        return _row_to_record(row) if row is not None else None

    async def history(
        self, scope: str = "all", today: date | None = None
    ) -> list[PredictionRecord]:
        """Records made within ``scope`` (see HISTORY_SCOPES), newest first."""
        start = _scope_start(scope, today)
        if start is None:
            cursor = await self._database.db.execute(
                f"SELECT {_COLUMNS} FROM predictions {_ORDER_NEWEST}"
            )
        else:
            cursor = await self._database.db.execute(
                f"SELECT {_COLUMNS} FROM predictions WHERE made_on_date >= ? {_ORDER_NEWEST}",
                (start.isoformat(),),
            )
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def count(self) -> int:
        cursor = await self._database.db.execute("SELECT COUNT(*) FROM predictions")
        return (await cursor.fetchone())[0]

    async def accuracy_stats(
        self, scope: str = "all", today: date | None = None
    ) -> AccuracyStats:
        """Aggregate error over completed records within ``scope``.

        accuracy = clamp(0, 100, 100 - average_error * 10), so 10% average
        absolute error or worse scores 0. No completed records scores 0.
        """
        records = await self.history(scope, today)
        errors = [
            abs(r.percentage_error)
            for r in records
            if r.status == PredictionStatus.COMPLETED and r.percentage_error is not None
        ]

        if not errors:
            return AccuracyStats(
                total_predictions=len(records),
                completed_predictions=0,
                average_error=Decimal("0"),
                accuracy=Decimal("0"),
            )

        average = sum(errors, Decimal("0")) / len(errors)
        accuracy = max(Decimal("0"), min(Decimal("100"), Decimal("100") - average * 10))
        return AccuracyStats(
            total_predictions=len(records),
            completed_predictions=len(errors),
            average_error=average,
            accuracy=accuracy,
        )
