"""Daily spend ledger shared by every process on the machine.

The ledger is a small JSON record next to a companion ``.lock`` file::

    {"date": "YYYY-MM-DD", "spent_usd": 1.23,
     "reservations": [{"id": "...", "reserved_usd": 0.05, "created_at": "..."}]}

Every access takes an exclusive flock on the lock file, reads, optionally
mutates and atomically rewrites the record, then releases the lock. Nothing
is cached between calls.

A call that passes the daily-cap check leaves a reservation for its estimate
in the same locked cycle, so concurrent processes see each other's in-flight
spend. The reservation is committed (actual spend added) after success or
released after failure. Reservations left behind by a crashed process expire
after RESERVATION_TTL.

A stored date other than today (UTC) reads as zero spend with no
reservations; the new date is persisted on the next write.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from council_gateway.core.config import settings
from council_gateway.core.metrics import BUDGET_REJECTIONS, SPEND_RECORDED
from council_gateway.gateway.errors import BudgetError, BudgetExceededError, EstimateUnavailableError

logger = logging.getLogger(__name__)

RESERVATION_TTL = timedelta(hours=2)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ReservationEntry:
    id: str
    reserved_usd: float
    created_at: str  # ISO-8601, UTC

    def to_dict(self) -> dict:
        return {"id": self.id, "reserved_usd": self.reserved_usd, "created_at": self.created_at}


@dataclass
class LedgerRecord:
    date: str
    spent_usd: float = 0.0
    reservations: list[ReservationEntry] = field(default_factory=list)

    @property
    def reserved_usd(self) -> float:
        return sum(r.reserved_usd for r in self.reservations)

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "spent_usd": self.spent_usd,
            "reservations": [r.to_dict() for r in self.reservations],
        }


class BudgetReservation:
    """Handle for spend held against the daily cap until the call settles.

    Exactly one of ``commit`` / ``release`` takes effect; later calls are
    no-ops. A reservation without an id (no daily cap) holds nothing and
    ``commit`` simply records the spend.

    Usage:
        reservation = ledger.ensure_budget(0.02, daily_budget=5.0)
        try:
            response = ...
            reservation.commit(BudgetLedger.spend_amount(response.usage.cost_usd, 0.02))
        finally:
            reservation.release()
    """

    def __init__(self, ledger: BudgetLedger, reservation_id: str | None, amount_usd: float = 0.0):
        self.ledger = ledger
        self.id = reservation_id
        self.amount_usd = amount_usd
        self.active = True

    def commit(self, spend_usd: float | None) -> None:
        if not self.active:
            return
        self.active = False
        self.ledger.settle(self.id, spend_usd)

    def release(self) -> None:
        if not self.active:
            return
        self.active = False
        if self.id is not None:
            self.ledger.settle(self.id, None)

    def __enter__(self) -> BudgetReservation:
        return self

    def __exit__(self, *exc) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"BudgetReservation(id={self.id!r}, amount_usd={self.amount_usd}, active={self.active})"


class BudgetLedger:
    """Lock-guarded, file-backed daily spend tracker.

    Usage:
        ledger = BudgetLedger()
        with ledger.ensure_budget(estimate_usd=0.02, max_cost=0.05, daily_budget=5.0) as reservation:
            ... call the provider ...
            reservation.commit(ledger.spend_amount(response.usage.cost_usd, 0.02))
    """

    def __init__(
        self,
        path: Path | str | None = None,
        today: Callable[[], date] = utc_today,
        now: Callable[[], datetime] = utc_now,
    ):
        self.path = Path(path or settings.budget_path).expanduser()
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._today = today
        self._now = now

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a+") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _read(self) -> LedgerRecord:
        today = self._today().isoformat()
        if not self.path.exists():
            return LedgerRecord(date=today)

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            record = LedgerRecord(
                date=str(raw["date"]),
                spent_usd=float(raw.get("spent_usd", 0.0)),
                reservations=[
                    ReservationEntry(
                        id=str(r["id"]),
                        reserved_usd=float(r["reserved_usd"]),
                        created_at=str(r.get("created_at", "")),
                    )
                    for r in raw.get("reservations") or []
                ],
            )
        except (ValueError, KeyError, TypeError) as e:
            raise BudgetError(f"corrupt budget ledger {self.path}: {e}") from e

        if record.date != today:
            logger.info("Budget ledger rolled over %s -> %s", record.date, today)
            return LedgerRecord(date=today)

        self._prune(record)
        return record

    def _prune(self, record: LedgerRecord) -> None:
        """Drop reservations older than the TTL (or with an unreadable timestamp)."""
        cutoff = self._now() - RESERVATION_TTL
        kept: list[ReservationEntry] = []
        for entry in record.reservations:
            try:
                created = datetime.fromisoformat(entry.created_at)
            except ValueError:
                created = None
            if created is not None and created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            if created is not None and created >= cutoff:
                kept.append(entry)
            else:
                logger.warning("Dropping stale budget reservation %s ($%.6f)", entry.id, entry.reserved_usd)
        record.reservations = kept

    def _write(self, record: LedgerRecord) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    # -- public API ----------------------------------------------------------

    def load(self) -> LedgerRecord:
        """Current record, with rollover and expiry applied (not written back)."""
        with self._locked():
            return self._read()

    def ensure_budget(
        self,
        estimate_usd: float | None,
        max_cost: float | None = None,
        daily_budget: float | None = None,
    ) -> BudgetReservation:
        """Refuse the call if it would break a cap, else reserve its estimate.

        Fails closed without an estimate. Under a daily cap the check counts
        spend plus every live reservation, and the new reservation is written
        before the lock is released.
        """
        if max_cost is not None:
            if estimate_usd is None:
                BUDGET_REJECTIONS.labels(reason="no_estimate").inc()
                raise EstimateUnavailableError("cost estimate unavailable; cannot enforce max-cost")
            if estimate_usd > max_cost:
                BUDGET_REJECTIONS.labels(reason="max_cost").inc()
                raise BudgetExceededError(f"estimated cost ${estimate_usd:.4f} exceeds max ${max_cost:.4f}")

        if daily_budget is None:
            return BudgetReservation(self, None)

        if estimate_usd is None:
            BUDGET_REJECTIONS.labels(reason="no_estimate").inc()
            raise EstimateUnavailableError("cost estimate unavailable; cannot enforce daily budget")

        with self._locked():
            record = self._read()
            reserved = record.reserved_usd
            if record.spent_usd + reserved + estimate_usd > daily_budget:
                BUDGET_REJECTIONS.labels(reason="daily_budget").inc()
                raise BudgetExceededError(
                    f"daily budget exceeded: spent ${record.spent_usd:.4f} + reserved ${reserved:.4f}"
                    f" + estimate ${estimate_usd:.4f} > ${daily_budget:.4f}"
                )
            entry = ReservationEntry(
                id=f"{os.getpid()}-{uuid.uuid4().hex[:12]}",
                reserved_usd=estimate_usd,
                created_at=self._now().isoformat(),
            )
            record.reservations.append(entry)
            self._write(record)

        logger.debug("Reserved $%.6f as %s", estimate_usd, entry.id)
        return BudgetReservation(self, entry.id, estimate_usd)

    @staticmethod
    def spend_amount(exact_cost: float | None, estimate_usd: float | None) -> float | None:
        """Provider-reported cost wins over the pre-call estimate."""
        return exact_cost if exact_cost is not None else estimate_usd

    def settle(self, reservation_id: str | None, amount_usd: float | None) -> LedgerRecord:
        """Drop a reservation and add the actual spend in one locked cycle."""
        amount = amount_usd if amount_usd is not None and amount_usd > 0 else 0.0
        with self._locked():
            record = self._read()
            before = len(record.reservations)
            if reservation_id is not None:
                record.reservations = [r for r in record.reservations if r.id != reservation_id]
            if amount == 0.0 and len(record.reservations) == before:
                return record
            record.spent_usd += amount
            self._write(record)

        if amount:
            SPEND_RECORDED.inc(amount)
            logger.info("Recorded $%.6f spend (today: $%.6f)", amount, record.spent_usd)
        return record

    def record_spend(self, amount_usd: float | None) -> LedgerRecord:
        """Add a completed call's cost to today's total."""
        return self.settle(None, amount_usd)
