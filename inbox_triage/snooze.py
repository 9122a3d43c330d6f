"""
Email snoozing: hide an email until a chosen time, then publish an
`email.snooze.awakened` event so it can be re-triaged.

Records and timers live in process memory.
"""
import asyncio
import time
import uuid
from datetime import datetime, timedelta
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from inbox_triage.config import settings
from inbox_triage.events import EMAIL_SNOOZED, SNOOZE_AWAKENED, SNOOZE_CANCELLED, EventDispatcher
from inbox_triage.logger import get_logger
from inbox_triage.metrics import active_snoozes
from inbox_triage.state import utc_now

logger = get_logger(__name__)

SnoozeStatus = Literal["snoozed", "awakened", "cancelled"]


class SnoozeError(Exception):
    """Base error for snooze operations."""


class SnoozeNotFoundError(SnoozeError):
    pass


class SnoozeOwnershipError(SnoozeError):
    pass


class SnoozeRequest(BaseModel):
    email_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    snooze_until: datetime
    reason: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("snooze_until")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("snooze_until must include a timezone")
        return v


class SnoozeRecord(BaseModel):
    id: str
    email_id: str
    user_id: str
    snooze_until: datetime
    reason: Optional[str] = None
    notes: Optional[str] = None
    status: SnoozeStatus = "snoozed"
    created_at: datetime = Field(default_factory=utc_now)
    awakened_at: Optional[datetime] = None


class SnoozeService:
    """
    Args:
        dispatcher: Where snooze lifecycle events are published
    """

    def __init__(self, dispatcher: Optional[EventDispatcher] = None):
        self.dispatcher = dispatcher or EventDispatcher()
        self._records: dict[str, SnoozeRecord] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}

    async def snooze_email(self, request: SnoozeRequest) -> SnoozeRecord:
        now = utc_now()
        if request.snooze_until <= now:
            raise SnoozeError("Snooze time must be in the future")

        snooze_id = f"snooze-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}-{request.email_id}"
        record = SnoozeRecord(
            id=snooze_id,
            email_id=request.email_id,
            user_id=request.user_id,
            snooze_until=request.snooze_until,
            reason=request.reason,
            notes=request.notes,
            created_at=now,
        )
        delay = (request.snooze_until - now).total_seconds()

        loop = asyncio.get_running_loop()
        self._timers[snooze_id] = loop.call_later(delay, self._awaken, snooze_id)
        self._records[snooze_id] = record
        active_snoozes.inc()

        self.dispatcher.emit(
            EMAIL_SNOOZED,
            snooze_id=snooze_id,
            email_id=record.email_id,
            user_id=record.user_id,
            snooze_until=record.snooze_until.isoformat(),
            delay_ms=int(delay * 1000),
        )
        logger.info(
            "Email snoozed",
            extra={"snooze_id": snooze_id, "email_id": record.email_id, "until": record.snooze_until.isoformat()}
        )
        return record

    async def cancel_snooze(self, snooze_id: str, user_id: str) -> SnoozeRecord:
        record = self._records.get(snooze_id)
        if record is None:
            raise SnoozeNotFoundError(f"Snooze {snooze_id} not found")
        if record.user_id != user_id:
            raise SnoozeOwnershipError("User does not own this snooze")

        timer = self._timers.pop(snooze_id, None)
        if timer is not None:
            timer.cancel()
            active_snoozes.dec()

        record.status = "cancelled"
        record.awakened_at = utc_now()

        self.dispatcher.emit(
            SNOOZE_CANCELLED,
            snooze_id=snooze_id,
            email_id=record.email_id,
            user_id=record.user_id,
        )
        logger.info("Snooze cancelled", extra={"snooze_id": snooze_id})
        return record

    def _awaken(self, snooze_id: str) -> None:
        """Timer callback."""
        self._timers.pop(snooze_id, None)
        record = self._records.get(snooze_id)
        if record is None or record.status != "snoozed":
            logger.warning("Snooze not pending at wake-up", extra={"snooze_id": snooze_id})
            return

        record.status = "awakened"
        record.awakened_at = utc_now()
        active_snoozes.dec()

        self.dispatcher.emit(
            SNOOZE_AWAKENED,
            snooze_id=snooze_id,
            email_id=record.email_id,
            user_id=record.user_id,
            original_snooze_time=record.snooze_until.isoformat(),
            awakened_at=record.awakened_at.isoformat(),
            reason=record.reason,
            notes=record.notes,
        )
        logger.info("Snooze awakened", extra={"snooze_id": snooze_id, "email_id": record.email_id})

    # --- Queries ---

    def get_active_snoozes(self, user_id: str) -> list[SnoozeRecord]:
        return [r for r in self._records.values() if r.user_id == user_id and r.status == "snoozed"]

    def get_snooze_history(self, email_id: str) -> list[SnoozeRecord]:
        """All snoozes of an email, newest first."""
        history = [r for r in self._records.values() if r.email_id == email_id]
        return sorted(history, key=lambda r: r.created_at, reverse=True)

    def get_snooze_by_id(self, snooze_id: str) -> Optional[SnoozeRecord]:
        return self._records.get(snooze_id)

    def get_snooze_stats(self, user_id: str) -> dict:
        mine = [r for r in self._records.values() if r.user_id == user_id]
        active = sorted((r for r in mine if r.status == "snoozed"), key=lambda r: r.snooze_until)
        return {
            "total": len(mine),
            "active": len(active),
            "awakened": sum(1 for r in mine if r.status == "awakened"),
            "cancelled": sum(1 for r in mine if r.status == "cancelled"),
            "upcoming_awakenings": [
                {
                    "snooze_id": r.id,
                    "email_id": r.email_id,
                    "snooze_until": r.snooze_until,
                    "reason": r.reason,
                }
                for r in active
            ],
        }

    def cleanup_expired_snoozes(self, older_than_days: Optional[int] = None) -> int:
        """Drop finished records created more than `older_than_days` ago."""
        days = settings.snooze_retention_days if older_than_days is None else older_than_days
        cutoff = utc_now() - timedelta(days=days)
        expired = [
            snooze_id for snooze_id, record in self._records.items()
            if record.created_at < cutoff and record.status != "snoozed"
        ]
        for snooze_id in expired:
            del self._records[snooze_id]

        logger.info("Cleaned up snooze records", extra={"count": len(expired), "older_than_days": days})
        return len(expired)

    def shutdown(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        active_snoozes.dec(len(self._timers))
        self._timers.clear()
