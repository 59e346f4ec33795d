# leadbot/services/dedup.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from leadbot.core.logging import get_structlog_logger
from leadbot.schemas.ledger import LedgerEntry, MessageKey
from leadbot.services.redis import Reservation, ReservationStore

logger = get_structlog_logger(__name__)

REASON_ALREADY_PROCESSED = "already_processed"
REASON_CONCURRENT_DELIVERY = "concurrent_delivery"
REASON_DUPLICATE_CONVERSION = "duplicate_conversion"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


@dataclass(frozen=True)
class DedupVerdict:
    process: bool
    reason: Optional[str] = None
    reservation: Optional[Reservation] = None

    @property
    def duplicate(self) -> bool:
        return not self.process


PROCESS = DedupVerdict(process=True)


class DedupEngine:
    """Decides whether a message reaches the AI service and whether a
    conversion reaches the ad platform.

    Ledger lookups catch anything already recorded. A Redis claim taken
    right after the lookups closes the gap between two deliveries that
    arrive before either has written its ledger row.
    """

    def __init__(
        self,
        *,
        store,
        reservations: ReservationStore,
        timezone_name: str,
        ai_window_minutes: int,
        conversion_window_minutes: int,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.reservations = reservations
        self.tz = ZoneInfo(timezone_name)
        self.ai_window = timedelta(minutes=ai_window_minutes)
        self.conversion_window = timedelta(minutes=conversion_window_minutes)
        self.clock = clock

    @property
    def ai_window_reason(self) -> str:
        return f"duplicate within {int(self.ai_window.total_seconds() // 60)}-minute window"

    def local_day_start(self) -> datetime:
        local_now = self.clock().astimezone(self.tz)
        return local_now.replace(hour=0, minute=0, second=0, microsecond=0)

    async def check_message(self, key: MessageKey) -> DedupVerdict:
        """Skip a message already handed to the AI service today."""
        if await self.store.has_processing_attempt(key, since=self.local_day_start()):
            logger.info(
                "dedup.skip",
                check="message",
                reason=REASON_ALREADY_PROCESSED,
                talk_id=key.talk_id,
                lead_id=key.lead_id,
                contact_id=key.contact_id,
            )
            return DedupVerdict(process=False, reason=REASON_ALREADY_PROCESSED)
        return PROCESS

    async def claim_ai_processing(self, key: MessageKey) -> DedupVerdict:
        """Claim the right to call the AI service for ``key``.

        On PROCESS the processing attempt is already recorded, so any later
        delivery of the same message is answered by ``check_message``.
        """
        since = self.clock() - self.ai_window
        if await self.store.has_recent_bot_action(key, since=since):
            logger.info(
                "dedup.skip",
                check="ai",
                reason=self.ai_window_reason,
                talk_id=key.talk_id,
                lead_id=key.lead_id,
            )
            return DedupVerdict(process=False, reason=self.ai_window_reason)

        reservation = await self.reservations.acquire(
            f"message:{key.fingerprint}",
            int(self.ai_window.total_seconds()),
        )
        if not reservation.acquired:
            logger.info(
                "dedup.skip",
                check="ai",
                reason=REASON_CONCURRENT_DELIVERY,
                talk_id=key.talk_id,
                lead_id=key.lead_id,
            )
            return DedupVerdict(process=False, reason=REASON_CONCURRENT_DELIVERY)

        try:
            await self.store.add_processing_attempt(key)
        except Exception:
            await self.reservations.release(reservation)
            raise

        return DedupVerdict(process=True, reservation=reservation)

    async def claim_conversion(self, code: str, event_name: str) -> DedupVerdict:
        """Guard one send of ``event_name`` for ``code`` per conversion window."""
        entry = await self.store.get_conversion(code)
        recent = self.find_recent_send(entry, event_name, since=self.clock() - self.conversion_window)
        if recent is not None:
            logger.info(
                "dedup.skip",
                check="conversion",
                reason=REASON_DUPLICATE_CONVERSION,
                code=code,
                event_name=event_name,
                sent_at=recent.get("sent_at"),
            )
            return DedupVerdict(process=False, reason=REASON_DUPLICATE_CONVERSION)

        reservation = await self.reservations.acquire(
            f"conversion:{code}:{event_name}",
            int(self.conversion_window.total_seconds()),
        )
        if not reservation.acquired:
            logger.info(
                "dedup.skip",
                check="conversion",
                reason=REASON_CONCURRENT_DELIVERY,
                code=code,
                event_name=event_name,
            )
            return DedupVerdict(process=False, reason=REASON_DUPLICATE_CONVERSION)

        return DedupVerdict(process=True, reservation=reservation)

    async def release(self, verdict: DedupVerdict) -> None:
        if verdict.reservation is not None:
            await self.reservations.release(verdict.reservation)

    @staticmethod
    def find_recent_send(
        entry: Optional[LedgerEntry],
        event_name: str,
        *,
        since: datetime,
    ) -> Optional[Dict[str, Any]]:
        if entry is None:
            return None

        for slot in entry.conversion_slots:
            if not slot or slot.get("event_name") != event_name:
                continue
            result = slot.get("result") or {}
            if not result.get("success"):
                continue
            sent_at = parse_timestamp(slot.get("sent_at"))
            if sent_at is not None and sent_at >= since:
                return slot

        return None
