import threading
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Optional, Tuple

from .config import KIOSK_DEVICE_ID, MAX_EVENTS_PER_DAY, MIN_GAP_SECONDS
from .logger import setup_logger
from .types import (
    AttendanceEvent,
    AttendanceFailure,
    AttendanceOutcome,
    AttendanceStatus,
    AttendanceSuccess,
    CheckType,
    EventResult,
    FailureReason,
    Identity,
    MatchFound,
    MatchVerdict,
    MultipleFaces,
    NoFace,
    NoMatch,
    RecordStore,
)

_MS_PER_MINUTE = 60_000


@dataclass
class LedgerConfig:
    min_gap_seconds: int = MIN_GAP_SECONDS
    max_events_per_day: int = MAX_EVENTS_PER_DAY
    kiosk_device_id: Optional[str] = KIOSK_DEVICE_ID


def _millis(delta: timedelta) -> int:
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000


def _round_minutes(millis: int) -> int:
    # Half-up rounding on non-negative integer milliseconds.
    return (max(0, millis) + _MS_PER_MINUTE // 2) // _MS_PER_MINUTE


def _on_day(now: datetime, clock: Optional[time]) -> Optional[datetime]:
    if clock is None:
        return None
    return datetime.combine(now.date(), clock, tzinfo=now.tzinfo)


class AttendanceLedger:
    """Per-identity daily IN/OUT state machine.

    Each identity gets at most ``max_events_per_day`` SUCCESS events per
    kiosk-local day, strictly alternating IN, OUT. Marks closer together than
    ``min_gap_seconds`` are rejected without writing an event.

    The read of today's events, the IN/OUT decision and the write happen
    under one lock, so concurrent marks for a person are serialized.
    """

    def __init__(self, store: RecordStore, config: Optional[LedgerConfig] = None):
        self.store = store
        self.config = config or LedgerConfig()
        self.logger = setup_logger(self.__class__.__name__)
        self._lock = threading.Lock()

    def record(self, verdict: MatchVerdict, now: datetime, capture: Optional[bytes] = None) -> AttendanceOutcome:
        if isinstance(verdict, MatchFound):
            with self._lock:
                return self._record_success(verdict, now, capture)
        if isinstance(verdict, NoMatch):
            return self._record_failure(EventResult.NO_MATCH, FailureReason.NO_MATCH, now, verdict.similarity, capture)
        if isinstance(verdict, NoFace):
            return self._record_failure(EventResult.NO_FACE, FailureReason.NO_FACE, now, None, capture)
        if isinstance(verdict, MultipleFaces):
            return self._record_failure(
                EventResult.MULTIPLE_FACES, FailureReason.MULTIPLE_FACES, now, None, capture
            )
        raise TypeError(f"Unsupported match verdict: {verdict!r}")

    def _record_failure(
        self,
        result: EventResult,
        reason: FailureReason,
        now: datetime,
        similarity: Optional[float],
        capture: Optional[bytes],
    ) -> AttendanceFailure:
        event = AttendanceEvent(
            result=result,
            event_time=now,
            similarity=similarity,
            kiosk_device_id=self.config.kiosk_device_id,
            capture=capture,
        )
        self.store.create_attendance_event(event)
        self.logger.info("Recorded %s attempt (similarity=%s)", result.value, similarity)
        return AttendanceFailure(reason=reason, similarity=similarity)

    def _record_success(self, verdict: MatchFound, now: datetime, capture: Optional[bytes]) -> AttendanceOutcome:
        identity = verdict.identity
        todays = self.store.list_success_events_for_identity_on_date(identity.id, now.date())

        if len(todays) >= self.config.max_events_per_day:
            self.logger.info("Day already completed for %s", identity.external_user_id)
            return AttendanceFailure(FailureReason.DAY_COMPLETED, verdict.similarity, identity)

        check_type = CheckType.IN if len(todays) % 2 == 0 else CheckType.OUT

        if todays:
            since_last = _millis(now - todays[-1].event_time)
            if since_last < self.config.min_gap_seconds * 1000:
                self.logger.info(
                    "Rejected %s for %s: last mark %.1fs ago",
                    check_type.value,
                    identity.external_user_id,
                    since_last / 1000.0,
                )
                return AttendanceFailure(FailureReason.TOO_SOON, verdict.similarity, identity)

        scheduled_start, scheduled_end = self.schedule_for(identity, now)
        status, late_minutes = self.classify(check_type, identity, now, scheduled_start, scheduled_end)

        event = AttendanceEvent(
            result=EventResult.SUCCESS,
            event_time=now,
            identity_id=identity.id,
            similarity=verdict.similarity,
            check_type=check_type,
            status=status,
            late_minutes=late_minutes,
            scheduled_start=scheduled_start,
            scheduled_end=scheduled_end,
            kiosk_device_id=self.config.kiosk_device_id,
            capture=capture,
        )
        event_id = self.store.create_attendance_event(event)
        self.logger.info(
            "Attendance %s for %s (%s): %s, late=%d min",
            check_type.value,
            identity.display_name,
            identity.external_user_id,
            status.value,
            late_minutes,
        )

        return AttendanceSuccess(
            identity=identity,
            check_type=check_type,
            status=status,
            late_minutes=late_minutes,
            similarity=verdict.similarity,
            event_time=now,
            event_id=event_id,
            scheduled_start=scheduled_start,
            scheduled_end=scheduled_end,
        )

    @staticmethod
    def schedule_for(identity: Identity, now: datetime) -> Tuple[Optional[datetime], Optional[datetime]]:
        return _on_day(now, identity.shift_start), _on_day(now, identity.shift_end)

    @staticmethod
    def classify(
        check_type: CheckType,
        identity: Identity,
        now: datetime,
        scheduled_start: Optional[datetime],
        scheduled_end: Optional[datetime],
    ) -> Tuple[AttendanceStatus, int]:
        if check_type is CheckType.IN and scheduled_start is not None:
            latest_on_time = scheduled_start + timedelta(minutes=identity.grace_minutes)
            if now > latest_on_time:
                return AttendanceStatus.LATE, _round_minutes(_millis(now - latest_on_time))
            return AttendanceStatus.ON_TIME, 0

        if check_type is CheckType.OUT and scheduled_end is not None and now < scheduled_end:
            return AttendanceStatus.EARLY, 0

        return AttendanceStatus.ON_TIME, 0
