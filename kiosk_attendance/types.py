from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import List, Optional, Protocol, Union

import numpy as np


class EventResult(str, Enum):
    SUCCESS = "SUCCESS"
    NO_MATCH = "NO_MATCH"
    NO_FACE = "NO_FACE"
    MULTIPLE_FACES = "MULTIPLE_FACES"


class CheckType(str, Enum):
    IN = "IN"
    OUT = "OUT"


class AttendanceStatus(str, Enum):
    ON_TIME = "ON_TIME"
    LATE = "LATE"
    EARLY = "EARLY"


class FailureReason(str, Enum):
    NO_MATCH = "NO_MATCH"
    NO_FACE = "NO_FACE"
    MULTIPLE_FACES = "MULTIPLE_FACES"
    DAY_COMPLETED = "DAY_COMPLETED"
    TOO_SOON = "TOO_SOON"


@dataclass(frozen=True)
class Identity:
    id: int
    external_user_id: str
    display_name: str
    shift_start: Optional[time] = None
    shift_end: Optional[time] = None
    grace_minutes: int = 0


@dataclass
class Candidate:
    """Shortlist cache entry. Vectors are filled lazily and are read-only once set."""

    identity: Identity
    signature: Optional[np.ndarray] = None
    descriptor: Optional[np.ndarray] = None


@dataclass(frozen=True)
class AttendanceEvent:
    result: EventResult
    event_time: datetime
    identity_id: Optional[int] = None
    similarity: Optional[float] = None
    check_type: Optional[CheckType] = None
    status: Optional[AttendanceStatus] = None
    late_minutes: Optional[int] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    kiosk_device_id: Optional[str] = None
    capture: Optional[bytes] = field(default=None, repr=False)
    id: Optional[int] = None


# Match verdicts


@dataclass(frozen=True)
class MatchFound:
    identity: Identity
    similarity: float
    distance: float


@dataclass(frozen=True)
class NoMatch:
    similarity: float = 0.0


@dataclass(frozen=True)
class NoFace:
    pass


@dataclass(frozen=True)
class MultipleFaces:
    face_count: int = 2


MatchVerdict = Union[MatchFound, NoMatch, NoFace, MultipleFaces]


# Attendance outcomes


@dataclass(frozen=True)
class AttendanceSuccess:
    identity: Identity
    check_type: CheckType
    status: AttendanceStatus
    late_minutes: int
    similarity: float
    event_time: datetime
    event_id: int
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None


@dataclass(frozen=True)
class AttendanceFailure:
    reason: FailureReason
    similarity: Optional[float] = None
    identity: Optional[Identity] = None


AttendanceOutcome = Union[AttendanceSuccess, AttendanceFailure]


# External collaborators


class RecordStore(Protocol):
    def list_identities(self) -> List[Identity]: ...

    def find_identity_by_user_id(self, external_user_id: str) -> Optional[Identity]: ...

    def list_success_events_for_identity_on_date(self, identity_id: int, day: date) -> List[AttendanceEvent]: ...

    def create_attendance_event(self, event: AttendanceEvent) -> int: ...

    def get_reference_image(self, identity: Identity) -> bytes: ...


class DescriptorOracle(Protocol):
    def extract_descriptor(self, image: np.ndarray) -> Optional[np.ndarray]: ...

    def count_faces(self, image: np.ndarray) -> int: ...


class FrameSource(Protocol):
    def read(self) -> Optional[np.ndarray]: ...
