from datetime import datetime, time
from typing import Callable, List, Optional, Tuple

import numpy as np

from .config import parse_time_of_day
from .database import AttendanceDatabase
from .exceptions import EnrollmentError
from .imaging import decode_image, encode_jpeg
from .ledger import AttendanceLedger, LedgerConfig
from .logger import setup_logger
from .matcher import DescriptorMatcher, MatcherConfig
from .signature_index import SignatureIndex
from .types import (
    AttendanceOutcome,
    Candidate,
    DescriptorOracle,
    Identity,
    MatchFound,
    MatchVerdict,
    MultipleFaces,
    NoFace,
    NoMatch,
)


def describe_verdict(verdict: MatchVerdict) -> str:
    if isinstance(verdict, MatchFound):
        return f"MATCH {verdict.identity.external_user_id} (distance={verdict.distance:.3f})"
    if isinstance(verdict, NoMatch):
        return f"NO_MATCH (similarity={verdict.similarity:.3f})"
    if isinstance(verdict, NoFace):
        return "NO_FACE"
    if isinstance(verdict, MultipleFaces):
        return f"MULTIPLE_FACES ({verdict.face_count})"
    raise TypeError(f"Unsupported match verdict: {verdict!r}")


class KioskService:
    """Entry point for callers (CLI, HTTP, auto-capture): enrollment, matching and attendance."""

    def __init__(
        self,
        db: AttendanceDatabase,
        oracle: DescriptorOracle,
        matcher_config: Optional[MatcherConfig] = None,
        ledger_config: Optional[LedgerConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.oracle = oracle
        self.clock = clock
        self.index = SignatureIndex(db)
        self.matcher = DescriptorMatcher(oracle, db, matcher_config)
        self.ledger = AttendanceLedger(db, ledger_config)
        self.logger = setup_logger(self.__class__.__name__)

    # Matching and attendance

    def match_probe(self, image: np.ndarray, hint_user_id: Optional[str] = None) -> MatchVerdict:
        candidates = self.index.shortlist(image, self.matcher.config.shortlist_size)
        if hint_user_id:
            candidates = self._restrict_to_hint(candidates, hint_user_id)

        verdict = self.matcher.match(image, candidates)
        self.logger.info("Probe resolved against %d candidates: %s", len(candidates), describe_verdict(verdict))
        return verdict

    def record_attendance(
        self,
        verdict: MatchVerdict,
        now: Optional[datetime] = None,
        capture: Optional[bytes] = None,
    ) -> AttendanceOutcome:
        return self.ledger.record(verdict, now or self.clock(), capture)

    def check_in(
        self,
        image: np.ndarray,
        now: Optional[datetime] = None,
        hint_user_id: Optional[str] = None,
        keep_capture: bool = False,
    ) -> AttendanceOutcome:
        verdict = self.match_probe(image, hint_user_id=hint_user_id)
        capture = encode_jpeg(image) if keep_capture else None
        return self.record_attendance(verdict, now=now, capture=capture)

    def _restrict_to_hint(self, candidates: List[Candidate], hint_user_id: str) -> List[Candidate]:
        for candidate in candidates:
            if candidate.identity.external_user_id == hint_user_id:
                return [candidate]

        identity = self.db.find_identity_by_user_id(hint_user_id)
        if identity is None:
            self.logger.warning("Hinted user %s is not enrolled; using the shortlist", hint_user_id)
            return candidates
        return [Candidate(identity=identity)]

    # Enrollment

    def enroll(
        self,
        user_id: str,
        display_name: str,
        reference_image: bytes,
        shift_start: Optional[str] = None,
        shift_end: Optional[str] = None,
        grace_minutes: int = 0,
    ) -> Identity:
        user_id = user_id.strip()
        display_name = display_name.strip()
        if not user_id or not display_name:
            raise EnrollmentError("User ID and Full Name are required.")
        start, end = self._parse_shift(shift_start, shift_end, grace_minutes)

        if self.db.find_identity_by_user_id(user_id) is not None:
            raise EnrollmentError(f"User with ID {user_id} already exists.")

        image = decode_image(reference_image)
        if image is None:
            raise EnrollmentError("Reference image could not be decoded.")
        descriptor = self.oracle.extract_descriptor(image)
        if descriptor is None:
            raise EnrollmentError("No face detected in the reference image.")

        identity = self.db.create_identity(
            external_user_id=user_id,
            display_name=display_name,
            reference_image=reference_image,
            shift_start=start,
            shift_end=end,
            grace_minutes=grace_minutes,
        )
        self.matcher.remember(identity.id, descriptor)
        self.index.invalidate()
        self.logger.info("Enrolled %s (%s)", display_name, user_id)
        return identity

    def update_shift(
        self,
        user_id: str,
        shift_start: Optional[str],
        shift_end: Optional[str],
        grace_minutes: int = 0,
    ) -> Identity:
        start, end = self._parse_shift(shift_start, shift_end, grace_minutes)
        identity = self.db.find_identity_by_user_id(user_id.strip())
        if identity is None:
            raise EnrollmentError(f"User {user_id} not found.")

        updated = self.db.update_shift(identity.id, start, end, grace_minutes)
        if updated is None:
            raise EnrollmentError(f"User {user_id} not found.")
        self.index.invalidate()
        self.logger.info("Shift updated for %s", user_id)
        return updated

    def remove_identity(self, user_id: str) -> None:
        identity = self.db.find_identity_by_user_id(user_id.strip())
        if identity is None or not self.db.delete_identity(identity.external_user_id):
            raise EnrollmentError(f"User {user_id} not found.")

        self.matcher.forget(identity.id)
        self.index.invalidate()
        self.logger.info("Removed identity %s", user_id)

    def list_identities(self) -> List[Identity]:
        return self.db.list_identities()

    @staticmethod
    def _parse_shift(
        shift_start: Optional[str],
        shift_end: Optional[str],
        grace_minutes: int,
    ) -> Tuple[Optional[time], Optional[time]]:
        if grace_minutes < 0:
            raise EnrollmentError("graceMinutes must be zero or positive.")
        try:
            return parse_time_of_day(shift_start), parse_time_of_day(shift_end)
        except ValueError as exc:
            raise EnrollmentError(f"Invalid shift time: {exc}") from exc
