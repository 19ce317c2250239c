import os
import tempfile
from datetime import datetime

os.environ.setdefault("KIOSK_LOG_DIR", tempfile.mkdtemp(prefix="kiosk-logs-"))

import pytest

from kiosk_attendance.database import AttendanceDatabase
from kiosk_attendance.kiosk_service import KioskService
from kiosk_attendance.ledger import LedgerConfig
from kiosk_attendance.matcher import MatcherConfig

from .helpers import Clock, FakeOracle, encode_png, make_face, unit


@pytest.fixture
def db(tmp_path):
    return AttendanceDatabase(tmp_path / "attendance.db")


@pytest.fixture
def oracle():
    return FakeOracle(
        {
            10: unit(0.0, 0.0, 0.0, 0.0),
            20: unit(1.0, 0.0, 0.0, 0.0),
            30: unit(0.0, 1.0, 0.0, 0.0),
            # Probes
            11: unit(0.05, 0.0, 0.0, 0.0),
            21: unit(0.95, 0.0, 0.0, 0.0),
            99: unit(5.0, 5.0, 5.0, 5.0),
        }
    )


@pytest.fixture
def clock():
    return Clock(datetime(2024, 3, 4, 9, 0, 0))


@pytest.fixture
def service(db, oracle, clock):
    return KioskService(
        db=db,
        oracle=oracle,
        matcher_config=MatcherConfig(distance_threshold=0.6, shortlist_size=5),
        ledger_config=LedgerConfig(min_gap_seconds=120, kiosk_device_id="test-kiosk"),
        clock=clock,
    )


@pytest.fixture
def enroll_raw(db):
    def _enroll(user_id: str, marker: int, name: str = "", **shift):
        return db.create_identity(
            external_user_id=user_id,
            display_name=name or user_id.title(),
            reference_image=encode_png(make_face(marker)),
            **shift,
        )

    return _enroll
