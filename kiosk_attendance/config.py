import os
from datetime import time
from pathlib import Path
from typing import Optional


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def parse_time_of_day(raw: Optional[str]) -> Optional[time]:
    """Parse a 24h ``HH:MM`` string. Empty input means "not configured"."""
    if raw is None or not raw.strip():
        return None
    parts = raw.strip().split(":")
    if len(parts) != 2:
        raise ValueError(f"Expected HH:MM, got {raw!r}")
    hours, minutes = int(parts[0]), int(parts[1])
    return time(hour=hours, minute=minutes)


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
LOG_DIR = Path(os.getenv("KIOSK_LOG_DIR", str(BASE_DIR / "logs")))
DB_PATH = Path(os.getenv("KIOSK_DB_PATH", str(DATA_DIR / "attendance.db")))

KIOSK_DEVICE_ID = os.getenv("KIOSK_DEVICE_ID", "kiosk-01")

# Webcam settings
CAMERA_INDEX = _int_env("KIOSK_CAMERA_INDEX", 0)
FRAME_WIDTH = _int_env("KIOSK_FRAME_WIDTH", 640)
FRAME_HEIGHT = _int_env("KIOSK_FRAME_HEIGHT", 480)
FRAME_FPS = _int_env("KIOSK_FRAME_FPS", 30)
JPEG_QUALITY = _int_env("KIOSK_JPEG_QUALITY", 90)

# Candidate shortlisting
SIGNATURE_SIZE = _int_env("KIOSK_SIGNATURE_SIZE", 16)
SHORTLIST_SIZE = _int_env("KIOSK_SHORTLIST_SIZE", 5)

# Descriptor matching
MATCH_DISTANCE_THRESHOLD = _float_env("KIOSK_MATCH_DISTANCE_THRESHOLD", 0.6)
REJECT_MULTIPLE_FACES = _bool_env("KIOSK_REJECT_MULTIPLE_FACES", False)
PROBE_MAX_SIDE = _int_env("KIOSK_PROBE_MAX_SIDE", 640)
FACE_DETECTION_THRESHOLD = _float_env("KIOSK_FACE_DETECTION_THRESHOLD", 0.5)
MIN_FACE_SIZE = _int_env("KIOSK_MIN_FACE_SIZE", 40)

# Stability detection
STABLE_SIMILARITY = _float_env("KIOSK_STABLE_SIMILARITY", 0.998)
FAST_SIMILARITY = _float_env("KIOSK_FAST_SIMILARITY", 0.999)
MOVE_SIMILARITY = _float_env("KIOSK_MOVE_SIMILARITY", 0.985)
MIN_PRESENCE_VARIANCE = _float_env("KIOSK_MIN_PRESENCE_VARIANCE", 0.001)
STABLE_FRAMES = _int_env("KIOSK_STABLE_FRAMES", 4)
ENTER_STABLE_FRAMES = _int_env("KIOSK_ENTER_STABLE_FRAMES", 1)
SAMPLE_INTERVAL_SECONDS = _float_env("KIOSK_SAMPLE_INTERVAL_SECONDS", 0.5)
TRIGGER_COOLDOWN_SECONDS = _float_env("KIOSK_TRIGGER_COOLDOWN_SECONDS", 2.5)

# Attendance policy
MIN_GAP_SECONDS = _int_env("KIOSK_MIN_GAP_SECONDS", 120)
MAX_EVENTS_PER_DAY = 2

# Runtime settings
DEVICE = os.getenv("KIOSK_DEVICE", "auto")
