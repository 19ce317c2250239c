import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar

import numpy as np

from .config import (
    ENTER_STABLE_FRAMES,
    FAST_SIMILARITY,
    MIN_PRESENCE_VARIANCE,
    MOVE_SIMILARITY,
    SAMPLE_INTERVAL_SECONDS,
    SIGNATURE_SIZE,
    STABLE_FRAMES,
    STABLE_SIMILARITY,
    TRIGGER_COOLDOWN_SECONDS,
)
from .exceptions import AttendanceError, CameraError
from .imaging import compute_signature, cosine_similarity, presence_variance
from .logger import setup_logger
from .types import FrameSource

V = TypeVar("V")
T = TypeVar("T")


class DetectorState(str, Enum):
    IDLE = "IDLE"
    ENTERING = "ENTERING"
    STABILIZING = "STABILIZING"
    COOLDOWN = "COOLDOWN"


@dataclass
class StabilityConfig:
    stable_similarity: float = STABLE_SIMILARITY
    fast_similarity: float = FAST_SIMILARITY
    move_similarity: float = MOVE_SIMILARITY
    min_presence_variance: float = MIN_PRESENCE_VARIANCE
    stable_frames: int = STABLE_FRAMES
    enter_stable_frames: int = ENTER_STABLE_FRAMES
    sample_interval_seconds: float = SAMPLE_INTERVAL_SECONDS
    cooldown_seconds: float = TRIGGER_COOLDOWN_SECONDS
    signature_size: int = SIGNATURE_SIZE


@dataclass(frozen=True)
class StabilityTrigger:
    frame: np.ndarray
    similarity: float
    stable_count: int
    fast_path: bool
    triggered_at: float


class StabilityDetector:
    """Per-frame state machine deciding when a face has settled enough to match.

    Transitions are driven by signature similarity between consecutive
    frames and by the signature variance (presence); the only timer is the
    cooldown after a trigger.
    """

    def __init__(self, config: Optional[StabilityConfig] = None):
        self.config = config or StabilityConfig()
        self.reset()

    def reset(self) -> None:
        self.previous_signature: Optional[np.ndarray] = None
        self.stable_count = 0
        self.last_trigger_time: Optional[float] = None
        self.previously_present = False
        self.entering = False
        self.state = DetectorState.IDLE

    def in_cooldown(self, now: float) -> bool:
        if self.last_trigger_time is None:
            return False
        return (now - self.last_trigger_time) < self.config.cooldown_seconds

    def restart_cooldown(self, now: float) -> None:
        self.last_trigger_time = now
        self.state = DetectorState.COOLDOWN

    def observe(self, frame: np.ndarray, now: float) -> Optional[StabilityTrigger]:
        cfg = self.config
        if self.in_cooldown(now):
            self.state = DetectorState.COOLDOWN
            return None

        signature = compute_signature(frame, cfg.signature_size)
        if presence_variance(signature) < cfg.min_presence_variance:
            # Flat / low-contrast frame: nobody there.
            self.stable_count = 0
            self.previous_signature = signature
            self.previously_present = False
            self.entering = False
            self.state = DetectorState.IDLE
            return None

        if not self.previously_present:
            self.entering = True
            self.stable_count = 0

        previous = self.previous_signature
        similarity = cosine_similarity(previous, signature) if previous is not None else 0.0
        if previous is not None and similarity < cfg.move_similarity:
            self.stable_count = 0
        elif previous is not None and similarity > cfg.stable_similarity:
            self.stable_count += 1
        else:
            self.stable_count = 0

        self.previous_signature = signature
        self.previously_present = True

        fast_path = self.entering and previous is not None and similarity > cfg.fast_similarity
        required = cfg.enter_stable_frames if self.entering else cfg.stable_frames
        if fast_path or self.stable_count >= required:
            trigger = StabilityTrigger(
                frame=frame,
                similarity=similarity,
                stable_count=self.stable_count,
                fast_path=fast_path,
                triggered_at=now,
            )
            self.stable_count = 0
            self.entering = False
            self.restart_cooldown(now)
            return trigger

        self.state = DetectorState.ENTERING if self.entering else DetectorState.STABILIZING
        return None


class AutoCaptureWorker(Generic[V, T]):
    """Samples a frame source at a fixed interval and hands settled frames on.

    A trigger runs in two steps on the sampling thread: ``handler`` resolves
    the frame (the match) and ``recorder`` turns that into a result (the
    attendance write). No new frame is read until both return. ``stop()``
    takes effect before the next sample; when it lands during the match the
    verdict is dropped before anything is recorded, and a result that
    completes after cancellation is never delivered to ``on_result``.
    """

    def __init__(
        self,
        source: FrameSource,
        handler: Callable[[np.ndarray], V],
        recorder: Optional[Callable[[np.ndarray, V], T]] = None,
        on_result: Optional[Callable[[T], None]] = None,
        config: Optional[StabilityConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.handler = handler
        self.recorder = recorder
        self.on_result = on_result
        self.detector = StabilityDetector(config)
        self.clock = clock
        self.logger = setup_logger(self.__class__.__name__)

        self.stop_event = threading.Event()
        self.worker: Optional[threading.Thread] = None
        self.last_error: Optional[str] = None
        self.triggers = 0

    def start(self) -> None:
        if self.worker and self.worker.is_alive():
            return
        self.stop_event.clear()
        self.detector.reset()
        self.worker = threading.Thread(target=self.run, name="kiosk-auto-capture", daemon=True)
        self.worker.start()
        self.logger.info("Auto-capture started")

    def stop(self, timeout: float = 3.0) -> None:
        self.stop_event.set()
        if self.worker and self.worker.is_alive() and self.worker is not threading.current_thread():
            self.worker.join(timeout=timeout)
        self.worker = None
        self.logger.info("Auto-capture stopped")

    @property
    def running(self) -> bool:
        return self.worker is not None and self.worker.is_alive()

    def run(self) -> None:
        interval = max(0.0, self.detector.config.sample_interval_seconds)
        while not self.stop_event.is_set():
            self._tick()
            self.stop_event.wait(interval)

    def _tick(self) -> None:
        if self.detector.in_cooldown(self.clock()):
            return

        try:
            frame = self.source.read()
        except CameraError as exc:
            self.last_error = str(exc)
            self.logger.warning("Frame read failed: %s", exc)
            return
        if frame is None:
            return

        trigger = self.detector.observe(frame, self.clock())
        if trigger is None:
            return

        self.triggers += 1
        self.logger.info(
            "Stable face detected (similarity=%.4f, fast_path=%s); matching",
            trigger.similarity,
            trigger.fast_path,
        )
        try:
            self._hand_off(trigger.frame)
        except AttendanceError as exc:
            self.last_error = str(exc)
            self.logger.error("Auto-capture hand-off failed: %s", exc)
        except Exception as exc:
            self.last_error = str(exc)
            self.logger.exception("Auto-capture hand-off crashed")
        finally:
            self.detector.restart_cooldown(self.clock())

    def _hand_off(self, frame: np.ndarray) -> None:
        verdict = self.handler(frame)
        if self.stop_event.is_set():
            self.logger.info("Discarding match that completed after cancellation")
            return

        result = self.recorder(frame, verdict) if self.recorder is not None else verdict
        if self.stop_event.is_set():
            self.logger.info("Discarding result that completed after cancellation")
            return
        if self.on_result is not None:
            self.on_result(result)
