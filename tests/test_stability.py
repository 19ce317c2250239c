import threading
import time

import numpy as np
import pytest

from kiosk_attendance.exceptions import CameraError, FaceEngineError
from kiosk_attendance.stability import AutoCaptureWorker, DetectorState, StabilityConfig, StabilityDetector

from .helpers import block_frame

FLAT = np.full((64, 64, 3), 128, dtype=np.uint8)
BLACK = np.zeros((64, 64, 3), dtype=np.uint8)


def config(**overrides):
    values = dict(sample_interval_seconds=0.0, cooldown_seconds=2.5)
    values.update(overrides)
    return StabilityConfig(**values)


class ScriptedSource:
    """Replays frames, then reports the end through ``on_exhausted``."""

    def __init__(self, frames, on_exhausted=None):
        self.frames = list(frames)
        self.on_exhausted = on_exhausted
        self.reads = 0

    def read(self):
        self.reads += 1
        if not self.frames:
            if self.on_exhausted is not None:
                self.on_exhausted()
            return None
        frame = self.frames.pop(0)
        if isinstance(frame, Exception):
            raise frame
        return frame


class FakeTime:
    def __init__(self, start=0.0, step=0.0):
        self.now = start
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


def test_flat_and_black_frames_never_trigger():
    detector = StabilityDetector(config())
    for t in range(20):
        assert detector.observe(FLAT if t % 2 else BLACK, float(t)) is None
        assert detector.state is DetectorState.IDLE


def test_entering_face_triggers_on_fast_path():
    detector = StabilityDetector(config())
    face = block_frame(1)

    assert detector.observe(FLAT, 0.0) is None
    assert detector.observe(face, 0.5) is None
    assert detector.state is DetectorState.ENTERING

    trigger = detector.observe(face, 1.0)
    assert trigger is not None
    assert trigger.fast_path
    assert trigger.frame is face
    assert trigger.similarity > 0.999
    assert detector.state is DetectorState.COOLDOWN


def test_steady_presence_needs_full_stable_run():
    detector = StabilityDetector(config(cooldown_seconds=1.0))
    face = block_frame(1)
    detector.observe(FLAT, 0.0)
    detector.observe(face, 0.1)
    assert detector.observe(face, 0.2) is not None

    # Still present after the cooldown: no entering shortcut.
    results = [detector.observe(face, 10.0 + i) for i in range(4)]
    assert results[:3] == [None, None, None]
    assert detector.state is DetectorState.STABILIZING
    assert results[3] is not None
    assert not results[3].fast_path
    assert results[3].stable_count == 4


def test_movement_resets_the_stable_count():
    detector = StabilityDetector(config(enter_stable_frames=3, fast_similarity=1.1))
    a, b = block_frame(1), block_frame(2)

    detector.observe(a, 0.0)
    detector.observe(a, 0.5)
    assert detector.stable_count == 1
    detector.observe(b, 1.0)
    assert detector.stable_count == 0
    detector.observe(b, 1.5)
    detector.observe(b, 2.0)
    assert detector.observe(b, 2.5) is not None


def test_cooldown_suppresses_triggers():
    detector = StabilityDetector(config(cooldown_seconds=2.5))
    face = block_frame(3)
    detector.observe(FLAT, 0.0)
    detector.observe(face, 0.5)
    assert detector.observe(face, 1.0) is not None

    for t in (1.5, 2.0, 3.0, 3.4):
        assert detector.observe(face, t) is None
        assert detector.state is DetectorState.COOLDOWN

    detector.observe(FLAT, 3.6)
    detector.observe(face, 4.0)
    assert detector.observe(face, 4.5) is not None


def test_face_leaving_returns_to_idle():
    detector = StabilityDetector(config())
    detector.observe(block_frame(1), 0.0)
    detector.observe(FLAT, 0.5)
    assert detector.state is DetectorState.IDLE
    assert detector.stable_count == 0
    assert not detector.entering


def test_worker_hands_stable_frame_to_handler():
    handled = []
    delivered = []
    face = block_frame(4)

    worker = AutoCaptureWorker(
        source=None,
        handler=lambda frame: handled.append(frame) or "marked",
        on_result=delivered.append,
        config=config(cooldown_seconds=0.0),
        clock=FakeTime(step=0.1),
    )
    worker.source = ScriptedSource([FLAT, face, face], on_exhausted=worker.stop_event.set)
    worker.run()

    assert len(handled) == 1
    assert handled[0] is face
    assert delivered == ["marked"]
    assert worker.triggers == 1


def test_worker_discards_result_after_cancellation():
    delivered = []
    face = block_frame(5)
    worker = AutoCaptureWorker(source=None, handler=None, on_result=delivered.append, config=config())

    def handler(frame):
        worker.stop_event.set()
        return "late result"

    worker.handler = handler
    worker.source = ScriptedSource([FLAT, face, face], on_exhausted=worker.stop_event.set)
    worker.run()

    assert worker.triggers == 1
    assert delivered == []


def test_worker_records_handler_errors_and_keeps_running():
    face = block_frame(6)
    calls = []

    def handler(frame):
        calls.append(frame)
        raise FaceEngineError("model crashed", "extract_descriptor")

    worker = AutoCaptureWorker(
        source=None,
        handler=handler,
        config=config(cooldown_seconds=0.0),
        clock=FakeTime(step=0.1),
    )
    worker.source = ScriptedSource([FLAT, face, face], on_exhausted=worker.stop_event.set)
    worker.run()

    assert len(calls) == 1
    assert worker.last_error == "model crashed"
    assert worker.detector.state is DetectorState.COOLDOWN


def test_worker_survives_camera_errors():
    delivered = []
    face = block_frame(7)
    worker = AutoCaptureWorker(
        source=None,
        handler=lambda frame: "ok",
        on_result=delivered.append,
        config=config(cooldown_seconds=0.0),
        clock=FakeTime(step=0.1),
    )
    worker.source = ScriptedSource(
        [CameraError("Camera is not opened.", "read"), FLAT, face, face],
        on_exhausted=worker.stop_event.set,
    )
    worker.run()

    assert worker.last_error == "Camera is not opened."
    assert delivered == ["ok"]


def test_worker_does_not_read_frames_while_handling_or_cooling_down():
    face = block_frame(8)
    handled = threading.Event()
    reads_at_trigger = []

    worker = AutoCaptureWorker(
        source=None,
        handler=None,
        config=config(sample_interval_seconds=0.01, cooldown_seconds=60.0),
    )
    source = ScriptedSource([FLAT] + [face] * 50)

    def handler(frame):
        reads_at_trigger.append(source.reads)
        handled.set()
        return "ok"

    worker.source = source
    worker.handler = handler
    worker.start()
    try:
        assert handled.wait(timeout=5)
        time.sleep(0.2)
        assert worker.running
    finally:
        worker.stop()

    assert not worker.running
    assert worker.triggers == 1
    assert source.reads == reads_at_trigger[0]


@pytest.mark.parametrize("interval", [0.0, 0.05])
def test_worker_stop_is_idempotent(interval):
    worker = AutoCaptureWorker(
        source=ScriptedSource([]),
        handler=lambda frame: None,
        config=config(sample_interval_seconds=interval),
    )
    worker.start()
    worker.stop()
    worker.stop()
    assert not worker.running


def test_worker_passes_verdict_to_recorder():
    recorded = []
    delivered = []
    face = block_frame(9)

    worker = AutoCaptureWorker(
        source=None,
        handler=lambda frame: "verdict",
        recorder=lambda frame, verdict: recorded.append((frame, verdict)) or "outcome",
        on_result=delivered.append,
        config=config(cooldown_seconds=0.0),
        clock=FakeTime(step=0.1),
    )
    worker.source = ScriptedSource([FLAT, face, face], on_exhausted=worker.stop_event.set)
    worker.run()

    assert len(recorded) == 1
    assert recorded[0][0] is face
    assert recorded[0][1] == "verdict"
    assert delivered == ["outcome"]


def test_stop_during_match_writes_no_event(service, db):
    face = block_frame(10)
    matching = threading.Event()
    release = threading.Event()
    recorded = []

    def match(frame):
        verdict = service.match_probe(frame)
        matching.set()
        release.wait(timeout=5)
        return verdict

    def record(frame, verdict):
        recorded.append(verdict)
        return service.record_attendance(verdict)

    worker = AutoCaptureWorker(
        source=ScriptedSource([FLAT] + [face] * 50),
        handler=match,
        recorder=record,
        config=config(sample_interval_seconds=0.01, cooldown_seconds=60.0),
    )
    worker.start()
    assert matching.wait(timeout=5)

    stopper = threading.Thread(target=worker.stop)
    stopper.start()
    assert worker.stop_event.wait(timeout=5)
    release.set()
    stopper.join(timeout=5)

    assert not worker.running
    assert worker.triggers == 1
    assert recorded == []
    assert db.search_events() == []


def test_worker_records_unexpected_handler_errors():
    face = block_frame(11)

    def handler(frame):
        raise ValueError("bad frame")

    worker = AutoCaptureWorker(
        source=None,
        handler=handler,
        config=config(cooldown_seconds=0.0),
        clock=FakeTime(step=0.1),
    )
    worker.source = ScriptedSource([FLAT, face, face, FLAT], on_exhausted=worker.stop_event.set)
    worker.run()

    assert worker.last_error == "bad frame"
    assert worker.triggers == 1
    assert worker.source.reads == 5


def test_worker_records_result_callback_errors():
    face = block_frame(12)

    def on_result(result):
        raise RuntimeError("display unavailable")

    worker = AutoCaptureWorker(
        source=None,
        handler=lambda frame: "ok",
        on_result=on_result,
        config=config(cooldown_seconds=0.0),
        clock=FakeTime(step=0.1),
    )
    worker.source = ScriptedSource([FLAT, face, face], on_exhausted=worker.stop_event.set)
    worker.run()

    assert worker.last_error == "display unavailable"
    assert worker.detector.state is DetectorState.COOLDOWN
