from datetime import datetime

import cv2
import numpy as np


def make_face(marker: int, size: int = 64) -> np.ndarray:
    """Textured synthetic frame; pixel (0, 0) carries the marker the fake oracle keys on."""
    rng = np.random.default_rng(marker)
    image = rng.integers(0, 256, size=(size, size, 3), dtype=np.uint8)
    image[0, 0] = marker
    return image


def block_frame(seed: int, size: int = 64, block: int = 4) -> np.ndarray:
    """High-contrast black/white block pattern that survives the 16x16 downsample intact."""
    rng = np.random.default_rng(seed)
    cells = rng.integers(0, 2, size=(size // block, size // block), dtype=np.uint8) * 255
    gray = np.kron(cells, np.ones((block, block), dtype=np.uint8))
    return np.dstack([gray, gray, gray])


def encode_png(image: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode(".png", image)
    assert ok
    return buffer.tobytes()


def unit(*values: float) -> np.ndarray:
    return np.array(values, dtype=np.float32)


class FakeOracle:
    """Deterministic descriptor oracle keyed on the marker pixel of each image."""

    def __init__(self, descriptors=None, face_counts=None):
        self.descriptors = dict(descriptors or {})
        self.face_counts = dict(face_counts or {})
        self.calls = 0

    def extract_descriptor(self, image):
        self.calls += 1
        return self.descriptors.get(int(image[0, 0, 0]))

    def count_faces(self, image):
        marker = int(image[0, 0, 0])
        return self.face_counts.get(marker, 1 if marker in self.descriptors else 0)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now
