from typing import Optional

import cv2
import numpy as np

from .config import JPEG_QUALITY, SIGNATURE_SIZE


def decode_image(data: bytes) -> Optional[np.ndarray]:
    """Decode encoded image bytes (JPEG/PNG/...) into a BGR frame, or None if unreadable."""
    if not data:
        return None
    buffer = np.frombuffer(data, dtype=np.uint8)
    frame = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if frame is None or frame.size == 0:
        return None
    return frame


def encode_jpeg(frame: np.ndarray, quality: int = JPEG_QUALITY) -> bytes:
    ok, encoded = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("Failed to JPEG-encode frame.")
    return encoded.tobytes()


def resize_max_side(frame: np.ndarray, max_side: int) -> np.ndarray:
    h, w = frame.shape[:2]
    longest = max(h, w)
    if max_side <= 0 or longest <= max_side:
        return frame
    scale = max_side / float(longest)
    size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
    return cv2.resize(frame, size, interpolation=cv2.INTER_AREA)


def compute_signature(frame: np.ndarray, size: int = SIGNATURE_SIZE) -> np.ndarray:
    """Coarse grayscale fingerprint: ``size x size`` downsample, flattened, unit L2 norm.

    A black frame has zero norm and yields the zero vector.
    """
    if frame.ndim == 3:
        if frame.shape[2] == 4:
            gray = cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
        else:
            gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    else:
        gray = frame

    small = cv2.resize(gray, (size, size), interpolation=cv2.INTER_AREA)
    vector = small.astype(np.float32).reshape(-1)
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        norm = 1.0
    signature = vector / norm
    signature.setflags(write=False)
    return signature


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    score = float(np.dot(a, b)) / (norm_a * norm_b)
    return float(np.clip(score, -1.0, 1.0))


def presence_variance(signature: np.ndarray) -> float:
    # Equals 1/n - mean^2 for a unit vector; 0 for the all-black zero signature.
    if signature.size == 0:
        return 0.0
    return float(np.var(signature))


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    n = min(a.size, b.size)
    diff = a.reshape(-1)[:n].astype(np.float32) - b.reshape(-1)[:n].astype(np.float32)
    return float(np.linalg.norm(diff))
