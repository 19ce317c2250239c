import os
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .config import FRAME_FPS, FRAME_HEIGHT, FRAME_WIDTH
from .exceptions import CameraError


def _capture_backends() -> List[Tuple[str, Optional[int]]]:
    # DirectShow is the more reliable backend for laptop webcams on Windows.
    if os.name == "nt":
        order = [("DirectShow", "CAP_DSHOW"), ("Media Foundation", "CAP_MSMF"), ("Auto", "CAP_ANY")]
    else:
        order = [("Auto", "CAP_ANY"), ("V4L2", "CAP_V4L2")]
    return [(name, getattr(cv2, attr, None)) for name, attr in order]


class CameraStream:
    """Live webcam frame source for the auto-capture loop.

    ``read()`` returns ``None`` for a dropped frame; it raises ``CameraError``
    only when the stream is not open.
    """

    def __init__(self, camera_index: int = 0):
        self.camera_index = camera_index
        self.cap: Optional[cv2.VideoCapture] = None
        self.backend_name: Optional[str] = None

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        attempted: List[str] = []
        for backend_name, backend in _capture_backends():
            attempted.append(backend_name)
            cap = cv2.VideoCapture(self.camera_index) if backend is None else cv2.VideoCapture(self.camera_index, backend)
            if cap.isOpened():
                cap.set(cv2.CAP_PROP_FRAME_WIDTH, FRAME_WIDTH)
                cap.set(cv2.CAP_PROP_FRAME_HEIGHT, FRAME_HEIGHT)
                cap.set(cv2.CAP_PROP_FPS, FRAME_FPS)
                self.cap = cap
                self.backend_name = backend_name
                return
            cap.release()

        raise CameraError(
            f"Unable to open webcam index {self.camera_index}. Tried backends: {', '.join(attempted)}.",
            "open",
        )

    def read(self) -> Optional[np.ndarray]:
        if self.cap is None:
            raise CameraError("Webcam stream is not initialized.", "read")

        success, frame = self.cap.read()
        if not success or frame is None:
            return None
        return frame

    def close(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None
