import math
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import numpy as np

from .config import MATCH_DISTANCE_THRESHOLD, REJECT_MULTIPLE_FACES, SHORTLIST_SIZE
from .imaging import decode_image, euclidean_distance
from .logger import setup_logger
from .types import (
    Candidate,
    DescriptorOracle,
    MatchFound,
    MatchVerdict,
    MultipleFaces,
    NoFace,
    NoMatch,
    RecordStore,
)


@dataclass
class MatcherConfig:
    distance_threshold: float = MATCH_DISTANCE_THRESHOLD
    shortlist_size: int = SHORTLIST_SIZE
    reject_multiple_faces: bool = REJECT_MULTIPLE_FACES


class DescriptorMatcher:
    """Resolves a probe image to at most one shortlisted identity.

    The decision is distance based: the closest candidate wins if its
    Euclidean distance is within ``distance_threshold``. Similarity
    (``max(0, 1 - distance)``) is only reported for display and diagnostics.
    Reference descriptors are cached per identity until :meth:`forget`.
    """

    def __init__(self, oracle: DescriptorOracle, store: RecordStore, config: Optional[MatcherConfig] = None):
        self.oracle = oracle
        self.store = store
        self.config = config or MatcherConfig()
        self.logger = setup_logger(self.__class__.__name__)

        self._lock = threading.Lock()
        self._descriptors: Dict[int, np.ndarray] = {}

    def match(self, probe_image: np.ndarray, candidates: Sequence[Candidate]) -> MatchVerdict:
        probe = self.oracle.extract_descriptor(probe_image)
        if probe is None:
            return NoFace()

        if self.config.reject_multiple_faces:
            face_count = self.oracle.count_faces(probe_image)
            if face_count > 1:
                return MultipleFaces(face_count=face_count)

        probe = np.asarray(probe, dtype=np.float32).reshape(-1)
        best: Optional[Candidate] = None
        best_distance = math.inf

        for candidate in candidates:
            descriptor = self.descriptor_for(candidate)
            if descriptor is None:
                continue
            distance = euclidean_distance(probe, descriptor)
            # Strict comparison keeps the first candidate on ties.
            if distance < best_distance:
                best_distance = distance
                best = candidate

        if best is None:
            return NoMatch(similarity=0.0)

        similarity = max(0.0, 1.0 - best_distance)
        if best_distance <= self.config.distance_threshold:
            return MatchFound(identity=best.identity, similarity=similarity, distance=best_distance)
        return NoMatch(similarity=similarity)

    def descriptor_for(self, candidate: Candidate) -> Optional[np.ndarray]:
        identity_id = candidate.identity.id
        with self._lock:
            cached = self._descriptors.get(identity_id)
            if cached is not None:
                candidate.descriptor = cached
                return cached

        image = decode_image(self.store.get_reference_image(candidate.identity))
        if image is None:
            self.logger.warning("Skipping %s: reference image unreadable", candidate.identity.external_user_id)
            return None

        raw = self.oracle.extract_descriptor(image)
        if raw is None:
            self.logger.warning("Skipping %s: no face in reference image", candidate.identity.external_user_id)
            return None

        return self.remember(identity_id, raw, candidate)

    def remember(self, identity_id: int, descriptor: np.ndarray, candidate: Optional[Candidate] = None) -> np.ndarray:
        vector = np.array(descriptor, dtype=np.float32).reshape(-1)
        vector.setflags(write=False)
        with self._lock:
            stored = self._descriptors.setdefault(identity_id, vector)
            if candidate is not None:
                candidate.descriptor = stored
        return stored

    def forget(self, identity_id: int) -> None:
        with self._lock:
            self._descriptors.pop(identity_id, None)
