import threading
import time
from concurrent.futures import Future
from typing import Dict, List, Optional, Tuple

import numpy as np

from .config import SIGNATURE_SIZE
from .imaging import compute_signature, cosine_similarity, decode_image
from .logger import setup_logger
from .types import Candidate, RecordStore


class SignatureIndex:
    """In-memory shortlist cache of every enrolled identity's coarse signature.

    Owned by the caller; build it once per process (or per test) and share it.
    A single lock guards the cache: at most one rebuild is in flight at any
    time, and a candidate's signature is published only once fully computed.
    """

    def __init__(self, store: RecordStore, signature_size: int = SIGNATURE_SIZE):
        self.store = store
        self.signature_size = signature_size
        self.logger = setup_logger(self.__class__.__name__)

        self._lock = threading.Lock()
        self._candidates: Optional[List[Candidate]] = None
        self._retired: List[Candidate] = []
        self._build_future: Optional["Future[List[Candidate]]"] = None
        self._generation = 0

    def build(self) -> List[Candidate]:
        with self._lock:
            in_flight = self._build_future
            if in_flight is None:
                future: "Future[List[Candidate]]" = Future()
                self._build_future = future
                generation = self._generation
                previous = self._candidates or self._retired

        if in_flight is not None:
            return list(in_flight.result())

        started = time.perf_counter()
        try:
            candidates = self._populate(previous)
        except Exception as exc:
            with self._lock:
                self._build_future = None
            future.set_exception(exc)
            raise

        with self._lock:
            # An invalidate() during the build makes this result stale for the cache.
            if generation == self._generation:
                self._candidates = candidates
                self._retired = []
            self._build_future = None
        future.set_result(candidates)

        self.logger.info(
            "Candidate index built with %d identities in %.1fms",
            len(candidates),
            (time.perf_counter() - started) * 1000.0,
        )
        return list(candidates)

    def invalidate(self) -> None:
        with self._lock:
            if self._candidates is not None:
                self._retired = self._candidates
            self._candidates = None
            self._generation += 1
        self.logger.info("Candidate index invalidated")

    def candidates(self) -> List[Candidate]:
        with self._lock:
            cached = self._candidates
        if cached is None:
            return self.build()
        return list(cached)

    def rank(self, probe_image: np.ndarray) -> List[Tuple[Candidate, float]]:
        candidates = self.candidates()
        if not candidates:
            return []

        probe_signature = compute_signature(probe_image, self.signature_size)
        self.ensure_signatures(candidates)

        scored = []
        for candidate in candidates:
            signature = candidate.signature
            score = cosine_similarity(probe_signature, signature) if signature is not None else -1.0
            scored.append((candidate, score))
        # sorted() is stable, so equal scores keep cache insertion order.
        return sorted(scored, key=lambda item: item[1], reverse=True)

    def shortlist(self, probe_image: np.ndarray, k: int) -> List[Candidate]:
        if k <= 0:
            return []
        return [candidate for candidate, _ in self.rank(probe_image)[:k]]

    def ensure_signatures(self, candidates: List[Candidate]) -> None:
        for candidate in candidates:
            if candidate.signature is not None:
                continue
            signature = self._signature_for(candidate)
            if signature is None:
                continue
            with self._lock:
                if candidate.signature is None:
                    candidate.signature = signature

    def _signature_for(self, candidate: Candidate) -> Optional[np.ndarray]:
        data = self.store.get_reference_image(candidate.identity)
        image = decode_image(data)
        if image is None:
            self.logger.warning(
                "Reference image for %s is unreadable; ranking it last",
                candidate.identity.external_user_id,
            )
            return None
        return compute_signature(image, self.signature_size)

    def _populate(self, previous: List[Candidate]) -> List[Candidate]:
        identities = self.store.list_identities()
        known: Dict[int, Candidate] = {item.identity.id: item for item in previous}

        candidates: List[Candidate] = []
        for identity in identities:
            cached = known.get(identity.id)
            signature = cached.signature if cached is not None else None
            candidates.append(Candidate(identity=identity, signature=signature))
        return candidates
