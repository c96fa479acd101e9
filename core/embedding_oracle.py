"""
Embedding Oracle

Turns a camera frame into a face embedding, or reports that no face was found.
The recognition model is an opaque collaborator: the rest of the system only
relies on the EmbeddingOracle contract

    capture(frame) -> embedding | None      (None = NoFaceFound)

and treats None as "no sample this tick", not as an error.

FaceEmbeddingOracle adapts two recognition backends:
  - face_recognition (default): dlib ResNet, 128-dim descriptors. Same model
    family as face-api.js, so the 0.6 Euclidean threshold applies as-is.
  - insightface: buffalo_l bundle with SCRFD + ArcFace, 512-dim normed
    embeddings. Needs its own threshold and embedding_dim in config.yaml.

The model is loaded lazily, exactly once per process, behind an InitOnce latch
so that concurrent first requests do not race to load it twice.

Usage:
    from core.embedding_oracle import FaceEmbeddingOracle, decode_frame

    oracle = FaceEmbeddingOracle({"backend": "face_recognition"})
    embedding = oracle.capture(decode_frame(frame_b64))
    if embedding is None:
        ...  # no face this tick, sample again
"""

import base64
import binascii
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

import cv2
import numpy as np

from core.embedding import to_embedding

logger = logging.getLogger(__name__)


class InitOnce:
    """
    One-shot initialization latch.

    run(fn) calls fn the first time only; concurrent callers block until the
    first call finishes. If fn raises, the latch stays open and a later call
    retries.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._done = threading.Event()

    @property
    def is_set(self) -> bool:
        return self._done.is_set()

    def run(self, fn: Callable[[], None]) -> bool:
        """
        Run fn if it has not completed yet.

        Returns:
            True if this call performed the initialization.
        """
        if self._done.is_set():
            return False
        with self._lock:
            if self._done.is_set():
                return False
            fn()
            self._done.set()
            return True


def decode_frame(frame_b64: str) -> Optional[np.ndarray]:
    """
    Decode a base64-encoded JPEG/PNG image to a BGR numpy array.

    Args:
        frame_b64: Base64-encoded image bytes.

    Returns:
        BGR numpy array or None if decoding fails.
    """
    try:
        img_bytes = base64.b64decode(frame_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Failed to decode frame: {e}")
        return None

    if not img_bytes:
        return None

    np_arr = np.frombuffer(img_bytes, np.uint8)
    frame = cv2.imdecode(np_arr, cv2.IMREAD_COLOR)
    if frame is None:
        logger.warning("Frame bytes are not a decodable image")
    return frame


class EmbeddingOracle(ABC):
    """Contract for the frame -> embedding collaborator."""

    @abstractmethod
    def capture(self, frame: np.ndarray) -> Optional[np.ndarray]:
        """
        Extract an embedding from a BGR frame.

        Args:
            frame: Camera frame in BGR format (H, W, 3), uint8.

        Returns:
            Read-only embedding, or None if no face was found.
        """
        pass

    @property
    def is_loaded(self) -> bool:
        return True


class FaceEmbeddingOracle(EmbeddingOracle):
    """
    Model-backed oracle using face_recognition or insightface.

    Args:
        config: Dictionary with keys:
            - backend: "face_recognition" or "insightface"
            - model: insightface model bundle name (default "buffalo_l")
            - device: "cuda" or "cpu"
            - embedding_dim: Expected output dimension (validated if set)
    """

    BACKENDS = ("face_recognition", "insightface")

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        if config is None:
            config = {}

        self.backend = config.get("backend", "face_recognition")
        if self.backend not in self.BACKENDS:
            raise ValueError(
                f"Unknown embedding backend: {self.backend}. "
                f"Choose one of {', '.join(self.BACKENDS)}"
            )
        self.model_name = config.get("model", "buffalo_l")
        self.device = config.get("device", "cpu")
        self.embedding_dim = config.get("embedding_dim")

        self._model = None
        self._init = InitOnce()

    @property
    def is_loaded(self) -> bool:
        return self._init.is_set

    def load_model(self) -> None:
        """Load the recognition model. Safe to call from many threads."""
        if self._init.run(self._load):
            logger.info(f"Embedding oracle loaded (backend={self.backend})")

    def _load(self) -> None:
        if self.backend == "face_recognition":
            try:
                import face_recognition
            except ImportError as e:
                raise ImportError(
                    "face_recognition not installed. Run: pip install face_recognition"
                ) from e
            self._model = face_recognition
        else:
            try:
                from insightface.app import FaceAnalysis
            except ImportError as e:
                raise ImportError(
                    "insightface not installed. Run: pip install insightface onnxruntime"
                ) from e

            if self.device == "cuda":
                providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
            else:
                providers = ["CPUExecutionProvider"]

            model = FaceAnalysis(name=self.model_name, providers=providers)
            model.prepare(ctx_id=0 if self.device == "cuda" else -1, det_size=(640, 640))
            self._model = model

    def capture(self, frame: np.ndarray) -> Optional[np.ndarray]:
        if frame is None:
            return None

        self.load_model()

        if self.backend == "face_recognition":
            vector = self._capture_face_recognition(frame)
        else:
            vector = self._capture_insightface(frame)

        if vector is None:
            return None
        return to_embedding(vector, self.embedding_dim)

    def _capture_face_recognition(self, frame: np.ndarray) -> Optional[np.ndarray]:
        # dlib expects RGB
        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        locations = self._model.face_locations(rgb)
        if not locations:
            return None

        # (top, right, bottom, left); keep the largest face like detectSingleFace
        best = max(locations, key=lambda box: (box[2] - box[0]) * (box[1] - box[3]))
        encodings = self._model.face_encodings(rgb, known_face_locations=[best])
        if not encodings:
            return None
        return encodings[0]

    def _capture_insightface(self, frame: np.ndarray) -> Optional[np.ndarray]:
        faces = self._model.get(frame)
        if not faces:
            return None

        best_face = max(faces, key=lambda f: f.det_score)
        return best_face.normed_embedding


def iter_samples(
    oracle: EmbeddingOracle,
    frames: Iterable[np.ndarray],
    max_attempts: int,
    timeout_sec: float,
    clock: Callable[[], float] = time.monotonic,
) -> Iterator[Optional[np.ndarray]]:
    """
    Bounded producer of embedding samples.

    Pulls frames from any iterable (webcam reader, list of decoded images) and
    yields one oracle result per frame, None for ticks without a face. Stops
    after max_attempts frames or once timeout_sec has elapsed, whichever
    comes first. Closing the generator cancels sampling; nothing needs to be
    released.

    Args:
        oracle: The embedding oracle.
        frames: Source of BGR frames.
        max_attempts: Maximum number of frames to sample.
        timeout_sec: Wall-clock budget measured from the first pull.
        clock: Monotonic time source.

    Yields:
        Embedding or None per sampled frame.
    """
    deadline = clock() + timeout_sec
    attempts = 0

    for frame in frames:
        if attempts >= max_attempts or clock() >= deadline:
            logger.debug(f"Sampling budget exhausted after {attempts} attempts")
            return
        attempts += 1
        yield oracle.capture(frame)


# Singleton instance for the oracle
_oracle_instance: Optional[FaceEmbeddingOracle] = None
_oracle_guard = threading.Lock()


def get_embedding_oracle() -> FaceEmbeddingOracle:
    """Get or create the process-wide embedding oracle from config."""
    global _oracle_instance

    with _oracle_guard:
        if _oracle_instance is None:
            from core.config import get_embedding_oracle_config, get_matching_config

            oracle_config = dict(get_embedding_oracle_config())
            oracle_config.setdefault("embedding_dim", get_matching_config().get("embedding_dim"))
            _oracle_instance = FaceEmbeddingOracle(oracle_config)

    return _oracle_instance
