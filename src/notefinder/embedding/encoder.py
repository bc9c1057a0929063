"""Embedding model management."""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Protocol, Sequence, Tuple

import numpy as np
import onnxruntime as ort

from notefinder.embedding.tokenizer import WordPieceTokenizer

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
MODEL_FILE = "all-MiniLM-L6-v2.onnx"
VOCAB_FILE = "vocab.txt"
EMBEDDING_DIMENSION = 384
MAX_SEQUENCE_LENGTH = 256

# little-endian float32, the on-disk format of every stored vector
VECTOR_DTYPE = np.dtype("<f4")

logger = logging.getLogger(__name__)


class EmbeddingUnavailable(RuntimeError):
    """Raised when no encoder is loaded or inference cannot run."""


class CorruptEmbeddingError(ValueError):
    """Raised when persisted vector bytes do not decode to a valid vector."""


def serialize_embedding(vector: np.ndarray | Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=VECTOR_DTYPE).tobytes()


def deserialize_embedding(blob: bytes, dimension: int | None = None) -> np.ndarray:
    if len(blob) % VECTOR_DTYPE.itemsize:
        raise CorruptEmbeddingError(f"Vector blob of {len(blob)} bytes is not float32 aligned")
    vector = np.frombuffer(blob, dtype=VECTOR_DTYPE)
    if dimension is not None and vector.shape[0] != dimension:
        raise CorruptEmbeddingError(
            f"Vector has {vector.shape[0]} dimensions, expected {dimension}"
        )
    return vector.astype(np.float32)


def mean_pool(hidden_states: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
    """Average the hidden vectors of positions whose mask is 1.

    With no contributing positions the result is a zero vector.
    """
    hidden = np.asarray(hidden_states, dtype=np.float32)
    mask = np.asarray(attention_mask)[: hidden.shape[0]] == 1
    count = int(mask.sum())
    if count == 0:
        return np.zeros(hidden.shape[-1], dtype=np.float32)
    return hidden[mask].sum(axis=0) / np.float32(count)


def l2_normalize(vector: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    vector = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(vector))
    if norm < eps:
        return vector
    return (vector / norm).astype(np.float32)


def _check_onnx_providers() -> list[str]:
    """Return the ONNX Runtime execution providers available on this machine."""
    try:
        return list(ort.get_available_providers())
    except Exception as exc:  # pragma: no cover - depends on the runtime build
        logger.debug("Could not query ONNX providers: %s", exc)
        return []


@dataclass(slots=True)
class EmbeddingConfig:
    model_dir: Path | None = None
    model_file: str = MODEL_FILE
    vocab_file: str = VOCAB_FILE
    model_name: str = DEFAULT_MODEL
    backend: Literal["onnx", "torch"] = "onnx"
    dimension: int = EMBEDDING_DIMENSION
    max_length: int = MAX_SEQUENCE_LENGTH
    min_model_bytes: int = 1_000_000
    min_vocab_bytes: int = 10_000
    load_timeout: float = 60.0
    load_retry_interval: float = 300.0
    inference_timeout: float | None = 30.0
    max_concurrent_inferences: int = 1
    intra_op_threads: int | None = None
    tokenizer_cache_size: int = 10_000

    @property
    def model_path(self) -> Path | None:
        return self.model_dir / self.model_file if self.model_dir else None

    @property
    def vocab_path(self) -> Path | None:
        return self.model_dir / self.vocab_file if self.model_dir else None


class Encoder(Protocol):
    def hidden_states(self, text: str) -> Tuple[np.ndarray, np.ndarray]:
        """Return per-token hidden vectors and the matching attention mask."""


class OnnxEncoder:
    """Runs an exported transformer through ONNX Runtime with a WordPiece tokenizer."""

    def __init__(
        self,
        model_bytes: bytes,
        tokenizer: WordPieceTokenizer,
        *,
        max_length: int = MAX_SEQUENCE_LENGTH,
        intra_op_threads: int | None = None,
    ) -> None:
        options = ort.SessionOptions()
        options.intra_op_num_threads = intra_op_threads or os.cpu_count() or 1
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        options.enable_mem_pattern = True
        self._session = ort.InferenceSession(
            model_bytes, sess_options=options, providers=["CPUExecutionProvider"]
        )
        self._input_names = {node.name for node in self._session.get_inputs()}
        self.tokenizer = tokenizer
        self.max_length = max_length

    def hidden_states(self, text: str) -> Tuple[np.ndarray, np.ndarray]:
        tokens = self.tokenizer.tokenize(text, self.max_length)
        feeds = {
            "input_ids": tokens.input_ids[np.newaxis, :],
            "attention_mask": tokens.attention_mask[np.newaxis, :],
            "token_type_ids": tokens.token_type_ids[np.newaxis, :],
        }
        outputs = self._session.run(
            None, {name: value for name, value in feeds.items() if name in self._input_names}
        )
        return np.asarray(outputs[0][0], dtype=np.float32), tokens.attention_mask


class SentenceTransformerEncoder:
    """PyTorch fallback used when no exported ONNX model is provisioned."""

    def __init__(self, model_name: str, *, max_length: int = MAX_SEQUENCE_LENGTH) -> None:
        from sentence_transformers import SentenceTransformer

        self._model = SentenceTransformer(model_name)
        self._model.max_seq_length = max_length

    def hidden_states(self, text: str) -> Tuple[np.ndarray, np.ndarray]:
        tokens = self._model.encode([text], output_value="token_embeddings")[0]
        if hasattr(tokens, "detach"):
            tokens = tokens.detach().cpu().numpy()
        hidden = np.asarray(tokens, dtype=np.float32)
        return hidden, np.ones(hidden.shape[0], dtype=np.int64)


class EmbeddingModel:
    """Owned, lazily initialized text encoder producing unit-norm vectors.

    Features:
    - Idempotent, mutually exclusive initialization; concurrent callers
      collapse onto one load
    - Bounded model load: a hung load is abandoned and retried after an interval
    - Mask-aware mean pooling followed by L2 normalization
    - A semaphore bounding concurrent inference on the shared session
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        self.dimension = self.config.dimension
        self._encoder: Encoder | None = None
        self._init_lock = threading.Lock()
        self._pending_load: Future | None = None
        self._load_deadline = 0.0
        self._retry_at = 0.0
        self._loader = ThreadPoolExecutor(max_workers=1, thread_name_prefix="model-load")
        self._inference_slots = threading.BoundedSemaphore(
            max(1, self.config.max_concurrent_inferences)
        )

    @property
    def is_initialized(self) -> bool:
        return self._encoder is not None

    def is_model_available(self) -> bool:
        """Check that the model artifacts exist and look complete."""
        if self.config.backend == "torch":
            return True
        model_path, vocab_path = self.config.model_path, self.config.vocab_path
        if model_path is None or vocab_path is None:
            return False
        try:
            return (
                model_path.is_file()
                and model_path.stat().st_size >= self.config.min_model_bytes
                and vocab_path.is_file()
                and vocab_path.stat().st_size >= self.config.min_vocab_bytes
            )
        except OSError:
            return False

    def initialize(self) -> bool:
        """Load the encoder once. Returns False when it cannot be loaded yet.

        Concurrent callers share one load and one deadline. A load still
        running at its deadline is abandoned; until ``load_retry_interval``
        has passed further calls return False at once, then a fresh load is
        started on a new helper thread.
        """
        if self._encoder is not None:
            return True
        with self._init_lock:
            if self._encoder is not None:
                return True
            if self._pending_load is None:
                if time.monotonic() < self._retry_at:
                    return False
                if not self.is_model_available():
                    logger.info("Model artifacts not available in %s", self.config.model_dir)
                    return False
                self._pending_load = self._loader.submit(self._load_encoder)
                self._load_deadline = time.monotonic() + self.config.load_timeout
            pending = self._pending_load
            deadline = self._load_deadline

        try:
            encoder = pending.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeoutError:
            self._abandon_load(pending)
            return False
        except Exception as exc:
            logger.error("Failed to load embedding model: %s", exc)
            with self._init_lock:
                if self._pending_load is pending:
                    self._pending_load = None
            return False

        with self._init_lock:
            if self._encoder is None:
                self._encoder = encoder
                self._pending_load = None
                self._log_backend_info()
        return True

    def _abandon_load(self, pending: Future) -> None:
        with self._init_lock:
            if self._pending_load is not pending:
                return
            logger.warning(
                "Model load exceeded %.1fs; retrying in %.1fs",
                self.config.load_timeout,
                self.config.load_retry_interval,
            )
            self._pending_load = None
            self._retry_at = time.monotonic() + self.config.load_retry_interval
            # the hung thread cannot be interrupted; later loads get a fresh one
            self._loader.shutdown(wait=False, cancel_futures=True)
            self._loader = ThreadPoolExecutor(max_workers=1, thread_name_prefix="model-load")

    def _load_encoder(self) -> Encoder:
        if self.config.backend == "torch":
            return SentenceTransformerEncoder(self.config.model_name, max_length=self.config.max_length)

        tokenizer = WordPieceTokenizer.from_file(
            self.config.vocab_path, cache_size=self.config.tokenizer_cache_size
        )
        model_bytes = self.config.model_path.read_bytes()
        try:
            return OnnxEncoder(
                model_bytes,
                tokenizer,
                max_length=self.config.max_length,
                intra_op_threads=self.config.intra_op_threads,
            )
        except Exception as exc:
            logger.warning(
                "Failed to load ONNX model %s: %s. Falling back to PyTorch.",
                self.config.model_path,
                exc,
            )
            self.config.backend = "torch"
            return SentenceTransformerEncoder(self.config.model_name, max_length=self.config.max_length)

    def _log_backend_info(self) -> None:
        info_parts = [f"Backend: {self.config.backend}", f"Dimension: {self.dimension}"]
        if self.config.backend == "onnx":
            info_parts.append(f"ONNX Providers: {', '.join(_check_onnx_providers())}")
            info_parts.append(f"ONNX Model: {self.config.model_path}")
        else:
            info_parts.append(f"Model: {self.config.model_name}")
        logger.info(" | ".join(info_parts))

    def embed(self, text: str) -> np.ndarray:
        """Return a unit-norm float32 vector for ``text``.

        Raises:
            EmbeddingUnavailable: if the model is not loaded, or inference is
                busy past ``inference_timeout``.
        """
        if self._encoder is None and not self.initialize():
            raise EmbeddingUnavailable("Embedding model is not loaded")
        encoder = self._encoder

        timeout = self.config.inference_timeout
        acquired = self._inference_slots.acquire(timeout=timeout) if timeout else self._inference_slots.acquire()
        if not acquired:
            raise EmbeddingUnavailable("Timed out waiting for the inference session")
        try:
            hidden, mask = encoder.hidden_states(text)
        except Exception as exc:
            raise EmbeddingUnavailable(f"Inference failed: {exc}") from exc
        finally:
            self._inference_slots.release()

        vector = l2_normalize(mean_pool(hidden, mask))
        if vector.shape[0] != self.dimension:
            raise EmbeddingUnavailable(
                f"Encoder produced {vector.shape[0]} dimensions, expected {self.dimension}"
            )
        return vector

    def embed_query(self, text: str) -> np.ndarray:
        """Convenience wrapper for single-query embedding."""
        return self.embed(text)

    def close(self) -> None:
        self._encoder = None
        self._loader.shutdown(wait=False, cancel_futures=True)
