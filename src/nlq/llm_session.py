"""
Model session -- lazily loaded local language model behind a single lock.

State machine:

    UNINITIALIZED -> INITIALIZING -> READY
                                  -> FAILED   (terminal for the process)

The session is built once at startup and passed explicitly to whoever needs
it (API lifespan -> app.state -> request dependencies).  ``ensure_ready``
uses double-checked locking so concurrent first callers share one load
attempt.  After the first failure the cached error is re-raised on every
call; callers fall back to the rule-based path.

The default loader uses ``llama-cpp-python``; tests inject their own.
"""
from __future__ import annotations

import struct
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Generator, Iterable

from src.core.config import Settings, get_settings
from src.core.errors import (
    ModelLoadError,
    ModelNotFoundError,
    ModelTimeoutError,
    ModelUnavailableError,
)
from src.core.logging import get_logger

logger = get_logger(__name__)

_GGUF_MAGIC = b"GGUF"
_GGUF_VERSIONS = (2, 3)
_MAX_TENSORS = 10_000
_MIN_MODEL_BYTES = 1024 * 1024
_LARGE_MODEL_BYTES = 8 * 1024 ** 3
_SAFE_CONTEXT_SIZE = 2048
_DEFAULT_CHAR_CAP = 2048

# Load failures that usually mean the memory-mapped file layout is not
# supported on this host; retried once without mmap.
_MEMORY_LAYOUT_MARKERS = ("access violation", "0xc0000005", "mmap", "failed to map")


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ModelOptions:
    model_path: str
    context_size: int = 2048
    gpu_layers: int = 0
    max_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    timeout_seconds: float = 30.0
    verbose: bool = False
    use_mmap: bool = True

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ModelOptions":
        s = settings or get_settings()
        return cls(
            model_path=s.model_path,
            context_size=s.model_context_size,
            gpu_layers=s.model_gpu_layers,
            max_tokens=s.model_max_tokens,
            temperature=s.model_temperature,
            top_p=s.model_top_p,
            top_k=s.model_top_k,
            timeout_seconds=s.model_timeout_seconds,
            verbose=s.model_verbose,
        )

    def conservative(self) -> "ModelOptions":
        return replace(
            self,
            use_mmap=False,
            context_size=min(self.context_size, _SAFE_CONTEXT_SIZE),
        )


ModelLoader = Callable[[ModelOptions], Any]


# ── Loading ──────────────────────────────────────────────

def llama_cpp_loader(options: ModelOptions) -> Any:
    """Construct a ``llama_cpp.Llama`` for *options*."""
    try:
        from llama_cpp import Llama  # type: ignore[import-untyped]
    except ImportError as exc:
        raise ModelLoadError(
            "The 'llama-cpp-python' package is not installed.  "
            "Run: pip install llama-cpp-python"
        ) from exc

    return Llama(
        model_path=options.model_path,
        n_ctx=options.context_size,
        n_gpu_layers=options.gpu_layers,
        use_mmap=options.use_mmap,
        verbose=options.verbose,
    )


def check_model_file(path: str | Path) -> int:
    """Validate the model file and return its size in bytes.

    Raises
    ------
    ModelNotFoundError
        If the file does not exist.
    ModelLoadError
        If the file is too small or its GGUF header is not usable.
    """
    p = Path(path)
    if not p.is_file():
        raise ModelNotFoundError(f"Model file not found: {p}")

    size = p.stat().st_size
    if size < _MIN_MODEL_BYTES:
        raise ModelLoadError(f"Model file is too small to be valid ({size} bytes): {p}")
    if size > _LARGE_MODEL_BYTES:
        logger.warning("Model file is large (%.1f GB) -- loading may be slow", size / 1024 ** 3)

    if p.suffix.lower() == ".gguf":
        with open(p, "rb") as f:
            header = f.read(16)
        if len(header) < 16:
            raise ModelLoadError(f"Truncated GGUF header: {p}")
        magic, version, tensor_count = struct.unpack("<4sIQ", header)
        if magic != _GGUF_MAGIC:
            raise ModelLoadError(f"Not a GGUF file (magic={magic!r}): {p}")
        if version not in _GGUF_VERSIONS:
            raise ModelLoadError(f"Unsupported GGUF version {version} (supported: 2, 3)")
        if tensor_count <= 0 or tensor_count > _MAX_TENSORS:
            raise ModelLoadError(f"Implausible GGUF tensor count: {tensor_count}")

    return size


def _is_memory_layout_error(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return any(marker in msg for marker in _MEMORY_LAYOUT_MARKERS)


# ── Session ──────────────────────────────────────────────

class ModelSession:
    """Reference-counted handle to the local model."""

    def __init__(self, options: ModelOptions, loader: ModelLoader | None = None) -> None:
        self.options = options
        self._loader = loader or llama_cpp_loader
        self._lock = threading.Lock()
        self._state = SessionState.UNINITIALIZED
        self._model: Any = None
        self._error: ModelUnavailableError | None = None
        self._refs = 1
        self._closed = False
        self._file_size: int | None = None
        self._load_ms: int | None = None
        self._effective_options = options

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is SessionState.READY

    # ── Lifecycle ────────────────────────────────────

    def ensure_ready(self) -> None:
        """Load the model if needed.

        Raises the cached ``ModelUnavailableError`` subclass when the session
        has already failed; never retries.
        """
        if self._state is SessionState.READY:
            return
        with self._lock:
            if self._closed:
                raise ModelUnavailableError("Model session is closed")
            if self._state is SessionState.READY:
                return
            if self._state is SessionState.FAILED:
                raise self._error or ModelUnavailableError("Model session failed")
            self._initialize()

    def _initialize(self) -> None:
        self._state = SessionState.INITIALIZING
        logger.info("Model session initializing  path=%s", self.options.model_path)
        t0 = time.perf_counter()
        try:
            self._file_size = check_model_file(self.options.model_path)
            try:
                self._model = self._load_with_timeout(self.options)
                self._effective_options = self.options
            except ModelLoadError as exc:
                if not _is_memory_layout_error(exc):
                    raise
                retry_options = self.options.conservative()
                logger.warning(
                    "Model load hit a memory-layout error; retrying with use_mmap=False n_ctx=%d",
                    retry_options.context_size,
                )
                self._model = self._load_with_timeout(retry_options)
                self._effective_options = retry_options
        except ModelUnavailableError as exc:
            self._fail(exc)
            raise
        except Exception as exc:
            err = ModelLoadError(f"Model initialization failed: {exc}")
            self._fail(err)
            raise err from exc

        self._load_ms = int((time.perf_counter() - t0) * 1000)
        self._state = SessionState.READY
        logger.info("Model session ready in %dms", self._load_ms)

    def _load_with_timeout(self, options: ModelOptions) -> Any:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="model-load")
        future = pool.submit(self._loader, options)
        try:
            return future.result(timeout=options.timeout_seconds)
        except FutureTimeout as exc:
            future.cancel()
            raise ModelTimeoutError(
                f"Model load exceeded {options.timeout_seconds:g}s"
            ) from exc
        except ModelUnavailableError:
            raise
        except Exception as exc:
            raise ModelLoadError(f"Model load failed: {exc}") from exc
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _fail(self, exc: ModelUnavailableError) -> None:
        self._error = exc
        self._state = SessionState.FAILED
        logger.error("Model session failed permanently: %s", exc)

    def reset(self) -> None:
        """Drop the loaded model and any cached failure."""
        with self._lock:
            self._free()
            self._state = SessionState.UNINITIALIZED
            self._error = None
            self._closed = False

    def retain(self) -> None:
        with self._lock:
            self._refs += 1

    def release(self) -> None:
        with self._lock:
            self._refs = max(0, self._refs - 1)
            if self._refs == 0:
                self._closed = True
                self._free()

    def close(self) -> None:
        """Release the owner's reference."""
        self.release()

    @contextmanager
    def lease(self) -> Generator["ModelSession", None, None]:
        """Hold a reference for the duration of a request."""
        self.retain()
        try:
            yield self
        finally:
            self.release()

    def _free(self) -> None:
        model, self._model = self._model, None
        if model is not None and hasattr(model, "close"):
            model.close()
        if self._state is SessionState.READY:
            self._state = SessionState.UNINITIALIZED

    # ── Inference ────────────────────────────────────

    def infer(
        self,
        prompt: str,
        stop: Iterable[str] = (),
        max_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        top_k: int | None = None,
        char_cap: int = _DEFAULT_CHAR_CAP,
    ) -> str:
        """Generate text for *prompt*; calls are serialized."""
        self.ensure_ready()
        stop = [s for s in stop if s]
        max_tokens = max_tokens or self.options.max_tokens

        with self._lock:
            if self._model is None:
                raise ModelUnavailableError("Model session is closed")
            try:
                stream = self._model(
                    prompt,
                    max_tokens=max_tokens,
                    temperature=self.options.temperature if temperature is None else temperature,
                    top_p=top_p if top_p is not None else self.options.top_p,
                    top_k=top_k if top_k is not None else self.options.top_k,
                    stop=stop,
                    stream=True,
                )
                text = _consume_stream(stream, stop, max_tokens, char_cap)
            except Exception as exc:
                raise ModelUnavailableError(f"Inference failed: {exc}") from exc

        logger.info("Inference produced %d chars", len(text))
        return text.strip()

    def model_info(self) -> dict[str, Any]:
        opts = self._effective_options
        return {
            "state": self._state.value,
            "model_path": self.options.model_path,
            "model_exists": Path(self.options.model_path).is_file(),
            "file_size_bytes": self._file_size,
            "context_size": opts.context_size,
            "use_mmap": opts.use_mmap,
            "gpu_layers": opts.gpu_layers,
            "load_time_ms": self._load_ms,
            "last_error": str(self._error) if self._error else None,
        }


def _consume_stream(stream: Iterable[Any], stop: list[str], max_tokens: int, char_cap: int) -> str:
    """Accumulate streamed chunks until a stop sequence, the token budget or the char cap."""
    text = ""
    tokens = 0
    for chunk in stream:
        text += _chunk_text(chunk)
        tokens += 1

        cut = min((i for i in (text.find(s) for s in stop) if i != -1), default=-1)
        if cut != -1:
            return text[:cut]
        if len(text) >= char_cap:
            logger.warning("Inference hit the %d-char safety cap", char_cap)
            return text[:char_cap]
        if tokens >= max_tokens:
            break
    return text


def _chunk_text(chunk: Any) -> str:
    if isinstance(chunk, str):
        return chunk
    try:
        return chunk["choices"][0]["text"] or ""
    except (KeyError, IndexError, TypeError):
        return ""


def build_session(settings: Settings | None = None, loader: ModelLoader | None = None) -> ModelSession:
    """Create the process-wide session from settings (not loaded yet)."""
    return ModelSession(ModelOptions.from_settings(settings), loader=loader)
