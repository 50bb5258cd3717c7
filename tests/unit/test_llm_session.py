"""
Unit tests -- model session: lazy load, single-flight init, failure state,
timeouts, mmap retry and streamed inference.  Loaders are fakes; no real
model is ever loaded.
"""
from __future__ import annotations

import struct
import threading
import time

import pytest

from src.core.errors import (
    ModelLoadError,
    ModelNotFoundError,
    ModelTimeoutError,
    ModelUnavailableError,
)
from src.nlq.llm_session import (
    ModelOptions,
    ModelSession,
    SessionState,
    check_model_file,
)

_ONE_MB = 1024 * 1024


def _model_file(tmp_path, name="model.bin", header=b""):
    path = tmp_path / name
    path.write_bytes(header + b"\0" * (_ONE_MB + 16))
    return str(path)


def _chunks(*texts):
    return iter({"choices": [{"text": t}]} for t in texts)


class FakeModel:
    def __init__(self, texts=("ok",), error=None):
        self.texts = texts
        self.error = error
        self.calls = []

    def __call__(self, prompt, **kwargs):
        self.calls.append((prompt, kwargs))
        if self.error:
            raise self.error
        return _chunks(*self.texts)


class CountingLoader:
    def __init__(self, model=None, delay=0.0, error=None):
        self.model = model or FakeModel()
        self.delay = delay
        self.error = error
        self.calls = 0
        self.options_seen = []
        self._lock = threading.Lock()

    def __call__(self, options):
        with self._lock:
            self.calls += 1
            self.options_seen.append(options)
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.model


# ── Lazy loading ─────────────────────────────────────────

def test_session_starts_uninitialized(tmp_path):
    loader = CountingLoader()
    session = ModelSession(ModelOptions(model_path=_model_file(tmp_path)), loader=loader)
    assert session.state is SessionState.UNINITIALIZED
    assert loader.calls == 0


def test_ensure_ready_loads_once(tmp_path):
    loader = CountingLoader()
    session = ModelSession(ModelOptions(model_path=_model_file(tmp_path)), loader=loader)
    session.ensure_ready()
    session.ensure_ready()
    assert session.is_ready
    assert loader.calls == 1


def test_concurrent_ensure_ready_single_load(tmp_path):
    """Many first callers at once must share one load."""
    loader = CountingLoader(delay=0.05)
    session = ModelSession(ModelOptions(model_path=_model_file(tmp_path)), loader=loader)
    barrier = threading.Barrier(8)
    errors = []

    def worker():
        barrier.wait()
        try:
            session.ensure_ready()
        except Exception as exc:  # pragma: no cover - surfaced by the assert below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert loader.calls == 1
    assert session.state is SessionState.READY


# ── Failure state ────────────────────────────────────────

def test_missing_model_file(tmp_path):
    loader = CountingLoader()
    session = ModelSession(ModelOptions(model_path=str(tmp_path / "nope.gguf")), loader=loader)
    with pytest.raises(ModelNotFoundError):
        session.ensure_ready()
    assert session.state is SessionState.FAILED
    assert loader.calls == 0


def test_failed_state_is_permanent(tmp_path):
    loader = CountingLoader(error=RuntimeError("boom"))
    session = ModelSession(ModelOptions(model_path=_model_file(tmp_path)), loader=loader)

    with pytest.raises(ModelLoadError) as first:
        session.ensure_ready()
    with pytest.raises(ModelLoadError) as second:
        session.ensure_ready()

    assert first.value is second.value
    assert "boom" in str(first.value)
    assert loader.calls == 1
    assert session.state is SessionState.FAILED


def test_failed_session_rejects_inference(tmp_path):
    loader = CountingLoader(error=RuntimeError("boom"))
    session = ModelSession(ModelOptions(model_path=_model_file(tmp_path)), loader=loader)
    for _ in range(3):
        with pytest.raises(ModelUnavailableError):
            session.infer("hi")
    assert loader.calls == 1


def test_load_timeout(tmp_path):
    loader = CountingLoader(delay=1.0)
    options = ModelOptions(model_path=_model_file(tmp_path), timeout_seconds=0.05)
    session = ModelSession(options, loader=loader)
    with pytest.raises(ModelTimeoutError, match="exceeded"):
        session.ensure_ready()
    assert session.state is SessionState.FAILED


def test_mmap_error_retries_conservatively(tmp_path):
    model = FakeModel()

    def loader(options):
        if options.use_mmap:
            raise RuntimeError("failed to map model segment")
        return model

    options = ModelOptions(model_path=_model_file(tmp_path), context_size=8192)
    session = ModelSession(options, loader=loader)
    session.ensure_ready()

    info = session.model_info()
    assert session.is_ready
    assert info["use_mmap"] is False
    assert info["context_size"] == 2048


def test_non_layout_error_is_not_retried(tmp_path):
    loader = CountingLoader(error=RuntimeError("unknown architecture"))
    session = ModelSession(ModelOptions(model_path=_model_file(tmp_path)), loader=loader)
    with pytest.raises(ModelLoadError):
        session.ensure_ready()
    assert loader.calls == 1


def test_reset_allows_new_attempt(tmp_path):
    loader = CountingLoader(error=RuntimeError("boom"))
    session = ModelSession(ModelOptions(model_path=_model_file(tmp_path)), loader=loader)
    with pytest.raises(ModelLoadError):
        session.ensure_ready()

    loader.error = None
    session.reset()
    session.ensure_ready()
    assert session.is_ready
    assert loader.calls == 2


# ── File checks ──────────────────────────────────────────

def test_small_file_rejected(tmp_path):
    path = tmp_path / "tiny.bin"
    path.write_bytes(b"\0" * 10)
    with pytest.raises(ModelLoadError, match="too small"):
        check_model_file(path)


def test_gguf_header_accepted(tmp_path):
    header = struct.pack("<4sIQ", b"GGUF", 3, 291)
    size = check_model_file(_model_file(tmp_path, "m.gguf", header))
    assert size > _ONE_MB


def test_gguf_bad_magic(tmp_path):
    header = struct.pack("<4sIQ", b"GGML", 3, 291)
    with pytest.raises(ModelLoadError, match="Not a GGUF"):
        check_model_file(_model_file(tmp_path, "m.gguf", header))


def test_gguf_unsupported_version(tmp_path):
    header = struct.pack("<4sIQ", b"GGUF", 1, 291)
    with pytest.raises(ModelLoadError, match="version"):
        check_model_file(_model_file(tmp_path, "m.gguf", header))


def test_gguf_implausible_tensor_count(tmp_path):
    header = struct.pack("<4sIQ", b"GGUF", 2, 0)
    with pytest.raises(ModelLoadError, match="tensor count"):
        check_model_file(_model_file(tmp_path, "m.gguf", header))


# ── Inference ────────────────────────────────────────────

def _ready_session(tmp_path, model, **opts):
    session = ModelSession(ModelOptions(model_path=_model_file(tmp_path), **opts), loader=CountingLoader(model))
    session.ensure_ready()
    return session


def test_infer_truncates_at_stop_sequence(tmp_path):
    model = FakeModel(texts=('{"a": 1}', "\n\nUser:", " more"))
    session = _ready_session(tmp_path, model)
    assert session.infer("prompt", stop=["\n\n", "User:"]) == '{"a": 1}'


def test_infer_respects_char_cap(tmp_path):
    model = FakeModel(texts=["x" * 100] * 10)
    session = _ready_session(tmp_path, model)
    assert len(session.infer("prompt", char_cap=150)) == 150


def test_infer_respects_token_budget(tmp_path):
    model = FakeModel(texts=["a", "b", "c", "d", "e"])
    session = _ready_session(tmp_path, model)
    assert session.infer("prompt", max_tokens=3) == "abc"


def test_infer_passes_sampling_options(tmp_path):
    model = FakeModel()
    session = _ready_session(tmp_path, model, temperature=0.7)
    session.infer("prompt", stop=["Q:"], temperature=0.1, top_k=10)

    _, kwargs = model.calls[0]
    assert kwargs["temperature"] == 0.1
    assert kwargs["top_k"] == 10
    assert kwargs["top_p"] == 0.9
    assert kwargs["stop"] == ["Q:"]
    assert kwargs["stream"] is True


def test_infer_wraps_model_errors(tmp_path):
    model = FakeModel(error=ValueError("kv cache full"))
    session = _ready_session(tmp_path, model)
    with pytest.raises(ModelUnavailableError, match="kv cache full"):
        session.infer("prompt")


# ── Reference counting ───────────────────────────────────

def test_close_releases_model(tmp_path):
    session = _ready_session(tmp_path, FakeModel())
    session.close()
    assert not session.is_ready
    with pytest.raises(ModelUnavailableError, match="closed"):
        session.ensure_ready()


def test_lease_keeps_session_open_during_close(tmp_path):
    session = _ready_session(tmp_path, FakeModel(texts=("still here",)))
    with session.lease():
        session.close()
        assert session.infer("prompt") == "still here"
    with pytest.raises(ModelUnavailableError):
        session.infer("prompt")


def test_conservative_options():
    opts = ModelOptions(model_path="m.gguf", context_size=4096).conservative()
    assert opts.use_mmap is False
    assert opts.context_size == 2048
