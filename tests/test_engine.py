from __future__ import annotations

import threading
from pathlib import Path

import numpy as np
import pytest

pytest.importorskip("PySide6")

from image_pipeline.edit.operations import Brightness, Crop, FlipHorizontal, Rotate
from image_pipeline.errors import DecodeError, DecodeFailure, ValidationError, WorkerPoolError
from image_pipeline.image_engine.decoder import CodecRegistry, DecodeHints
from image_pipeline.image_engine.engine import PipelineEngine
from image_pipeline.image_engine.models import DecodedImage, ImageSource
from image_pipeline.settings_manager import SettingsManager


class _FakeCodec:
    """Decodes b"IMG <w> <h> [frames]" into flat-coloured frames."""

    name = "fake"
    extensions = frozenset({"fake"})
    mime_types = frozenset()
    vector = False
    fallback = True

    def __init__(self) -> None:
        self.gates: dict[bytes, threading.Event] = {}
        self.started: dict[bytes, threading.Event] = {}
        self.decoded: list[bytes] = []

    def gate(self, data: bytes) -> None:
        self.gates[data] = threading.Event()
        self.started[data] = threading.Event()

    def can_decode(self, header: bytes) -> bool:
        return header.startswith(b"IMG")

    def decode(self, data: bytes, hints: DecodeHints) -> DecodedImage:
        if data in self.gates:
            self.started[data].set()
            self.gates[data].wait(5)
        self.decoded.append(data)
        if data.startswith(b"BUG"):
            raise KeyError("codec bug")
        if not data.startswith(b"IMG"):
            raise DecodeError(DecodeFailure.CORRUPT, "not fake", codec=self.name)
        parts = data.split()
        w, h = int(parts[1]), int(parts[2])
        count = int(parts[3]) if len(parts) > 3 and parts[3].isdigit() else 1
        frames = [(np.full((h, w, 4), i * 10, dtype=np.uint8), 0.1) for i in range(count)]
        return DecodedImage.from_frames(frames, self.name)


@pytest.fixture
def codec() -> _FakeCodec:
    return _FakeCodec()


@pytest.fixture
def engine(codec):
    settings = SettingsManager(worker_pool_size=2, coalesce_window_ms=500)
    eng = PipelineEngine(settings=settings, registry=CodecRegistry([codec]))
    eng.shown = []
    eng.failed = []
    eng.evicted = []
    eng.display_ready.connect(eng.shown.append)
    eng.decode_failed.connect(eng.failed.append)
    eng.cache_evicted.connect(eng.evicted.append)
    yield eng
    eng.shutdown(wait=True)


def _settle(engine: PipelineEngine) -> int:
    assert engine.wait_idle(5)
    return engine.poll()


def test_superseded_navigation_displays_only_the_latest(engine, codec) -> None:
    a = ImageSource.from_bytes(b"IMG 4 4 #a")
    b = ImageSource.from_bytes(b"IMG 2 2 #b")
    codec.gate(a.data)

    engine.navigate(a)
    assert codec.started[a.data].wait(5)
    engine.navigate(b)
    assert engine.is_loading
    codec.gates[a.data].set()

    assert _settle(engine) == 1
    assert [e.source for e in engine.shown] == [b]
    assert engine.shown[0].raster.shape == (2, 2, 4)
    assert engine.current_source == b
    assert not engine.is_loading


def test_decode_failure_is_an_event(engine) -> None:
    source = ImageSource.from_bytes(b"garbage")

    engine.navigate(source)
    _settle(engine)

    assert engine.shown == []
    assert len(engine.failed) == 1
    assert engine.failed[0].source == source
    assert engine.failed[0].reason.reason == DecodeFailure.CORRUPT


def test_unexpected_job_exception_is_raised_from_poll(engine) -> None:
    engine.navigate(ImageSource.from_bytes(b"BUG"))

    assert engine.wait_idle(5)
    with pytest.raises(KeyError):
        engine.poll()


def test_edits_undo_redo_emit_display(engine) -> None:
    assert engine.apply_edit(FlipHorizontal()) is False

    engine.navigate(ImageSource.from_bytes(b"IMG 6 4"))
    _settle(engine)
    base = engine.shown[-1].raster

    assert engine.apply_edit(Rotate(1)) is True
    assert engine.shown[-1].raster.shape == (6, 4, 4)
    assert engine.undo() is True
    assert np.array_equal(engine.shown[-1].raster, base)
    assert engine.undo() is False
    assert engine.redo() is True
    assert engine.shown[-1].raster.shape == (6, 4, 4)

    with pytest.raises(ValidationError):
        engine.apply_edit(Crop(0, 0, 6, 4))
    assert engine.history.cursor == 1

    assert engine.revert() is True
    assert np.array_equal(engine.shown[-1].raster, base)


def test_displayed_image_is_pinned_until_navigation(engine) -> None:
    a = ImageSource.from_bytes(b"IMG 2 2 #a")
    b = ImageSource.from_bytes(b"IMG 2 2 #b")

    engine.navigate(a)
    _settle(engine)
    assert engine.cache.is_pinned(a.fingerprint)

    engine.navigate(b)
    _settle(engine)
    assert not engine.cache.is_pinned(a.fingerprint)
    assert engine.cache.is_pinned(b.fingerprint)


def test_renavigating_same_image_keeps_a_single_pin(engine) -> None:
    a = ImageSource.from_bytes(b"IMG 2 2")

    engine.navigate(a)
    _settle(engine)
    engine.navigate(a)
    _settle(engine)
    engine.close()

    assert a.fingerprint not in engine.cache


def test_evictions_are_reported(codec) -> None:
    settings = SettingsManager(worker_pool_size=1, cache_capacity_bytes=40)  # two 2x2 images
    engine = PipelineEngine(settings=settings, registry=CodecRegistry([codec]))
    evicted = []
    engine.cache_evicted.connect(evicted.append)
    try:
        sources = [ImageSource.from_bytes(b"IMG 2 2 #%d" % i) for i in range(3)]
        for source in sources:
            engine.navigate(source)
            _settle(engine)

        assert [e.fingerprint for e in evicted] == [sources[0].fingerprint]
        assert engine.cache.is_pinned(sources[2].fingerprint)
    finally:
        engine.shutdown(wait=True)


def test_animation_ticks_through_frames(engine) -> None:
    engine.navigate(ImageSource.from_bytes(b"IMG 2 2 10"))
    _settle(engine)
    assert engine.animation is not None
    assert engine.shown[-1].frame_index == 0
    assert engine.shown[-1].frame_timing == pytest.approx(0.1)

    assert engine.tick(0.15) is True
    assert engine.shown[-1].frame_index == 1
    assert int(engine.shown[-1].raster[0, 0, 0]) == 10

    total = engine.animation.total_duration
    engine.tick(total + 0.01)
    engine.tick(total)
    assert engine.animation.current_frame() == 1  # 0.15 + 2 * total + 0.01 wraps into frame 1


def test_ten_frame_animation_returns_to_first_frame(engine) -> None:
    engine.navigate(ImageSource.from_bytes(b"IMG 2 2 10"))
    _settle(engine)

    total = engine.animation.total_duration
    engine.tick(total + 0.01)
    engine.tick(total)

    assert engine.animation.current_frame() == 0


def test_edits_apply_to_every_animation_frame(engine) -> None:
    engine.navigate(ImageSource.from_bytes(b"IMG 3 2 3"))
    _settle(engine)

    engine.apply_edit(Brightness(0.1))
    engine.tick(0.1)

    assert int(engine.shown[-1].raster[0, 0, 0]) == 10 + 26
    snapshot = engine.snapshot()
    assert snapshot is not None
    assert [int(f.pixels[0, 0, 0]) for f in snapshot.frames] == [26, 36, 46]
    assert snapshot.durations == [0.1, 0.1, 0.1]


def test_keep_history_restores_edits(engine) -> None:
    a = ImageSource.from_bytes(b"IMG 4 2 #a")
    b = ImageSource.from_bytes(b"IMG 4 2 #b")
    engine.navigate(a)
    _settle(engine)
    engine.apply_edit(Rotate(1))

    engine.navigate(b, keep_history=True)
    _settle(engine)
    assert engine.history.cursor == 0

    engine.navigate(a)
    _settle(engine)
    assert engine.history.operations == (Rotate(1),)
    assert engine.shown[-1].raster.shape == (4, 2, 4)


def test_history_is_discarded_by_default(engine) -> None:
    a = ImageSource.from_bytes(b"IMG 4 2 #a")
    engine.navigate(a)
    _settle(engine)
    engine.apply_edit(Rotate(1))

    engine.navigate(ImageSource.from_bytes(b"IMG 4 2 #b"))
    _settle(engine)
    engine.navigate(a)
    _settle(engine)

    assert engine.history.cursor == 0


def test_prefetch_warms_cache_without_display(engine, codec) -> None:
    sources = [ImageSource.from_bytes(b"IMG 2 2 #p%d" % i) for i in range(2)]

    engine.prefetch(sources)
    _settle(engine)

    assert engine.shown == []
    assert all(s.fingerprint in engine.cache for s in sources)

    engine.navigate(sources[0])
    _settle(engine)
    assert codec.decoded.count(sources[0].data) == 1


def test_reload_decodes_again(engine, codec) -> None:
    source = ImageSource.from_bytes(b"IMG 2 2")
    engine.navigate(source)
    _settle(engine)
    engine.apply_edit(FlipHorizontal())

    engine.reload()
    _settle(engine)

    assert codec.decoded.count(source.data) == 2
    assert engine.history.cursor == 0
    assert engine.cache.is_pinned(source.fingerprint)


def test_open_path_and_sibling_navigation(engine, tmp_path: Path) -> None:
    for name, size in (("a.fake", b"1 1"), ("b.fake", b"2 2"), ("c.fake", b"3 3"), ("notes.txt", b"")):
        (tmp_path / name).write_bytes(b"IMG " + size)

    engine.open_path(tmp_path / "b.fake")
    _settle(engine)
    assert engine.shown[-1].raster.shape == (2, 2, 4)

    engine.navigate_next()
    _settle(engine)
    assert engine.shown[-1].raster.shape == (3, 3, 4)

    engine.navigate_next()
    _settle(engine)
    assert engine.shown[-1].raster.shape == (1, 1, 4)

    engine.navigate_prev()
    _settle(engine)
    assert Path(engine.current_source.path).name == "c.fake"


def test_open_bytes_and_close(engine) -> None:
    engine.open_bytes(b"IMG 2 2", origin="clipboard")
    _settle(engine)
    assert engine.current_source.origin == "clipboard"

    engine.close()

    assert engine.current_source is None
    assert engine.history is None
    assert len(engine.cache) == 0
    assert engine.snapshot() is None
    assert engine.undo() is False


def test_shutdown_rejects_new_work(engine) -> None:
    engine.shutdown(wait=True)

    with pytest.raises(WorkerPoolError):
        engine.navigate(ImageSource.from_bytes(b"IMG 1 1"))


def test_job_crash_does_not_swallow_other_results(engine) -> None:
    target = ImageSource.from_bytes(b"IMG 2 2 #target")
    engine.prefetch([ImageSource.from_bytes(b"BUG #prefetch")])
    engine.navigate(target)

    assert engine.wait_idle(5)
    with pytest.raises(KeyError):
        engine.poll()

    assert [e.source for e in engine.shown] == [target]
    assert not engine.is_loading


def test_crashed_navigation_clears_loading_state(engine) -> None:
    engine.navigate(ImageSource.from_bytes(b"BUG #view"))

    assert engine.wait_idle(5)
    with pytest.raises(KeyError):
        engine.poll()

    assert not engine.is_loading
    assert engine.poll() == 0


def test_kept_histories_are_bounded(codec) -> None:
    # Each 10x10 history holds 400 bytes; room for two.
    settings = SettingsManager(worker_pool_size=1, kept_history_capacity_bytes=800)
    engine = PipelineEngine(settings=settings, registry=CodecRegistry([codec]))
    try:
        sources = [ImageSource.from_bytes(b"IMG 10 10 #%d" % i) for i in range(5)]
        for source in sources:
            engine.navigate(source, keep_history=True)
            _settle(engine)

        assert len(engine._kept) == 2
        assert list(engine._kept) == [sources[2].fingerprint, sources[3].fingerprint]
        assert sum(h.nbytes for h in engine._kept.values()) <= 800
    finally:
        engine.shutdown(wait=True)


def test_kept_history_without_edits_is_restored(engine) -> None:
    a = ImageSource.from_bytes(b"IMG 2 2 #a")
    engine.navigate(a)
    _settle(engine)
    kept = engine.history

    engine.navigate(ImageSource.from_bytes(b"IMG 2 2 #b"), keep_history=True)
    _settle(engine)
    engine.navigate(a)
    _settle(engine)

    assert engine.history is kept


def test_next_image_is_not_evicted_while_the_current_one_is_pinned(codec) -> None:
    from image_pipeline.image_engine.metrics import metrics

    settings = SettingsManager(worker_pool_size=1, cache_capacity_bytes=16)  # one 2x2 image
    engine = PipelineEngine(settings=settings, registry=CodecRegistry([codec]))
    evicted = []
    engine.cache_evicted.connect(evicted.append)
    try:
        a = ImageSource.from_bytes(b"IMG 2 2 #a")
        b = ImageSource.from_bytes(b"IMG 2 2 #b")
        engine.navigate(a)
        _settle(engine)
        metrics.reset()

        engine.navigate(b)
        _settle(engine)

        assert [e.fingerprint for e in evicted] == [a.fingerprint]
        assert engine.cache.is_pinned(b.fingerprint)
        assert engine.cache.weight <= 16
        assert metrics.counter("frame_cache.overshoot") == 0
    finally:
        engine.shutdown(wait=True)
