"""Pipeline Engine - the coordinator between the shell and the pipeline.

PipelineEngine is the single object a viewer shell talks to. It owns the
codec registry, the frame cache, the load scheduler, the edit history of the
displayed image and its animation driver, and turns shell requests into
events:

    navigate/open_* ──> LoadScheduler ──> CodecRegistry ──> FrameCache
                                                               │
    display_ready <── AnimationDriver <── EditHistory <── poll()

All public methods must be called from the interactive (Qt main) thread.
Decode jobs run on worker threads; their results are handed over by
`poll()`, which the shell calls when `result_ready` fires (or on a timer).
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Iterable
from pathlib import Path

from PySide6.QtCore import QObject, Signal

from image_pipeline.edit.history import EditHistory
from image_pipeline.edit.operations import EditOperation
from image_pipeline.logger import get_logger
from image_pipeline.settings_manager import SettingsManager

from .animation import AnimationDriver
from .decoder import CodecRegistry
from .frame_cache import FrameCache
from .image_list import ImageList
from .loader import VIEW_SLOT, LoadScheduler, LoadToken
from .metrics import metrics
from .models import CacheEvicted, DecodedImage, DecodeFailed, DisplayReady, ImageSource

_logger = get_logger("engine")

_PREFETCH_SLOT = "prefetch:"


class PipelineEngine(QObject):
    """Image pipeline coordinator.

    Signals:
        display_ready: A raster is ready to show (DisplayReady)
        decode_failed: The requested source could not be decoded (DecodeFailed)
        cache_evicted: A decoded image left the cache for capacity (CacheEvicted)
        result_ready: A background decode finished; call poll()
    """

    display_ready = Signal(object)
    decode_failed = Signal(object)
    cache_evicted = Signal(object)
    result_ready = Signal()

    def __init__(
        self,
        settings: SettingsManager | None = None,
        registry: CodecRegistry | None = None,
        parent: QObject | None = None,
    ):
        super().__init__(parent)
        self._settings = settings or SettingsManager()
        self._registry = registry or CodecRegistry(default_target_size=self._settings.vector_default_size)
        self._cache = FrameCache(self._settings.cache_capacity_bytes)
        self._scheduler = LoadScheduler(self._decode_job, max_workers=self._settings.worker_pool_size, parent=self)
        self._scheduler.result_ready.connect(self.result_ready)
        self._images = ImageList(self._registry.extensions)

        # Outstanding navigation, if any.
        self._token: LoadToken | None = None
        # What is on screen.
        self._source: ImageSource | None = None
        self._image: DecodedImage | None = None
        self._key: str | None = None
        self._pinned: str | None = None
        self._history: EditHistory | None = None
        self._animation: AnimationDriver | None = None
        # Histories preserved by navigate(keep_history=True), by cache key, oldest first.
        self._kept: OrderedDict[str, EditHistory] = OrderedDict()
        self._display_size: tuple[int, int] | None = None
        self._closed = False

        _logger.debug(
            "PipelineEngine initialized: capacity=%d workers=%d",
            self._settings.cache_capacity_bytes,
            self._settings.worker_pool_size,
        )

    # ═══════════════════════════════════════════════════════════════════════
    # Accessors
    # ═══════════════════════════════════════════════════════════════════════

    @property
    def settings(self) -> SettingsManager:
        return self._settings

    @property
    def registry(self) -> CodecRegistry:
        return self._registry

    @property
    def cache(self) -> FrameCache:
        return self._cache

    @property
    def scheduler(self) -> LoadScheduler:
        return self._scheduler

    @property
    def image_list(self) -> ImageList:
        return self._images

    @property
    def current_source(self) -> ImageSource | None:
        return self._source

    @property
    def current_image(self) -> DecodedImage | None:
        return self._image

    @property
    def history(self) -> EditHistory | None:
        return self._history

    @property
    def animation(self) -> AnimationDriver | None:
        return self._animation

    @property
    def is_loading(self) -> bool:
        return self._token is not None

    # ═══════════════════════════════════════════════════════════════════════
    # Navigation API
    # ═══════════════════════════════════════════════════════════════════════

    def navigate(self, source: ImageSource, keep_history: bool = False) -> LoadToken:
        """Request `source` for display, superseding any pending navigation.

        The current image stays on screen until the new one is decoded.

        Args:
            source: Image to show
            keep_history: Preserve the current image's edits; they come back
                when the same image is shown again

        Returns:
            Token of the submitted decode job

        Raises:
            WorkerPoolError: The decode pool is shut down or broken
        """
        if keep_history and self._history is not None and self._key is not None:
            self._keep_history(self._key, self._history)
        self._token = self._scheduler.submit(source, VIEW_SLOT)
        metrics.inc("engine.navigations")
        _logger.debug("navigate: %s gen=%d", source.display_name, self._token.generation)
        return self._token

    def open_path(self, path: str | Path, format_hint: str | None = None, keep_history: bool = False) -> LoadToken:
        """Navigate to a file and make its folder the navigation list."""
        source = ImageSource.from_path(path, format_hint=format_hint, target_size=self._display_size)
        if source.path is not None and not self._images.select(source.path):
            self._images.scan(source.path)
        return self.navigate(source, keep_history=keep_history)

    def open_bytes(self, data: bytes, format_hint: str | None = None, origin: str = "bytes") -> LoadToken:
        """Navigate to an in-memory image, e.g. clipboard contents."""
        source = ImageSource.from_bytes(data, format_hint=format_hint, origin=origin, target_size=self._display_size)
        return self.navigate(source)

    def navigate_next(self, keep_history: bool = False) -> LoadToken | None:
        path = self._images.next()
        if path is None:
            return None
        return self.navigate(self._path_source(path), keep_history=keep_history)

    def navigate_prev(self, keep_history: bool = False) -> LoadToken | None:
        path = self._images.prev()
        if path is None:
            return None
        return self.navigate(self._path_source(path), keep_history=keep_history)

    def reload(self) -> LoadToken | None:
        """Drop the cached decode of the current source and load it again.

        Edits are discarded; a file that changed on disk gets a new identity.
        """
        source = self._source
        if source is None:
            return None
        if self._key is not None:
            self._cache.invalidate(self._key)
            self._kept.pop(self._key, None)
            # invalidate() dropped the entry together with its pins.
            self._pinned = None
        if source.path is not None:
            source = ImageSource.from_path(source.path, format_hint=source.format_hint, target_size=source.target_size)
        _logger.debug("reload: %s", source.display_name)
        return self.navigate(source)

    def prefetch(self, sources: Iterable[ImageSource]) -> list[LoadToken]:
        """Warm the cache for `sources`; prefetched images are never displayed."""
        tokens = []
        for source in sources:
            tokens.append(self._scheduler.submit(source, _PREFETCH_SLOT + source.fingerprint))
        if tokens:
            metrics.inc("engine.prefetched", len(tokens))
        return tokens

    def set_display_size(self, width: int, height: int) -> LoadToken | None:
        """Rasterization size for vector sources opened from now on.

        An unedited vector image on screen is re-rasterized at the new size.
        """
        size = (max(1, int(width)), max(1, int(height)))
        if size == self._display_size:
            return None
        self._display_size = size
        source = self._source
        if source is None or (self._history is not None and self._history.modified):
            return None
        if not self._registry.is_vector(source):
            return None
        resized = ImageSource(
            source.origin,
            source.fingerprint,
            path=source.path,
            data=source.data,
            format_hint=source.format_hint,
            target_size=size,
        )
        return self.navigate(resized)

    def close(self) -> None:
        """Forget the current image, its edits and every unpinned cached decode."""
        if self._token is not None:
            self._scheduler.cancel(self._token)
            self._token = None
        self._release()
        self._source = None
        self._kept.clear()
        self._images.clear()
        removed = self._cache.clear()
        _logger.debug("close: cache entries removed=%d", removed)

    def shutdown(self, wait: bool = False) -> None:
        """Stop the worker pool. The engine cannot load anything afterwards."""
        if self._closed:
            return
        self._closed = True
        self.close()
        self._scheduler.shutdown(wait=wait)
        _logger.debug("PipelineEngine shut down")

    # ═══════════════════════════════════════════════════════════════════════
    # Editing API
    # ═══════════════════════════════════════════════════════════════════════

    def apply_edit(self, op: EditOperation) -> bool:
        """Push `op` onto the current image's history and redisplay.

        Returns:
            False if no image is displayed

        Raises:
            ValidationError: `op` does not fit the current raster; nothing changed
        """
        if self._history is None:
            return False
        self._history.push(op)
        self._emit_display()
        return True

    def undo(self) -> bool:
        if self._history is None or not self._history.undo():
            return False
        self._emit_display()
        return True

    def redo(self) -> bool:
        if self._history is None or not self._history.redo():
            return False
        self._emit_display()
        return True

    def revert(self) -> bool:
        """Drop every edit of the current image."""
        if self._history is None:
            return False
        self._history.clear()
        self._emit_display()
        return True

    def snapshot(self) -> DecodedImage | None:
        """Current edited image (all frames) for an external encoder."""
        if self._history is None or self._image is None:
            return None
        rasters = self._history.render_all()
        return DecodedImage.from_frames(
            list(zip(rasters, self._image.durations, strict=True)),
            self._image.format,
            metadata=dict(self._image.metadata),
            loop_count=self._image.loop_count,
        )

    # ═══════════════════════════════════════════════════════════════════════
    # Event pump
    # ═══════════════════════════════════════════════════════════════════════

    def tick(self, elapsed: float) -> bool:
        """Advance the animation by `elapsed` seconds; True if a new frame was shown."""
        if self._animation is None or not self._animation.tick(elapsed):
            return False
        self._emit_display()
        return True

    def poll(self) -> int:
        """Deliver finished decodes as events.

        Results are all handled before an unexpected job exception (a bug in
        a codec or job) is re-raised, so one crashing job cannot swallow the
        others.

        Returns:
            Number of display_ready / decode_failed events emitted
        """
        emitted = 0
        crash: BaseException | None = None
        for result in self._scheduler.poll():
            if result.exception is not None:
                if result.token == self._token:
                    self._token = None
                if crash is None:
                    crash = result.exception
                continue
            if result.token.slot != VIEW_SLOT:
                _logger.debug("prefetched: %s", result.token.source.display_name)
                continue
            if result.token != self._token:
                continue
            self._token = None
            if result.error is not None:
                _logger.info("decode failed: %s (%s)", result.token.source.display_name, result.error)
                self.decode_failed.emit(DecodeFailed(result.token.source, result.error))
            elif result.key is not None and result.image is not None:
                self._show(result.token.source, result.key, result.image)
            emitted += 1

        for key in self._cache.drain_evictions():
            self.cache_evicted.emit(CacheEvicted(key.partition("@")[0]))
        if crash is not None:
            raise crash
        return emitted

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self._scheduler.wait_idle(timeout)

    # ═══════════════════════════════════════════════════════════════════════
    # Internal
    # ═══════════════════════════════════════════════════════════════════════

    def _decode_job(self, source: ImageSource) -> tuple[str, DecodedImage]:
        # Runs on a worker thread.
        key = self._registry.cache_key(source)
        image = self._cache.get_or_insert(key, lambda: self._registry.decode_source(source))
        return key, image

    def _keep_history(self, key: str, history: EditHistory) -> None:
        self._kept.pop(key, None)
        self._kept[key] = history
        budget = self._settings.kept_history_capacity_bytes
        held = sum(h.nbytes for h in self._kept.values())
        while held > budget and self._kept:
            dropped_key, dropped = self._kept.popitem(last=False)
            held -= dropped.nbytes
            metrics.inc("engine.kept_histories_dropped")
            _logger.debug("dropped kept history of %s: held=%d/%d", dropped_key, held, budget)
        _logger.debug("navigate: keeping history of %s (kept=%d)", key, len(self._kept))

    def _path_source(self, path: Path) -> ImageSource:
        return ImageSource.from_path(path, target_size=self._display_size)

    def _show(self, source: ImageSource, key: str, image: DecodedImage) -> None:
        # Pin the new image before unpinning the old one; they may share a key.
        if not self._cache.pin(key):
            self._cache.put(key, image, pin=True)
        self._release()
        self._pinned = key

        self._source = source
        self._image = image
        self._key = key
        history = self._kept.pop(key, None)
        if history is None:
            history = EditHistory(
                image,
                limit=self._settings.history_limit,
                coalesce_window=self._settings.coalesce_window,
                coalesce_limit=self._settings.coalesce_limit,
            )
        self._history = history
        if image.is_animated:
            self._animation = AnimationDriver.for_image(image, self._settings.animation_loop_policy)
        _logger.debug("show: %s %dx%d frames=%d", source.display_name, image.width, image.height, len(image.frames))
        self._emit_display()

    def _release(self) -> None:
        if self._pinned is not None:
            self._cache.unpin(self._pinned)
            self._pinned = None
        self._image = None
        self._key = None
        self._history = None
        self._animation = None

    def _emit_display(self) -> None:
        if self._history is None or self._source is None:
            return
        frame = self._animation.current_frame() if self._animation is not None else 0
        timing = self._animation.time_to_next_frame() if self._animation is not None else None
        raster = self._history.current(frame)
        self.display_ready.emit(DisplayReady(self._source, raster, frame_index=frame, frame_timing=timing))
