"""Load scheduler: background decoding with generation-numbered supersession.

Every submission gets a fresh generation number and becomes the only
"current" job of its slot. Results of jobs that are no longer current are
dropped, both when the job finishes and again when results are delivered, so
a stale decode can never reach the consumer.

Jobs run on a bounded thread pool. Completed results are queued and handed
out by `poll()` on the interactive thread; `result_ready` is emitted from the
worker thread to wake the consumer up.
"""

from __future__ import annotations

import os
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass

from PySide6.QtCore import QObject, Signal

from image_pipeline.errors import DecodeError, WorkerPoolError
from image_pipeline.logger import get_logger

from .metrics import metrics
from .models import DecodedImage, ImageSource

_logger = get_logger("loader")

VIEW_SLOT = "view"


@dataclass(frozen=True)
class LoadToken:
    slot: str
    generation: int
    source: ImageSource


@dataclass(frozen=True, eq=False)
class LoadResult:
    token: LoadToken
    key: str | None = None
    image: DecodedImage | None = None
    error: DecodeError | None = None
    # Anything other than a decode failure is a bug and is re-raised by the consumer.
    exception: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.image is not None


JobFn = Callable[[ImageSource], tuple[str, DecodedImage]]


class LoadScheduler(QObject):
    """Runs decode jobs off the interactive thread.

    The job function must be thread-safe and of the form
    (source) -> (cache_key, decoded_image); it raises DecodeError on failure.
    """

    result_ready = Signal()

    def __init__(self, job_fn: JobFn, max_workers: int | None = None, parent: QObject | None = None):
        super().__init__(parent)
        self._job_fn = job_fn
        workers = max_workers or max(2, min(4, (os.cpu_count() or 2)))
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="decode")
        self._next_generation = 0
        self._latest: dict[str, int] = {}
        self._completed: deque[LoadResult] = deque()
        self._futures: set[Future] = set()
        self._lock = threading.Lock()
        self._closed = False
        _logger.debug("LoadScheduler init: workers=%s", workers)

    # ---- submission --------------------------------------------------
    def submit(self, source: ImageSource, slot: str = VIEW_SLOT) -> LoadToken:
        """Queue a decode of `source`, superseding any outstanding job in `slot`."""
        with self._lock:
            self._next_generation += 1
            token = LoadToken(slot, self._next_generation, source)
            previous = self._latest.get(slot)
            self._latest[slot] = token.generation
        if previous is not None:
            metrics.inc("loader.superseded")
            _logger.debug("submit: slot=%s gen=%s supersedes gen=%s", slot, token.generation, previous)

        try:
            future = self._pool.submit(self._run, token)
        except RuntimeError as exc:
            with self._lock:
                if self._latest.get(slot) == token.generation:
                    del self._latest[slot]
            raise WorkerPoolError(f"decode pool rejected job for {source.display_name}: {exc}") from exc

        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._forget_future)
        metrics.inc("loader.submitted")
        _logger.debug("submit queued: slot=%s gen=%s source=%s", slot, token.generation, source.display_name)
        return token

    def cancel(self, token: LoadToken) -> bool:
        """Mark `token` superseded. A running job finishes but its result is dropped."""
        with self._lock:
            if self._latest.get(token.slot) != token.generation:
                return False
            del self._latest[token.slot]
        metrics.inc("loader.cancelled")
        _logger.debug("cancel: slot=%s gen=%s", token.slot, token.generation)
        return True

    def cancel_slot(self, slot: str) -> None:
        with self._lock:
            self._latest.pop(slot, None)

    def is_current(self, token: LoadToken) -> bool:
        with self._lock:
            return self._latest.get(token.slot) == token.generation

    # ---- delivery ----------------------------------------------------
    def poll(self) -> list[LoadResult]:
        """Results of still-current jobs completed since the last poll."""
        with self._lock:
            results = [r for r in self._completed if self._latest.get(r.token.slot) == r.token.generation]
            dropped = len(self._completed) - len(results)
            self._completed.clear()
            for result in results:
                # Delivered: the slot no longer has an outstanding job.
                del self._latest[result.token.slot]
        if dropped:
            metrics.inc("loader.dropped", dropped)
            _logger.debug("poll: dropped %d superseded result(s)", dropped)
        if results:
            metrics.inc("loader.delivered", len(results))
        return results

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every submitted job has finished; for headless callers and tests."""
        with self._lock:
            futures = list(self._futures)
        if not futures:
            return True
        _done, not_done = wait(futures, timeout=timeout)
        return not not_done

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._futures)

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            self._closed = True
            self._latest.clear()
            self._completed.clear()
        self._pool.shutdown(wait=wait, cancel_futures=True)
        _logger.debug("LoadScheduler shut down")

    # ---- worker side -------------------------------------------------
    def _run(self, token: LoadToken) -> None:
        if not self.is_current(token):
            metrics.inc("loader.skipped")
            _logger.debug("job skipped before start: slot=%s gen=%s", token.slot, token.generation)
            return

        try:
            key, image = self._job_fn(token.source)
            result = LoadResult(token, key=key, image=image)
        except DecodeError as exc:
            _logger.debug("decode failed: %s (%s)", token.source.display_name, exc)
            result = LoadResult(token, error=exc)
        except Exception as exc:
            _logger.exception("decode job crashed: %s", token.source.display_name)
            result = LoadResult(token, exception=exc)

        with self._lock:
            if self._closed or self._latest.get(token.slot) != token.generation:
                metrics.inc("loader.dropped")
                _logger.debug("job finished stale: slot=%s gen=%s (dropped)", token.slot, token.generation)
                return
            self._completed.append(result)
        self.result_ready.emit()

    def _forget_future(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)
