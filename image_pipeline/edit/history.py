"""EditHistory: non-destructive, undoable edit stack over a decoded image.

The history keeps the base frames, the ordered operations and a cursor. The
visible raster for a frame is the base replayed through operations
[0, cursor); it is cached per frame and the cache is dropped or updated
whenever the cursor moves. Replay is deterministic, so a cached raster and a
recomputed one are always bit-identical.

Adjustable operations of the same kind pushed in quick succession collapse
into one entry, so one slider drag undoes as one step. A merged entry renders
exactly like the separate operations it replaces.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence

import numpy as np

from image_pipeline.image_engine.models import DecodedImage, freeze
from image_pipeline.logger import get_logger

from .operations import EditOperation

_logger = get_logger("history")


class EditHistory:
    def __init__(
        self,
        image: DecodedImage | Sequence[np.ndarray],
        *,
        limit: int = 100,
        coalesce_window: float = 0.5,
        coalesce_limit: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        frames = [f.pixels for f in image.frames] if isinstance(image, DecodedImage) else list(image)
        if not frames:
            raise ValueError("EditHistory needs at least one frame")
        self._original: list[np.ndarray] = [freeze(f) for f in frames]
        self._bases: list[np.ndarray] = list(self._original)
        self._ops: list[EditOperation] = []
        self._cursor = 0
        # frame index -> raster at the cursor; an absent frame is stale.
        self._results: dict[int, np.ndarray] = {}
        self._limit = max(1, int(limit))
        self._window = float(coalesce_window)
        self._coalesce_limit = max(0, int(coalesce_limit))
        self._clock = clock
        self._chain_kind: str | None = None
        self._chain_time = 0.0
        self._chain_count = 0

    # ---- state -------------------------------------------------------
    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def operations(self) -> tuple[EditOperation, ...]:
        return tuple(self._ops)

    def __len__(self) -> int:
        return len(self._ops)

    @property
    def frame_count(self) -> int:
        return len(self._bases)

    @property
    def can_undo(self) -> bool:
        return self._cursor > 0

    @property
    def can_redo(self) -> bool:
        return self._cursor < len(self._ops)

    @property
    def modified(self) -> bool:
        # Folded operations live in the bases.
        return self._cursor > 0 or any(b is not o for b, o in zip(self._bases, self._original, strict=True))

    def is_stale(self, frame: int = 0) -> bool:
        return frame not in self._results

    @property
    def nbytes(self) -> int:
        """Bytes held by this history's rasters, each array counted once."""
        arrays = {id(a): a for a in (*self._original, *self._bases, *self._results.values())}
        return sum(a.nbytes for a in arrays.values())

    # ---- editing -----------------------------------------------------
    def push(self, op: EditOperation) -> None:
        """Apply `op` at the cursor, dropping any redo tail.

        Raises ValidationError (history unchanged) when the parameters do not
        fit the current raster.
        """
        current = self.current(0)
        op.validate(int(current.shape[1]), int(current.shape[0]))

        if self._cursor < len(self._ops):
            _logger.debug("push: dropping %d redoable op(s)", len(self._ops) - self._cursor)
            del self._ops[self._cursor :]

        now = self._clock()
        if self._can_coalesce(op, now):
            merged = self._ops[-1].merge(op)
            self._ops[-1] = merged
            self._chain_count += 1
            self._results = {i: freeze(op.apply(r)) for i, r in self._results.items()}
            _logger.debug("push: coalesced %s (chain=%d)", op.kind, self._chain_count)
        else:
            self._ops.append(op)
            self._cursor += 1
            self._results = {i: freeze(op.apply(r)) for i, r in self._results.items()}
            self._chain_kind = op.kind if op.adjustable else None
            self._chain_count = 1
            self._enforce_limit()
            _logger.debug("push: %r cursor=%d", op, self._cursor)
        self._chain_time = now

    def undo(self) -> bool:
        if self._cursor == 0:
            return False
        op = self._ops[self._cursor - 1]
        self._cursor -= 1
        inverse = op.inverse()
        if inverse is not None:
            self._results = {i: freeze(inverse.apply(r)) for i, r in self._results.items()}
        else:
            self._results.clear()
        self._break_chain()
        _logger.debug("undo: %s cursor=%d", op.kind, self._cursor)
        return True

    def redo(self) -> bool:
        if self._cursor == len(self._ops):
            return False
        op = self._ops[self._cursor]
        self._cursor += 1
        if op.inverse() is not None:
            self._results = {i: freeze(op.apply(r)) for i, r in self._results.items()}
        else:
            self._results.clear()
        self._break_chain()
        _logger.debug("redo: %s cursor=%d", op.kind, self._cursor)
        return True

    def clear(self) -> None:
        """Revert to the decoded image, dropping every operation."""
        self._bases = list(self._original)
        self._ops.clear()
        self._cursor = 0
        self._results.clear()
        self._break_chain()
        _logger.debug("history cleared")

    # ---- results -----------------------------------------------------
    def current(self, frame: int = 0) -> np.ndarray:
        """Read-only raster of `frame` with operations [0, cursor) applied."""
        if not 0 <= frame < len(self._bases):
            raise IndexError(f"frame {frame} out of range (0..{len(self._bases) - 1})")
        cached = self._results.get(frame)
        if cached is not None:
            return cached
        raster = self._bases[frame]
        for op in self._ops[: self._cursor]:
            raster = op.apply(raster)
        raster = freeze(raster)
        self._results[frame] = raster
        return raster

    def render_all(self) -> list[np.ndarray]:
        return [self.current(i) for i in range(len(self._bases))]

    # ---- internals ---------------------------------------------------
    def _can_coalesce(self, op: EditOperation, now: float) -> bool:
        if not op.adjustable or self._window <= 0:
            return False
        if self._chain_kind != op.kind or self._cursor == 0 or self._cursor != len(self._ops):
            return False
        if now - self._chain_time > self._window:
            return False
        return self._coalesce_limit == 0 or self._chain_count < self._coalesce_limit

    def _break_chain(self) -> None:
        self._chain_kind = None
        self._chain_count = 0

    def _enforce_limit(self) -> None:
        while len(self._ops) > self._limit:
            oldest = self._ops.pop(0)
            self._bases = [freeze(oldest.apply(b)) for b in self._bases]
            self._cursor -= 1
            _logger.debug("history limit reached; folded %s into base", oldest.kind)
