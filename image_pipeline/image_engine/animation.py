"""Frame selection for animated images.

The driver only tracks time; it never touches pixels. The coordinator asks
it which frame index to show and fetches that frame from the edit history.
"""

from __future__ import annotations

import math
from bisect import bisect_right
from collections.abc import Sequence
from itertools import accumulate

from image_pipeline.logger import get_logger

from .models import DecodedImage, LoopPolicy

_logger = get_logger("animation")

# Browsers treat delays this short as "unset" and substitute 100 ms.
MIN_FRAME_DURATION = 0.010
DEFAULT_FRAME_DURATION = 0.100


class AnimationDriver:
    def __init__(self, durations: Sequence[float], loop: LoopPolicy | str = LoopPolicy.FOREVER) -> None:
        if not durations:
            raise ValueError("animation needs at least one frame")
        self._durations = [float(d) if d > MIN_FRAME_DURATION else DEFAULT_FRAME_DURATION for d in durations]
        self._ends = list(accumulate(self._durations))
        self._total = math.fsum(self._durations)
        self._loop = LoopPolicy(loop)
        self._index = 0
        self._elapsed = 0.0  # time spent in the current frame
        self._finished = False

    @classmethod
    def for_image(cls, image: DecodedImage, loop: LoopPolicy | str = LoopPolicy.FOREVER) -> AnimationDriver:
        return cls(image.durations, loop)

    # ---- state -------------------------------------------------------
    @property
    def frame_count(self) -> int:
        return len(self._durations)

    @property
    def total_duration(self) -> float:
        return self._total

    @property
    def loop(self) -> LoopPolicy:
        return self._loop

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def elapsed(self) -> float:
        return self._elapsed

    def current_frame(self) -> int:
        return self._index

    def time_to_next_frame(self) -> float | None:
        """Seconds until the frame changes, or None if it never will."""
        if self._finished or self.frame_count == 1:
            return None
        return max(0.0, self._durations[self._index] - self._elapsed)

    # ---- driving -----------------------------------------------------
    def tick(self, elapsed: float) -> bool:
        """Advance by `elapsed` seconds; True if the frame index changed."""
        if elapsed < 0:
            raise ValueError(f"elapsed must be >= 0, got {elapsed}")
        if self._finished or self.frame_count == 1 or elapsed == 0:
            return False

        previous = self._index
        start = self._ends[self._index - 1] if self._index else 0.0
        position = start + self._elapsed + elapsed

        if position >= self._total:
            if self._loop is LoopPolicy.ONCE:
                self._index = self.frame_count - 1
                self._elapsed = self._durations[-1]
                self._finished = True
                _logger.debug("animation finished at frame %d", self._index)
                return self._index != previous
            position = math.fmod(position, self._total)

        index = min(bisect_right(self._ends, position), self.frame_count - 1)
        self._index = index
        self._elapsed = position - (self._ends[index - 1] if index else 0.0)
        return index != previous

    def reset(self) -> None:
        self._index = 0
        self._elapsed = 0.0
        self._finished = False
