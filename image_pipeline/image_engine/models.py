"""Plain data types shared by the pipeline components.

Nothing here touches Qt; every object can cross thread boundaries.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np

from image_pipeline.errors import DecodeError, DecodeFailure
from image_pipeline.path_utils import abs_path_str, extension_of, path_key

# Canonical raster layout: uint8 RGBA, (height, width, channels).
CHANNELS = 4
PIXEL_DTYPE = np.uint8

_FINGERPRINT_BYTES = 16


def _digest(*parts: bytes) -> str:
    h = hashlib.blake2b(digest_size=_FINGERPRINT_BYTES)
    for part in parts:
        h.update(part)
    return h.hexdigest()


def freeze(pixels: np.ndarray) -> np.ndarray:
    """Return a C-contiguous, read-only canonical raster."""
    arr = np.ascontiguousarray(pixels, dtype=PIXEL_DTYPE)
    if arr.ndim != 3 or arr.shape[2] != CHANNELS:  # noqa: PLR2004
        raise ValueError(f"expected (h, w, {CHANNELS}) raster, got shape {arr.shape}")
    if arr.flags.writeable:
        if arr.base is not None or not arr.flags.owndata:
            arr = arr.copy()
        arr.flags.writeable = False
    return arr


@dataclass(frozen=True)
class ImageSource:
    """Identity of one requested image."""

    origin: str  # "path", "clipboard" or "bytes"
    fingerprint: str
    path: str | None = None
    data: bytes | None = field(default=None, repr=False)
    format_hint: str | None = None
    # Vector rasterization resolution; not part of the identity.
    target_size: tuple[int, int] | None = None

    @classmethod
    def from_path(
        cls,
        path: str | Path,
        format_hint: str | None = None,
        target_size: tuple[int, int] | None = None,
    ) -> ImageSource:
        path_str = abs_path_str(path)
        try:
            st = Path(path_str).stat()
            stamp = f"{st.st_mtime_ns}:{st.st_size}"
        except OSError:
            # Decoding will report the file as unreadable.
            stamp = "missing"
        fingerprint = _digest(path_key(path_str).encode("utf-8"), b"\0", stamp.encode("ascii"))
        return cls("path", fingerprint, path=path_str, format_hint=format_hint, target_size=target_size)

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        format_hint: str | None = None,
        origin: str = "bytes",
        target_size: tuple[int, int] | None = None,
    ) -> ImageSource:
        data = bytes(data)
        return cls(origin, _digest(data), data=data, format_hint=format_hint, target_size=target_size)

    @property
    def extension(self) -> str:
        return extension_of(self.path)

    @property
    def display_name(self) -> str:
        if self.path:
            return Path(self.path).name
        return f"<{self.origin}>"

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.path is None:
            raise DecodeError(DecodeFailure.UNREADABLE, "source has neither bytes nor a path")
        try:
            return Path(self.path).read_bytes()
        except OSError as exc:
            raise DecodeError(DecodeFailure.UNREADABLE, f"{self.path}: {exc.strerror or exc}") from exc

    def header(self, size: int = 512) -> bytes:
        """First bytes of the source, used for signature sniffing."""
        if self.data is not None:
            return self.data[:size]
        if self.path is None:
            return b""
        try:
            with open(self.path, "rb") as f:
                return f.read(size)
        except OSError:
            return b""


@dataclass(frozen=True, eq=False)
class Frame:
    pixels: np.ndarray
    duration: float  # seconds


@dataclass(frozen=True, eq=False)
class DecodedImage:
    """Canonical raster (first frame) plus the full frame sequence."""

    frames: tuple[Frame, ...]
    format: str
    icc_profile: bytes | None = field(default=None, repr=False)
    metadata: dict[str, Any] = field(default_factory=dict, repr=False)
    loop_count: int = 0  # 0 = loop forever
    rasterized_at: tuple[int, int] | None = None

    @classmethod
    def from_frames(
        cls,
        frames: list[tuple[np.ndarray, float]],
        format: str,  # noqa: A002
        **kwargs: Any,
    ) -> DecodedImage:
        if not frames:
            raise ValueError("a decoded image needs at least one frame")
        frozen = tuple(Frame(freeze(pixels), float(duration)) for pixels, duration in frames)
        shape = frozen[0].pixels.shape
        for frame in frozen[1:]:
            if frame.pixels.shape != shape:
                raise ValueError("all frames must share the first frame's size")
        return cls(frozen, format, **kwargs)

    @property
    def pixels(self) -> np.ndarray:
        return self.frames[0].pixels

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def is_animated(self) -> bool:
        return len(self.frames) > 1

    @property
    def durations(self) -> list[float]:
        return [f.duration for f in self.frames]

    @property
    def nbytes(self) -> int:
        return sum(int(f.pixels.nbytes) for f in self.frames)


class LoopPolicy(str, Enum):
    FOREVER = "forever"
    ONCE = "once"


# ---- events consumed by the shell -------------------------------------


@dataclass(frozen=True, eq=False)
class DisplayReady:
    source: ImageSource
    raster: np.ndarray
    frame_index: int = 0
    frame_timing: float | None = None  # seconds until the next frame is due


@dataclass(frozen=True)
class DecodeFailed:
    source: ImageSource
    reason: DecodeError


@dataclass(frozen=True)
class CacheEvicted:
    fingerprint: str
