"""Edit operations applied by the edit history.

Each operation is an immutable value. `apply` never mutates its input and is
deterministic: the same operation on the same raster always yields the same
bytes. Lossless geometric operations expose an exact `inverse()`; everything
else returns None and is undone by replaying the history.

The adjustable operations (brightness, contrast, saturation, hue) can be
merged: the merged operation renders exactly like the separate steps it
replaces, so merging only changes how far one undo goes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import ClassVar

import numpy as np
from PIL import Image

from image_pipeline.errors import ValidationError

MAX_DIMENSION = 65535

RESAMPLE_FILTERS: dict[str, Image.Resampling] = {
    "nearest": Image.Resampling.NEAREST,
    "linear": Image.Resampling.BILINEAR,
    "cubic": Image.Resampling.BICUBIC,
    "lanczos": Image.Resampling.LANCZOS,
}

# Rec. 601 luma weights
_LUMA = np.array([0.299, 0.587, 0.114], dtype=np.float32)


def _require_int(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    return int(value)


def _require_range(name: str, value: object, low: float, high: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.floating, np.integer)):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    number = float(value)
    if not math.isfinite(number) or not low <= number <= high:
        raise ValidationError(f"{name}={value!r} outside [{low}, {high}]")
    return number


def _split(pixels: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    return pixels[..., :3].astype(np.float32), pixels[..., 3:]


def _join(rgb: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    out = np.clip(np.rint(rgb), 0, 255).astype(np.uint8)
    return np.concatenate([out, alpha], axis=-1)


class _Operation:
    kind: ClassVar[str] = ""
    adjustable: ClassVar[bool] = False

    def validate(self, width: int, height: int) -> None:
        """Raise ValidationError if the operation cannot apply to a width x height raster."""

    def apply(self, pixels: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def inverse(self) -> EditOperation | None:
        return None

    def merge(self, newer: EditOperation) -> EditOperation:
        raise ValidationError(f"{self.kind} operations cannot be merged")


# ---- geometry ------------------------------------------------------------


@dataclass(frozen=True)
class Crop(_Operation):
    x: int
    y: int
    width: int
    height: int

    kind: ClassVar[str] = "crop"

    def validate(self, width: int, height: int) -> None:
        x, y = _require_int("x", self.x), _require_int("y", self.y)
        w, h = _require_int("width", self.width), _require_int("height", self.height)
        if w <= 0 or h <= 0:
            raise ValidationError(f"crop size must be positive, got {w}x{h}")
        if x < 0 or y < 0 or x + w > width or y + h > height:
            raise ValidationError(f"crop rect ({x}, {y}, {w}, {h}) outside {width}x{height} image")

    def apply(self, pixels: np.ndarray) -> np.ndarray:
        return pixels[self.y : self.y + self.height, self.x : self.x + self.width]


@dataclass(frozen=True)
class Rotate(_Operation):
    """Rotate by quarter turns; positive is clockwise."""

    quarter_turns: int = 1

    kind: ClassVar[str] = "rotate"

    def validate(self, width: int, height: int) -> None:
        turns = _require_int("quarter_turns", self.quarter_turns)
        if turns == 0 or not -3 <= turns <= 3:  # noqa: PLR2004
            raise ValidationError(f"quarter_turns must be in [-3, 3] and non-zero, got {turns}")

    def apply(self, pixels: np.ndarray) -> np.ndarray:
        return np.rot90(pixels, k=-self.quarter_turns)

    def inverse(self) -> EditOperation:
        return Rotate(-self.quarter_turns)


@dataclass(frozen=True)
class FlipHorizontal(_Operation):
    kind: ClassVar[str] = "flip_horizontal"

    def apply(self, pixels: np.ndarray) -> np.ndarray:
        return pixels[:, ::-1]

    def inverse(self) -> EditOperation:
        return self


@dataclass(frozen=True)
class FlipVertical(_Operation):
    kind: ClassVar[str] = "flip_vertical"

    def apply(self, pixels: np.ndarray) -> np.ndarray:
        return pixels[::-1]

    def inverse(self) -> EditOperation:
        return self


@dataclass(frozen=True)
class Resize(_Operation):
    width: int
    height: int
    resample: str = "lanczos"

    kind: ClassVar[str] = "resize"

    def validate(self, width: int, height: int) -> None:
        w, h = _require_int("width", self.width), _require_int("height", self.height)
        if not (0 < w <= MAX_DIMENSION and 0 < h <= MAX_DIMENSION):
            raise ValidationError(f"resize target {w}x{h} outside 1..{MAX_DIMENSION}")
        if self.resample not in RESAMPLE_FILTERS:
            raise ValidationError(f"unknown resample filter {self.resample!r}")

    def apply(self, pixels: np.ndarray) -> np.ndarray:
        if pixels.shape[1] == self.width and pixels.shape[0] == self.height:
            return pixels
        image = Image.fromarray(np.ascontiguousarray(pixels))
        resized = image.resize((self.width, self.height), resample=RESAMPLE_FILTERS[self.resample])
        return np.array(resized, dtype=np.uint8)


# ---- colour --------------------------------------------------------------


@dataclass(frozen=True)
class _Adjustment(_Operation):
    """One adjustment step, or several merged ones.

    `earlier` holds the amounts of merged steps applied before `amount`.
    """

    amount: float = 0.0
    earlier: tuple[float, ...] = ()

    adjustable: ClassVar[bool] = True
    low: ClassVar[float] = -1.0
    high: ClassVar[float] = 1.0

    @property
    def steps(self) -> tuple[float, ...]:
        return (*self.earlier, self.amount)

    def validate(self, width: int, height: int) -> None:
        for step in self.steps:
            _require_range(self.kind, step, self.low, self.high)

    def merge(self, newer: EditOperation) -> EditOperation:
        if newer.kind != self.kind or not isinstance(newer, _Adjustment):
            raise ValidationError(f"cannot merge {newer.kind} into {self.kind}")
        return replace(newer, earlier=(*self.steps, *newer.earlier))

    def apply(self, pixels: np.ndarray) -> np.ndarray:
        # Rounded per step, so a merged op matches its parts bit for bit.
        for step in self.steps:
            if step != 0:
                rgb, alpha = _split(pixels)
                pixels = _join(self._adjust(rgb, float(step)), alpha)
        return pixels

    def _adjust(self, rgb: np.ndarray, amount: float) -> np.ndarray:
        raise NotImplementedError


@dataclass(frozen=True)
class Brightness(_Adjustment):
    kind: ClassVar[str] = "brightness"

    def _adjust(self, rgb: np.ndarray, amount: float) -> np.ndarray:
        return rgb + np.float32(amount * 255.0)


@dataclass(frozen=True)
class Contrast(_Adjustment):
    kind: ClassVar[str] = "contrast"

    def _adjust(self, rgb: np.ndarray, amount: float) -> np.ndarray:
        return (rgb - np.float32(127.5)) * np.float32(1.0 + amount) + np.float32(127.5)


@dataclass(frozen=True)
class Saturation(_Adjustment):
    kind: ClassVar[str] = "saturation"

    def _adjust(self, rgb: np.ndarray, amount: float) -> np.ndarray:
        luma = (rgb @ _LUMA)[..., np.newaxis]
        return luma + (rgb - luma) * np.float32(1.0 + amount)


@dataclass(frozen=True)
class Hue(_Adjustment):
    """Hue rotation in degrees."""

    kind: ClassVar[str] = "hue"
    low: ClassVar[float] = -180.0
    high: ClassVar[float] = 180.0

    def _adjust(self, rgb: np.ndarray, amount: float) -> np.ndarray:
        theta = math.radians(amount)
        c, s = math.cos(theta), math.sin(theta)
        matrix = np.array(
            [
                [0.213 + c * 0.787 - s * 0.213, 0.715 - c * 0.715 - s * 0.715, 0.072 - c * 0.072 + s * 0.928],
                [0.213 - c * 0.213 + s * 0.143, 0.715 + c * 0.285 + s * 0.140, 0.072 - c * 0.072 - s * 0.283],
                [0.213 - c * 0.213 - s * 0.787, 0.715 - c * 0.715 + s * 0.715, 0.072 + c * 0.928 + s * 0.072],
            ],
            dtype=np.float32,
        )
        return rgb @ matrix.T


EditOperation = Crop | Rotate | FlipHorizontal | FlipVertical | Resize | Brightness | Contrast | Saturation | Hue
