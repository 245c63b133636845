from __future__ import annotations

import numpy as np
import pytest

from image_pipeline.edit.operations import (
    Brightness,
    Contrast,
    Crop,
    FlipHorizontal,
    FlipVertical,
    Hue,
    Resize,
    Rotate,
    Saturation,
)
from image_pipeline.errors import ValidationError


def _raster(h: int = 3, w: int = 4) -> np.ndarray:
    rng = np.random.default_rng(7)
    pixels = rng.integers(0, 256, size=(h, w, 4), dtype=np.uint8)
    pixels.flags.writeable = False
    return pixels


def test_crop_takes_the_requested_rect() -> None:
    pixels = _raster()
    out = Crop(1, 1, 2, 2).apply(pixels)

    assert out.shape == (2, 2, 4)
    assert np.array_equal(out, pixels[1:3, 1:3])


@pytest.mark.parametrize(
    "rect",
    [(0, 0, 0, 1), (-1, 0, 2, 2), (3, 0, 2, 1), (0, 2, 1, 2), (0.5, 0, 1, 1)],
)
def test_crop_rejects_rects_outside_the_image(rect) -> None:
    with pytest.raises(ValidationError):
        Crop(*rect).validate(4, 3)


def test_rotate_is_clockwise() -> None:
    pixels = np.zeros((1, 2, 4), dtype=np.uint8)
    pixels[0, 0] = (255, 0, 0, 255)  # left pixel red

    out = Rotate(1).apply(pixels)

    # After a clockwise quarter turn the left pixel ends up on top.
    assert out.shape == (2, 1, 4)
    assert tuple(out[0, 0]) == (255, 0, 0, 255)


@pytest.mark.parametrize("turns", [0, 4, -4, True])
def test_rotate_rejects_invalid_turns(turns) -> None:
    with pytest.raises(ValidationError):
        Rotate(turns).validate(4, 3)


@pytest.mark.parametrize("op", [Rotate(1), Rotate(-3), Rotate(2), FlipHorizontal(), FlipVertical()])
def test_geometric_inverses_are_exact(op) -> None:
    pixels = _raster()
    inverse = op.inverse()

    assert inverse is not None
    assert np.array_equal(inverse.apply(op.apply(pixels)), pixels)


def test_apply_never_mutates_input() -> None:
    pixels = _raster().copy()
    before = pixels.copy()

    for op in (Brightness(0.3), Contrast(-0.4), Saturation(0.5), Hue(90.0), FlipHorizontal()):
        op.apply(pixels)

    assert np.array_equal(pixels, before)


def test_resize_uses_pillow_filter() -> None:
    pixels = np.full((4, 4, 4), 200, dtype=np.uint8)

    out = Resize(2, 3, "nearest").apply(pixels)

    assert out.shape == (3, 2, 4)
    assert out.dtype == np.uint8
    assert np.all(out == 200)


def test_resize_validation() -> None:
    with pytest.raises(ValidationError):
        Resize(0, 10).validate(4, 4)
    with pytest.raises(ValidationError):
        Resize(10, 10, "bogus").validate(4, 4)
    Resize(10, 10, "cubic").validate(4, 4)


def test_brightness_clips_and_keeps_alpha() -> None:
    pixels = np.array([[[250, 10, 128, 77]]], dtype=np.uint8)

    out = Brightness(0.1).apply(pixels)

    assert tuple(out[0, 0]) == (255, 36, 154, 77)


def test_contrast_minus_one_gives_mid_grey() -> None:
    pixels = _raster()

    out = Contrast(-1.0).apply(pixels)

    assert np.all(out[..., :3] == 128)
    assert np.array_equal(out[..., 3], pixels[..., 3])


def test_saturation_minus_one_is_greyscale() -> None:
    out = Saturation(-1.0).apply(_raster())

    assert np.array_equal(out[..., 0], out[..., 1])
    assert np.array_equal(out[..., 1], out[..., 2])


def test_hue_rotation_leaves_grey_untouched() -> None:
    pixels = np.full((2, 2, 4), 90, dtype=np.uint8)

    assert np.array_equal(Hue(180.0).apply(pixels), pixels)


@pytest.mark.parametrize("op", [Brightness(1.5), Contrast(float("nan")), Saturation("x"), Hue(181)])
def test_adjustments_validate_range(op) -> None:
    with pytest.raises(ValidationError):
        op.validate(1, 1)


def test_adjustment_merge_keeps_every_step() -> None:
    merged = Brightness(0.1).merge(Brightness(0.4))
    pixels = _raster()

    assert merged == Brightness(0.4, earlier=(0.1,))
    assert np.array_equal(merged.apply(pixels), Brightness(0.4).apply(Brightness(0.1).apply(pixels)))
    assert Contrast(0.2).merge(Contrast(0.3).merge(Contrast(0.4))) == Contrast(0.4, earlier=(0.2, 0.3))
    with pytest.raises(ValidationError):
        Brightness(0.1).merge(Contrast(0.2))
    with pytest.raises(ValidationError):
        Crop(0, 0, 1, 1).merge(Crop(0, 0, 1, 1))


def test_apply_is_deterministic() -> None:
    pixels = _raster()
    op = Hue(33.0)

    assert np.array_equal(op.apply(pixels), op.apply(pixels))
