"""Edit package public API: operations and the undoable history."""

from image_pipeline.edit.history import EditHistory
from image_pipeline.edit.operations import (
    Brightness,
    Contrast,
    Crop,
    EditOperation,
    FlipHorizontal,
    FlipVertical,
    Hue,
    Resize,
    Rotate,
    Saturation,
)

__all__ = [
    "Brightness",
    "Contrast",
    "Crop",
    "EditHistory",
    "EditOperation",
    "FlipHorizontal",
    "FlipVertical",
    "Hue",
    "Resize",
    "Rotate",
    "Saturation",
]
