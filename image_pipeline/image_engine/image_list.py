"""Sibling-file navigation: the sorted list of images in the current folder."""

from __future__ import annotations

import contextlib
from collections.abc import Iterable
from pathlib import Path

from image_pipeline.logger import get_logger
from image_pipeline.path_utils import abs_path, extension_of, path_key

_logger = get_logger("image_list")


class ImageList:
    """Ordered image paths of one folder with a movable position.

    Navigation wraps around at both ends.
    """

    def __init__(self, extensions: Iterable[str]) -> None:
        self._extensions = frozenset(e.lower().lstrip(".") for e in extensions)
        self._folder: Path | None = None
        self._paths: list[Path] = []
        self._index: int | None = None

    @property
    def folder(self) -> Path | None:
        return self._folder

    @property
    def paths(self) -> list[Path]:
        return list(self._paths)

    @property
    def index(self) -> int | None:
        return self._index

    def __len__(self) -> int:
        return len(self._paths)

    def current(self) -> Path | None:
        return None if self._index is None else self._paths[self._index]

    def is_supported(self, path: str | Path) -> bool:
        return extension_of(path) in self._extensions

    def scan(self, path: str | Path) -> None:
        """List the folder containing `path` and move to `path` in it."""
        target = abs_path(path)
        folder = target if target.is_dir() else target.parent
        paths: list[Path] = []
        try:
            for child in folder.iterdir():
                if not self.is_supported(child):
                    continue
                with contextlib.suppress(OSError):
                    if child.is_file():
                        paths.append(child)
        except OSError as exc:
            _logger.warning("scan failed for %s: %s", folder, exc)

        # Name order, case-insensitive, like a file browser.
        paths.sort(key=lambda p: p.name.lower())
        self._folder = folder
        self._paths = paths
        self._index = None
        if not target.is_dir():
            self.select(target)
        _logger.debug("scanned %s: %d image(s)", folder, len(paths))

    def select(self, path: str | Path) -> bool:
        key = path_key(path)
        for i, candidate in enumerate(self._paths):
            if path_key(candidate) == key:
                self._index = i
                return True
        return False

    def next(self) -> Path | None:
        return self._step(1)

    def prev(self) -> Path | None:
        return self._step(-1)

    def clear(self) -> None:
        self._folder = None
        self._paths = []
        self._index = None

    def _step(self, delta: int) -> Path | None:
        if not self._paths:
            return None
        if self._index is None:
            self._index = 0 if delta > 0 else len(self._paths) - 1
        else:
            self._index = (self._index + delta) % len(self._paths)
        return self._paths[self._index]
