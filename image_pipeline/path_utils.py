"""Path normalization utilities.

- Use absolute paths when interacting with the filesystem.
- Use a stable, normalized key for fingerprints (forward slashes + drive letter
  normalization on Windows).

Keep this module free of Qt dependencies.
"""

from __future__ import annotations

from pathlib import Path

_DRIVE_PREFIX_LEN = 2


def _normalize_drive_letter(path_str: str) -> str:
    # Normalize drive letter casing on Windows ("c:\\" -> "C:\\").
    if len(path_str) >= _DRIVE_PREFIX_LEN and path_str[1] == ":":
        return path_str[0].upper() + path_str[1:]
    return path_str


def abs_path(path: str | Path) -> Path:
    """Return an absolute path without requiring that it exists."""
    p = Path(path).expanduser()
    try:
        # strict=False avoids exceptions for non-existent paths.
        return p.resolve(strict=False)
    except OSError:
        return p.absolute()


def abs_path_str(path: str | Path) -> str:
    """Absolute, OS-native path string (Windows uses backslashes)."""
    return _normalize_drive_letter(str(abs_path(path)))


def abs_dir(path: str | Path) -> Path:
    """Absolute directory path.

    If the path exists and is not a directory, returns its parent.
    """
    p = abs_path(path)
    try:
        if p.exists() and not p.is_dir():
            return p.parent
    except OSError:
        pass
    return p


def path_key(path: str | Path) -> str:
    """Stable identity key for a filesystem path."""
    return abs_path_str(path).replace("\\", "/")


def extension_of(path: str | Path | None) -> str:
    """Lower-case extension without the dot ("" when there is none)."""
    if not path:
        return ""
    return Path(path).suffix.lower().lstrip(".")
