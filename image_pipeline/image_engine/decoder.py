"""Codec registry: format dispatch and canonical decoding.

Each codec is a small capability set (`can_decode`, `decode`, the
extensions and MIME tags it claims). `CodecRegistry` tries candidates in
priority order: explicit hint, then signature sniffing, then the path
extension, then content-identifying fallbacks.

Every successful decode is normalized to the canonical raster: uint8 RGBA,
sRGB, orientation already applied.
"""

from __future__ import annotations

import contextlib
import os
import sys
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any, Protocol

import numpy as np
from PIL import Image, ImageCms, ImageOps, ImageSequence, UnidentifiedImageError

from image_pipeline.errors import DecodeError, DecodeFailure
from image_pipeline.logger import get_logger

from .metrics import metrics
from .models import CHANNELS, DecodedImage, ImageSource

_logger = get_logger("decoder")

DEFAULT_FRAME_DURATION = 0.1
_HEADER_SIZE = 512
_TIFF_SIGNATURES = (b"II*\x00", b"MM\x00*")

# Locate bundled libvips (for frozen builds and source tree)
_BASE_DIR = Path(getattr(sys, "_MEIPASS", Path(__file__).resolve().parent.parent))
_LIBVIPS_DIR = _BASE_DIR / "libvips"
if os.name == "nt" and _LIBVIPS_DIR.exists():
    with contextlib.suppress(OSError):
        os.add_dll_directory(str(_LIBVIPS_DIR))


_pyvips: Any | None = None


def _get_pyvips_module() -> Any:
    global _pyvips
    if _pyvips is None:
        import pyvips  # type: ignore

        # Decoded rasters live in the frame cache; keep libvips' own caches off.
        pyvips.cache_set_max(0)
        pyvips.cache_set_max_mem(0)
        pyvips.cache_set_max_files(0)
        _pyvips = pyvips
    return _pyvips


def has_vips_operation(name: str) -> bool:
    pyvips = _get_pyvips_module()
    try:
        return pyvips.type_find("VipsOperation", name) != 0
    except pyvips.Error:
        return False


@dataclass(frozen=True)
class DecodeHints:
    target_size: tuple[int, int]
    format_hint: str | None = None
    extension: str = ""


class Codec(Protocol):
    name: str
    extensions: frozenset[str]
    mime_types: frozenset[str]
    vector: bool
    fallback: bool

    def can_decode(self, header: bytes) -> bool: ...

    def decode(self, data: bytes, hints: DecodeHints) -> DecodedImage: ...


# ---- error classification ---------------------------------------------

_TRUNCATION_MARKERS = (
    "truncated",
    "premature end",
    "unexpected end",
    "not enough data",
    "end of file",
    "short read",
    "incomplete",
    "read error",
)
_UNKNOWN_FORMAT_MARKERS = (
    "not in a known format",
    "not a known format",
    "unknown file format",
    "cannot identify image",
)


def classify_error(message: str, default: DecodeFailure = DecodeFailure.CORRUPT) -> DecodeFailure:
    text = message.lower()
    if any(m in text for m in _UNKNOWN_FORMAT_MARKERS):
        return DecodeFailure.UNSUPPORTED_FORMAT
    if any(m in text for m in _TRUNCATION_MARKERS):
        return DecodeFailure.TRUNCATED
    return default


def _missing_trailer(data: bytes) -> bool:
    """True when a PNG, JPEG or GIF stream lacks its end marker."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return b"IEND" not in data[-64:]
    if data.startswith(b"\xff\xd8\xff"):
        return b"\xff\xd9" not in data[-1024:]
    if data.startswith((b"GIF87a", b"GIF89a")):
        return not data.rstrip(b"\x00").endswith(b";")
    return False


def _vips_load_options(pyvips: Any) -> dict[str, Any]:
    # Fail on truncated input instead of filling the missing rows.
    if pyvips.at_least_libvips(8, 12):
        return {"fail_on": "truncated"}
    return {"fail": True}


def _decode_failure(exc: Exception, data: bytes, codec: str) -> DecodeError:
    reason = classify_error(str(exc))
    if reason == DecodeFailure.CORRUPT and _missing_trailer(data):
        reason = DecodeFailure.TRUNCATED
    return DecodeError(reason, _first_line(exc), codec=codec)



def _first_line(exc: BaseException) -> str:
    text = str(exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__


def normalize_hint(hint: str | None) -> str:
    """"PNG", ".png", "image/png" -> "png"; "image/svg+xml" -> "svg"."""
    if not hint:
        return ""
    tag = hint.strip().lower()
    if "/" in tag:
        tag = tag.split("/", 1)[1]
    tag = tag.lstrip(".").split("+", 1)[0]
    if tag.startswith("x-"):
        tag = tag[2:]
    return tag


def _durations_from_ms(values: list[Any], count: int) -> list[float]:
    out: list[float] = []
    for i in range(count):
        try:
            ms = float(values[i])
        except (IndexError, TypeError, ValueError):
            ms = DEFAULT_FRAME_DURATION * 1000.0
        out.append(ms / 1000.0)
    return out


# ═══════════════════════════════════════════════════════════════════════
# pyvips codecs
# ═══════════════════════════════════════════════════════════════════════

_VIPS_BAD_INTERPRETATIONS = ("fourier", "histogram", "matrix")
_VIPS_ANIMATED_LOADERS = ("gifload", "webpload", "jxlload")


def _vips_int(image: Any, field: str, default: int) -> int:
    pyvips = _get_pyvips_module()
    try:
        if image.get_typeof(field) != 0:
            return int(image.get(field))
    except (pyvips.Error, TypeError, ValueError):
        _logger.debug("metadata %s unreadable", field)
    return default


def _vips_text_metadata(image: Any) -> dict[str, Any]:
    pyvips = _get_pyvips_module()
    meta: dict[str, Any] = {}
    with contextlib.suppress(pyvips.Error):
        meta["loader"] = image.get("vips-loader")
    for name in image.get_fields():
        if not name.startswith("exif-") or "orientation" in name.lower():
            continue
        with contextlib.suppress(pyvips.Error):
            if image.get_typeof(name) == pyvips.GValue.gstr_type:
                meta[name] = image.get(name)
    return meta


def _vips_icc(image: Any) -> bytes | None:
    if image.get_typeof("icc-profile-data") == 0:
        return None
    return bytes(image.get("icc-profile-data"))


def _vips_to_rgba(image: Any, codec: str) -> np.ndarray:
    """Convert any pyvips image into an (h, w, 4) uint8 sRGB array."""
    pyvips = _get_pyvips_module()
    interpretation = str(image.interpretation)
    if interpretation in _VIPS_BAD_INTERPRETATIONS or (interpretation == "multiband" and image.bands > CHANNELS):
        raise DecodeError(
            DecodeFailure.UNSUPPORTED_COLOR_SPACE,
            f"{interpretation} image with {image.bands} bands",
            codec=codec,
        )
    if interpretation == "multiband":
        image = image.copy(interpretation="b-w" if image.bands <= 2 else "srgb")  # noqa: PLR2004

    if image.get_typeof("icc-profile-data") != 0:
        try:
            image = image.icc_transform("srgb", embedded=True)
        except pyvips.Error as exc:
            _logger.warning("icc transform skipped (%s): %s", codec, _first_line(exc))

    image = image.colourspace("srgb")
    if not image.hasalpha():
        image = image.bandjoin(255)
    if image.bands > CHANNELS:
        image = image.extract_band(0, n=CHANNELS)
    if image.format != "uchar":
        image = image.cast("uchar")

    mem = image.write_to_memory()
    array = np.frombuffer(mem, dtype=np.uint8).reshape(image.height, image.width, image.bands)
    if array.shape[2] != CHANNELS:
        raise DecodeError(
            DecodeFailure.UNSUPPORTED_COLOR_SPACE,
            f"unsupported band count after conversion: {array.shape[2]}",
            codec=codec,
        )
    return array


class VipsRasterCodec:
    """Still and animated raster formats handled by libvips."""

    name = "vips"
    extensions = frozenset(
        {"png", "jpg", "jpeg", "jpe", "jfif", "gif", "webp", "tif", "tiff", "bmp", "heic", "heif", "avif", "jxl"}
    )
    mime_types = frozenset({"png", "jpeg", "gif", "webp", "tiff", "bmp", "heic", "heif", "avif", "jxl"})
    vector = False
    fallback = False

    def can_decode(self, header: bytes) -> bool:
        if header.startswith((b"\x89PNG\r\n\x1a\n", b"\xff\xd8\xff", b"GIF87a", b"GIF89a", b"BM")):
            return True
        if header.startswith(_TIFF_SIGNATURES):
            return True
        if header[:4] == b"RIFF" and header[8:12] == b"WEBP":
            return True
        if header[4:8] == b"ftyp" and header[8:12] in (b"heic", b"heix", b"mif1", b"msf1", b"avif", b"avis"):
            return True
        return header.startswith((b"\xff\x0a", b"\x00\x00\x00\x0cJXL "))

    def decode(self, data: bytes, hints: DecodeHints) -> DecodedImage:
        pyvips = _get_pyvips_module()
        options = _vips_load_options(pyvips)
        try:
            image = pyvips.Image.new_from_buffer(data, "", **options)
            loader = str(image.get("vips-loader")) if image.get_typeof("vips-loader") else ""
            n_pages = _vips_int(image, "n-pages", 1)
            if n_pages > 1 and loader.startswith(_VIPS_ANIMATED_LOADERS):
                return self._decode_animated(pyvips.Image.new_from_buffer(data, "", n=-1, **options))
            icc = _vips_icc(image)
            metadata = _vips_text_metadata(image)
            pixels = _vips_to_rgba(image.autorot(), self.name)
        except pyvips.Error as exc:
            raise _decode_failure(exc, data, self.name) from exc
        return DecodedImage.from_frames(
            [(pixels, DEFAULT_FRAME_DURATION)], self.name, icc_profile=icc, metadata=metadata
        )

    def _decode_animated(self, strip: Any) -> DecodedImage:
        page_height = _vips_int(strip, "page-height", strip.height)
        if page_height <= 0 or strip.height % page_height:
            page_height = strip.height
        count = strip.height // page_height
        delays = strip.get("delay") if strip.get_typeof("delay") else []
        loop = _vips_int(strip, "loop", 0)
        pixels = _vips_to_rgba(strip, self.name).reshape(count, page_height, strip.width, CHANNELS)
        durations = _durations_from_ms(list(delays), count)
        _logger.debug("animated decode: frames=%d size=%dx%d loop=%d", count, strip.width, page_height, loop)
        return DecodedImage.from_frames(
            [(pixels[i], durations[i]) for i in range(count)],
            self.name,
            icc_profile=_vips_icc(strip),
            metadata=_vips_text_metadata(strip),
            loop_count=loop,
        )


class VipsSvgCodec:
    """Vector documents rasterized at the caller's target resolution."""

    name = "svg"
    extensions = frozenset({"svg", "svgz"})
    mime_types = frozenset({"svg"})
    vector = True
    fallback = False

    def can_decode(self, header: bytes) -> bool:
        head = header.lstrip(b"\xef\xbb\xbf \t\r\n").lower()
        if head.startswith(b"<svg"):
            return True
        return head.startswith((b"<?xml", b"<!--", b"<!doctype svg")) and b"<svg" in head

    def decode(self, data: bytes, hints: DecodeHints) -> DecodedImage:
        pyvips = _get_pyvips_module()
        width, height = hints.target_size
        try:
            image = pyvips.Image.thumbnail_buffer(data, width, height=height)
            pixels = _vips_to_rgba(image, self.name)
        except pyvips.Error as exc:
            reason = classify_error(str(exc), default=DecodeFailure.RASTERIZATION)
            if reason == DecodeFailure.TRUNCATED:
                reason = DecodeFailure.RASTERIZATION
            raise DecodeError(reason, _first_line(exc), codec=self.name) from exc
        return DecodedImage.from_frames(
            [(pixels, DEFAULT_FRAME_DURATION)],
            self.name,
            metadata={"loader": "svgload"},
            rasterized_at=(int(pixels.shape[1]), int(pixels.shape[0])),
        )


class VipsRawCodec:
    """Camera RAW sensor data, developed to a single sRGB raster."""

    name = "raw"
    extensions = frozenset({"cr2", "cr3", "crw", "nef", "nrw", "arw", "srf", "sr2", "dng", "orf", "rw2", "raf", "pef", "srw", "erf", "kdc", "mrw", "3fr"})
    mime_types = frozenset({"raw", "dng", "x-canon-cr2", "x-nikon-nef", "x-sony-arw"})
    vector = False
    fallback = False

    def can_decode(self, header: bytes) -> bool:
        if header.startswith((b"FUJIFILMCCD-RAW", b"IIRO", b"IIRS", b"MMOR", b"IIU\x00")):
            return True
        if header.startswith(b"II*\x00") and header[8:10] == b"CR":
            return True
        return header[4:12] == b"ftypcrx "

    def decode(self, data: bytes, hints: DecodeHints) -> DecodedImage:
        pyvips = _get_pyvips_module()
        options = _vips_load_options(pyvips)
        try:
            if has_vips_operation("dcrawload_buffer"):
                image = pyvips.Operation.call("dcrawload_buffer", data, **options)
            else:
                _logger.debug("libraw loader unavailable; using generic libvips loader")
                image = pyvips.Image.new_from_buffer(data, "", **options)
            metadata = _vips_text_metadata(image)
            pixels = _vips_to_rgba(image.autorot(), self.name)
        except pyvips.Error as exc:
            raise _decode_failure(exc, data, self.name) from exc
        return DecodedImage.from_frames([(pixels, DEFAULT_FRAME_DURATION)], self.name, metadata=metadata)


# ═══════════════════════════════════════════════════════════════════════
# Pillow codecs
# ═══════════════════════════════════════════════════════════════════════

_PIL_UNSUPPORTED_MODES = ("I", "F", "LAB", "HSV")
_PIL_ANIMATED_FORMATS = ("GIF", "PNG", "WEBP", "FLI", "APNG")
_PIL_ERRORS = (OSError, ValueError, SyntaxError, EOFError, Image.DecompressionBombError)


def _pillow_to_srgb(frame: Image.Image, icc: bytes | None) -> Image.Image:
    if not icc or frame.mode not in ("RGB", "RGBA", "CMYK"):
        return frame
    try:
        src = ImageCms.ImageCmsProfile(BytesIO(icc))
        dst = ImageCms.createProfile("sRGB")
        out_mode = "RGBA" if frame.mode == "RGBA" else "RGB"
        return ImageCms.profileToProfile(frame, src, dst, outputMode=out_mode)
    except (ImageCms.PyCMSError, OSError, ValueError) as exc:
        _logger.warning("icc conversion skipped (pillow): %s", exc)
        return frame


def _pillow_to_rgba(frame: Image.Image, icc: bytes | None, codec: str) -> np.ndarray:
    mode = frame.mode
    if mode in _PIL_UNSUPPORTED_MODES:
        raise DecodeError(DecodeFailure.UNSUPPORTED_COLOR_SPACE, f"image mode {mode}", codec=codec)
    if mode.startswith("I;16"):
        gray = (np.array(frame, dtype=np.uint16) >> 8).astype(np.uint8)
        alpha = np.full_like(gray, 255)
        return np.dstack([gray, gray, gray, alpha])
    rgba = _pillow_to_srgb(frame, icc).convert("RGBA")
    return np.array(rgba, dtype=np.uint8)


def _decode_with_pillow(data: bytes, codec: str, *, composite_only: bool = False) -> DecodedImage:
    try:
        with Image.open(BytesIO(data)) as im:
            fmt = im.format or "unknown"
            icc = im.info.get("icc_profile")
            loop = int(im.info.get("loop", 0) or 0)
            animated = not composite_only and fmt in _PIL_ANIMATED_FORMATS and getattr(im, "is_animated", False)
            if animated:
                frames = []
                for frame in ImageSequence.Iterator(im):
                    duration = frame.info.get("duration") or DEFAULT_FRAME_DURATION * 1000.0
                    frames.append((_pillow_to_rgba(frame, icc, codec), float(duration) / 1000.0))
            else:
                im.load()
                still = ImageOps.exif_transpose(im) if not composite_only else im
                frames = [(_pillow_to_rgba(still, icc, codec), DEFAULT_FRAME_DURATION)]
    except UnidentifiedImageError as exc:
        raise DecodeError(DecodeFailure.UNSUPPORTED_FORMAT, _first_line(exc), codec=codec) from exc
    except _PIL_ERRORS as exc:
        raise _decode_failure(exc, data, codec) from exc
    return DecodedImage.from_frames(
        frames, codec, icc_profile=icc, metadata={"loader": f"pillow:{fmt.lower()}"}, loop_count=loop
    )


class PillowPsdCodec:
    """Layered Photoshop documents, flattened to the stored composite."""

    name = "psd"
    extensions = frozenset({"psd", "psb"})
    mime_types = frozenset({"psd", "vnd.adobe.photoshop", "photoshop"})
    vector = False
    fallback = False

    def can_decode(self, header: bytes) -> bool:
        return header.startswith(b"8BPS")

    def decode(self, data: bytes, hints: DecodeHints) -> DecodedImage:
        return _decode_with_pillow(data, self.name, composite_only=True)


class PillowCodec:
    """Everything else Pillow can identify from content."""

    name = "pillow"
    extensions = frozenset({"ico", "cur", "icns", "tga", "pcx", "ppm", "pgm", "pbm", "pnm", "dds", "sgi", "xbm", "apng", "im", "msp"})
    mime_types = frozenset({"vnd.microsoft.icon", "icon", "tga", "pcx", "portable-pixmap"})
    vector = False
    fallback = True

    def can_decode(self, header: bytes) -> bool:
        if header.startswith((b"\x00\x00\x01\x00", b"\x00\x00\x02\x00", b"icns")):
            return True
        if len(header) > 1 and header[0] == 0x50 and header[1:2] in (b"1", b"2", b"3", b"4", b"5", b"6"):
            return True
        return len(header) > 1 and header[0] == 0x0A and header[1] <= 5  # noqa: PLR2004

    def decode(self, data: bytes, hints: DecodeHints) -> DecodedImage:
        return _decode_with_pillow(data, self.name)


def default_codecs() -> list[Codec]:
    # Order matters for sniffing: more specific signatures first.
    return [VipsRawCodec(), PillowPsdCodec(), VipsSvgCodec(), VipsRasterCodec(), PillowCodec()]


# ═══════════════════════════════════════════════════════════════════════
# Registry
# ═══════════════════════════════════════════════════════════════════════


class CodecRegistry:
    """Maps a source to the codecs able to decode it and runs them in order."""

    def __init__(
        self,
        codecs: list[Codec] | None = None,
        default_target_size: tuple[int, int] = (2048, 2048),
    ) -> None:
        self._codecs: list[Codec] = list(codecs) if codecs is not None else default_codecs()
        self.default_target_size = default_target_size

    @property
    def codecs(self) -> list[Codec]:
        return list(self._codecs)

    @property
    def extensions(self) -> frozenset[str]:
        """Every file extension some codec claims (lowercase, no dot)."""
        return frozenset().union(*(codec.extensions for codec in self._codecs))

    def register(self, codec: Codec, *, first: bool = False) -> None:
        if first:
            self._codecs.insert(0, codec)
        else:
            self._codecs.append(codec)
        _logger.debug("codec registered: %s (first=%s)", codec.name, first)

    def candidates(self, header: bytes, format_hint: str | None = None, extension: str = "") -> list[Codec]:
        """Codecs to try, in priority order: hint, signature, extension, fallbacks.

        A bare TIFF signature is also the container of most camera RAW
        formats, so there an extension claimed by another codec wins over
        the signature.
        """
        ordered: list[Codec] = []

        def add(codec: Codec) -> None:
            if codec not in ordered:
                ordered.append(codec)

        hint = normalize_hint(format_hint)
        if hint:
            for codec in self._codecs:
                if hint in codec.extensions or hint in codec.mime_types:
                    add(codec)
        ext = normalize_hint(extension)
        sniffed = [c for c in self._codecs if header and c.can_decode(header)]
        by_ext = [c for c in self._codecs if ext and ext in c.extensions]
        if header.startswith(_TIFF_SIGNATURES) and not any(c in by_ext for c in sniffed):
            sniffed, by_ext = by_ext, sniffed
        for codec in (*sniffed, *by_ext):
            add(codec)
        for codec in self._codecs:
            if codec.fallback:
                add(codec)
        return ordered

    def decode(
        self,
        data: bytes,
        format_hint: str | None = None,
        path: str | None = None,
        target_size: tuple[int, int] | None = None,
    ) -> DecodedImage:
        if not data:
            raise DecodeError(DecodeFailure.TRUNCATED, "empty input")
        extension = Path(path).suffix if path else ""
        hints = DecodeHints(target_size or self.default_target_size, format_hint, normalize_hint(extension))
        candidates = self.candidates(data[:_HEADER_SIZE], format_hint, extension)
        if not candidates:
            raise DecodeError(DecodeFailure.UNSUPPORTED_FORMAT, "no codec recognizes this data")

        errors: list[DecodeError] = []
        for codec in candidates:
            try:
                with metrics.timed(f"decode.{codec.name}"):
                    image = codec.decode(data, hints)
            except DecodeError as exc:
                _logger.debug("codec %s failed: %s", codec.name, exc)
                metrics.inc(f"decode.{codec.name}.failed")
                errors.append(exc)
                continue
            metrics.inc(f"decode.{codec.name}.ok")
            _logger.debug(
                "decoded with %s: %dx%d frames=%d", codec.name, image.width, image.height, len(image.frames)
            )
            return image

        # Prefer the most informative failure over "this codec did not recognize it".
        for exc in errors:
            if exc.reason != DecodeFailure.UNSUPPORTED_FORMAT:
                raise exc
        raise errors[0]

    def decode_source(self, source: ImageSource) -> DecodedImage:
        data = source.read_bytes()
        return self.decode(data, source.format_hint, source.path, source.target_size)

    def is_vector(self, source: ImageSource) -> bool:
        found = self.candidates(source.header(_HEADER_SIZE), source.format_hint, source.extension)
        return bool(found) and found[0].vector

    def cache_key(self, source: ImageSource) -> str:
        """Frame-cache key; vector sources are cached per rasterization size."""
        if not self.is_vector(source):
            return source.fingerprint
        width, height = source.target_size or self.default_target_size
        return f"{source.fingerprint}@{width}x{height}"
