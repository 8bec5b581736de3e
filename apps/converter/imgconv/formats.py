"""Format tokens, the static capability table and strategy classification."""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

DOCUMENT_FORMAT = "pdf"

FORMAT_ALIASES: Dict[str, str] = {
    "jpeg": "jpg",
    "jpe": "jpg",
    "jfif": "jpg",
    "tif": "tiff",
    "heif": "heic",
    "svgz": "svg",
    "icon": "ico",
}

FAST_PATH_WRITABLE = frozenset({"jpg", "png", "webp", "gif", "tiff", "avif", "heic"})
FAST_PATH_READABLE = FAST_PATH_WRITABLE | {"bmp", "ico", "tga", "pcx", "ppm", "pgm", "pbm", "jp2"}

PREPROCESS_INPUTS = frozenset(
    {
        # layered and document formats
        "psd",
        "xcf",
        "pdf",
        "eps",
        "ps",
        "ai",
        # legacy and proprietary containers
        "cdr",
        "djvu",
        # camera raw
        "raw",
        "cr2",
        "nef",
        "arw",
        "dng",
    }
)

VECTOR_FORMATS = frozenset({"svg", "eps", "ps", "ai", "pdf"})
TRACE_TARGETS = frozenset({"svg"})

EXTERNAL_WRITABLE = frozenset(
    {
        "jpg",
        "png",
        "webp",
        "gif",
        "tiff",
        "avif",
        "heic",
        "bmp",
        "ico",
        "svg",
        "eps",
        "ps",
        "tga",
        "pcx",
        "ppm",
        "pgm",
        "pbm",
        "jp2",
        "psd",
    }
)

# ImageMagick coder names, as printed by ``magick -list format``.
MAGICK_CODERS: Dict[str, str] = {
    "jpg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "gif": "GIF",
    "tiff": "TIFF",
    "avif": "AVIF",
    "heic": "HEIC",
    "bmp": "BMP",
    "ico": "ICO",
    "svg": "SVG",
    "eps": "EPS",
    "ps": "PS",
    "ai": "AI",
    "pdf": "PDF",
    "tga": "TGA",
    "pcx": "PCX",
    "ppm": "PPM",
    "pgm": "PGM",
    "pbm": "PBM",
    "jp2": "JP2",
    "psd": "PSD",
    "xcf": "XCF",
    "cdr": "CDR",
    "djvu": "DJVU",
    "raw": "RAW",
    "cr2": "CR2",
    "nef": "NEF",
    "arw": "ARW",
    "dng": "DNG",
}

MIME_FORMATS: Dict[str, str] = {
    "image/jpeg": "jpg",
    "image/pjpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/bmp": "bmp",
    "image/x-ms-bmp": "bmp",
    "image/tiff": "tiff",
    "image/webp": "webp",
    "image/avif": "avif",
    "image/heif": "heic",
    "image/heic": "heic",
    "image/svg+xml": "svg",
    "image/x-icon": "ico",
    "image/vnd.microsoft.icon": "ico",
    "image/vnd.adobe.photoshop": "psd",
    "image/x-xcf": "xcf",
    "image/x-raw": "raw",
    "image/x-canon-cr2": "cr2",
    "image/x-nikon-nef": "nef",
    "image/x-sony-arw": "arw",
    "image/x-adobe-dng": "dng",
    "image/vnd.djvu": "djvu",
    "application/pdf": "pdf",
    "application/postscript": "eps",
    "application/illustrator": "ai",
    "application/cdr": "cdr",
}


@dataclass(frozen=True)
class FormatCapability:
    """What the service can do with one format token."""

    readable: bool
    writable_by_fast_path: bool
    writable_by_external_tool: bool
    requires_preprocessing: bool

    @property
    def writable(self) -> bool:
        return self.writable_by_fast_path or self.writable_by_external_tool


@dataclass(frozen=True)
class Classification:
    """Strategy selection for one (input, target) pair."""

    use_fast_path: bool = False
    use_document_converter: bool = False
    needs_preprocessing: bool = False

    @property
    def use_external_tool(self) -> bool:
        return not (self.use_fast_path or self.use_document_converter)


def normalize_format(token: Optional[str]) -> str:
    """Lowercase a format token, strip a leading dot and resolve aliases."""
    value = (token or "").strip().lower().lstrip(".")
    return FORMAT_ALIASES.get(value, value)


def output_extension(target_format: str) -> str:
    """Return the file extension for a requested target, keeping the caller's spelling."""
    value = (target_format or "").strip().lower().lstrip(".")
    return f".{value}" if value else ""


def _static_table() -> Dict[str, FormatCapability]:
    tokens = set(MAGICK_CODERS) | FAST_PATH_READABLE | PREPROCESS_INPUTS
    table: Dict[str, FormatCapability] = {}
    for token in sorted(tokens):
        table[token] = FormatCapability(
            readable=True,
            writable_by_fast_path=token in FAST_PATH_WRITABLE,
            writable_by_external_tool=token in EXTERNAL_WRITABLE,
            requires_preprocessing=token in PREPROCESS_INPUTS,
        )
    return table


STATIC_CAPABILITIES: Mapping[str, FormatCapability] = _static_table()


def merge_probed_formats(
    probed: Optional[Mapping[str, Tuple[bool, bool]]],
) -> Dict[str, FormatCapability]:
    """Overlay the external tool's probed (read, write) flags on the static table.

    ``probed`` maps ImageMagick coder names to ``(readable, writable)``. When it
    is ``None`` the tool is absent and no format is writable through it.
    """
    merged: Dict[str, FormatCapability] = {}
    for token, capability in STATIC_CAPABILITIES.items():
        if probed is None:
            merged[token] = replace(capability, writable_by_external_tool=False)
            continue
        flags = probed.get(MAGICK_CODERS.get(token, token.upper()))
        if flags is None:
            merged[token] = replace(capability, writable_by_external_tool=False)
            continue
        readable, writable = flags
        merged[token] = replace(
            capability,
            readable=capability.readable or readable,
            writable_by_external_tool=writable,
        )
    return merged


def detect_input_format(filename: Optional[str], mimetype: Optional[str] = None) -> Optional[str]:
    """Infer the input format token from the original filename or declared MIME type.

    Returns ``None`` when neither identifies an image the service knows about.
    """
    if filename:
        token = normalize_format(Path(filename).suffix)
        if token in STATIC_CAPABILITIES:
            return token
    mime = (mimetype or "").split(";", 1)[0].strip().lower()
    if mime in MIME_FORMATS:
        return MIME_FORMATS[mime]
    if mime.startswith("image/"):
        subtype = mime.split("/", 1)[1]
        token = normalize_format(subtype.split("+", 1)[0].replace("x-", "", 1))
        return token or None
    return None


def classify(input_format: Optional[str], target_format: str) -> Classification:
    """Choose the conversion route for an (input, target) pair.

    Rules, in priority order: the document format always goes to the document
    converter; fast-path targets from inputs that need no pre-processing use
    the fast path; everything else defers to the external tool, pre-processing
    exotic inputs first when the target differs from the input.
    """
    source = normalize_format(input_format)
    target = normalize_format(target_format)
    if target == DOCUMENT_FORMAT:
        return Classification(use_document_converter=True)
    if target in FAST_PATH_WRITABLE and source not in PREPROCESS_INPUTS:
        return Classification(use_fast_path=True)
    return Classification(needs_preprocessing=source in PREPROCESS_INPUTS and target != source)


def needs_trace(input_format: Optional[str], target_format: str) -> bool:
    """Return True when a raster source must be traced to produce vector output."""
    return normalize_format(target_format) in TRACE_TARGETS and normalize_format(input_format) not in VECTOR_FORMATS
