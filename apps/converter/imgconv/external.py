"""External image tool wrapper (ImageMagick plus potrace for vector tracing)."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import ConverterError, FailureCause
from .formats import MAGICK_CODERS, normalize_format

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT_SEC = 120
PROBE_TIMEOUT_SEC = 10

ICON_SIZES = "256,128,64,48,32,16"

OUTPUT_ARGUMENTS: Dict[str, Tuple[str, ...]] = {
    "ico": ("-define", f"icon:auto-resize={ICON_SIZES}"),
    "eps": ("-compress", "LZW"),
    "ps": ("-compress", "LZW"),
    "bmp": ("-compress", "None"),
    "jpg": ("-quality", "90"),
    "webp": ("-quality", "90"),
    "avif": ("-quality", "90"),
    "heic": ("-quality", "90"),
}

# Level-3 PostScript coders support LZW; the default EPS/PS coders do not.
OUTPUT_CODERS: Dict[str, str] = {
    "eps": "EPS3",
    "ps": "PS3",
}

FLATTEN_INPUTS = frozenset({"xcf"})

TRACE_MODES = ("grayscale", "monochrome")

_FORMAT_LINE = re.compile(r"^\s*([A-Za-z0-9-]+)\*?\s+(?:\S+\s+)?([r-])([w-])([+-])\s")


def parse_format_list(output: str) -> Dict[str, Tuple[bool, bool]]:
    """Parse ``magick -list format`` output into ``{CODER: (readable, writable)}``."""
    formats: Dict[str, Tuple[bool, bool]] = {}
    for line in output.splitlines():
        match = _FORMAT_LINE.match(line)
        if not match:
            continue
        name, read, write, _ = match.groups()
        formats[name.upper()] = (read == "r", write == "w")
    return formats


def classify_tool_error(text: str) -> FailureCause:
    """Map ImageMagick error text to a failure cause."""
    lowered = (text or "").lower()
    if "no encode delegate" in lowered:
        return FailureCause.ENCODE_UNSUPPORTED
    if "no decode delegate" in lowered:
        return FailureCause.DECODE_UNSUPPORTED
    return FailureCause.TOOL_FAILURE


def _truncate(value: str, limit: int = 300) -> str:
    if len(value) <= limit:
        return value
    return f"{value[:limit]}..."


def _ensure_output(output_path: Path) -> Path:
    if not output_path.exists():
        raise ConverterError(FailureCause.EMPTY_OUTPUT, f"{output_path.name} was not created")
    if output_path.stat().st_size == 0:
        output_path.unlink(missing_ok=True)
        raise ConverterError(FailureCause.EMPTY_OUTPUT, f"{output_path.name} is empty")
    return output_path


class ExternalConverter(ABC):
    """Capability interface for the out-of-process image converter."""

    name = "external"

    @abstractmethod
    def is_available(self) -> bool:
        """Return True when the tool can be invoked."""

    @abstractmethod
    def version(self) -> Optional[str]:
        """Return the tool's version banner, or None when unavailable."""

    @abstractmethod
    def list_formats(self) -> Optional[Dict[str, Tuple[bool, bool]]]:
        """Return ``{CODER: (readable, writable)}``, or None when unavailable."""

    @abstractmethod
    def tracer_available(self) -> bool:
        """Return True when raster-to-vector tracing is possible."""

    @abstractmethod
    def convert(self, input_path: Path, output_path: Path, target_format: str) -> Path:
        """Convert ``input_path`` into ``output_path``; raise ConverterError on failure."""

    @abstractmethod
    def normalize(self, input_path: Path, output_path: Path, input_format: Optional[str]) -> Path:
        """Produce a single-frame PNG from an exotic input."""

    @abstractmethod
    def trace(self, input_path: Path, output_path: Path, mode: str, work_dir: Path) -> Path:
        """Trace a raster image into SVG using the given binarization mode."""


def resolve_magick_command(binary: Optional[str] = None) -> Optional[List[str]]:
    """Locate ImageMagick, preferring the v7 ``magick`` entry point."""
    if binary:
        located = shutil.which(binary)
        return [located] if located else None
    magick = shutil.which("magick")
    if magick:
        return [magick]
    convert = shutil.which("convert")
    if convert:
        return [convert]
    return None


class MagickConverter(ExternalConverter):
    """Run ImageMagick (and potrace) as blocking subprocesses with a timeout."""

    name = "imagemagick"

    def __init__(
        self,
        binary: Optional[str] = None,
        tracer: Optional[str] = None,
        timeout: float = DEFAULT_TOOL_TIMEOUT_SEC,
    ) -> None:
        self._command = resolve_magick_command(binary)
        self._tracer = shutil.which(tracer or "potrace")
        self.timeout = timeout

    def is_available(self) -> bool:
        return self._command is not None

    def tracer_available(self) -> bool:
        return self.is_available() and self._tracer is not None

    def version(self) -> Optional[str]:
        if not self._command:
            return None
        try:
            result = self._run([*self._command, "-version"], timeout=PROBE_TIMEOUT_SEC)
        except ConverterError as error:
            logger.warning("ImageMagick version probe failed: %s", error)
            return None
        if result.returncode != 0:
            return None
        lines = (result.stdout or "").strip().splitlines()
        return lines[0] if lines else None

    def list_formats(self) -> Optional[Dict[str, Tuple[bool, bool]]]:
        if not self._command:
            return None
        try:
            result = self._run([*self._command, "-list", "format"], timeout=PROBE_TIMEOUT_SEC)
        except ConverterError as error:
            logger.warning("ImageMagick format probe failed: %s", error)
            return None
        if result.returncode != 0:
            logger.warning("ImageMagick format probe exited with %s", result.returncode)
            return None
        return parse_format_list(result.stdout or "")

    def convert(self, input_path: Path, output_path: Path, target_format: str) -> Path:
        target = normalize_format(target_format)
        coder = OUTPUT_CODERS.get(target) or MAGICK_CODERS.get(target, target.upper())
        command = [
            *self._require_command(),
            str(input_path),
            *OUTPUT_ARGUMENTS.get(target, ()),
            f"{coder}:{output_path}",
        ]
        self._check(command, output_path)
        return output_path

    def normalize(self, input_path: Path, output_path: Path, input_format: Optional[str]) -> Path:
        source = normalize_format(input_format)
        if source in FLATTEN_INPUTS:
            arguments = [str(input_path), "-background", "none", "-flatten"]
        else:
            arguments = [f"{input_path}[0]"]
        command = [*self._require_command(), *arguments, f"PNG:{output_path}"]
        self._check(command, output_path)
        return output_path

    def trace(self, input_path: Path, output_path: Path, mode: str, work_dir: Path) -> Path:
        if mode not in TRACE_MODES:
            raise ValueError(f"Unknown trace mode: {mode}")
        if not self._tracer:
            raise ConverterError(FailureCause.TOOL_MISSING, "potrace is not installed")
        if mode == "grayscale":
            bitmap = work_dir / "trace_gray.pgm"
            prepare = [
                *self._require_command(),
                f"{input_path}[0]",
                "-background",
                "white",
                "-flatten",
                "-colorspace",
                "Gray",
                f"PGM:{bitmap}",
            ]
        else:
            bitmap = work_dir / "trace_mono.pbm"
            prepare = [
                *self._require_command(),
                f"{input_path}[0]",
                "-background",
                "white",
                "-flatten",
                "-monochrome",
                f"PBM:{bitmap}",
            ]
        try:
            self._check(prepare, bitmap)
            self._check([self._tracer, "--svg", "-o", str(output_path), str(bitmap)], output_path)
        finally:
            bitmap.unlink(missing_ok=True)
        return output_path

    def _require_command(self) -> List[str]:
        if not self._command:
            raise ConverterError(FailureCause.TOOL_MISSING, "ImageMagick is not installed")
        return self._command

    def _check(self, command: Sequence[str], output_path: Path) -> None:
        result = self._run(command, timeout=self.timeout)
        if result.returncode != 0:
            output_path.unlink(missing_ok=True)
            message = (result.stderr or result.stdout or "").strip()
            raise ConverterError(classify_tool_error(message), _truncate(message) or f"exit {result.returncode}")
        _ensure_output(output_path)

    def _run(self, command: Sequence[str], timeout: float) -> subprocess.CompletedProcess:
        logger.debug("Running %s", " ".join(command))
        try:
            return subprocess.run(
                list(command),
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as error:
            raise ConverterError(FailureCause.TIMEOUT, f"{Path(command[0]).name} timed out after {timeout}s") from error
        except FileNotFoundError as error:
            raise ConverterError(FailureCause.TOOL_MISSING, str(error)) from error
