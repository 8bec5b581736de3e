from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pytest
from PIL import Image

from imgconv.capabilities import CapabilityRegistry
from imgconv.errors import ConverterError, FailureCause
from imgconv.external import ExternalConverter
from imgconv.formats import EXTERNAL_WRITABLE, MAGICK_CODERS, normalize_format
from imgconv.pipeline import ConversionOrchestrator

SVG_DOCUMENT = (
    '<svg xmlns="http://www.w3.org/2000/svg" width="10" height="10">'
    '<rect width="10" height="10"/></svg>'
)

PIL_WRITERS = {
    "jpg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "gif": "GIF",
    "tiff": "TIFF",
    "bmp": "BMP",
    "ico": "ICO",
    "ppm": "PPM",
    "tga": "TGA",
    "pcx": "PCX",
}


class FakeExternalConverter(ExternalConverter):
    """Pillow-backed stand-in for ImageMagick that records each call."""

    name = "fake-magick"

    def __init__(
        self,
        available: bool = True,
        tracer: bool = True,
        writable: Optional[Iterable[str]] = None,
        fail_convert: Optional[FailureCause] = None,
        fail_normalize: Optional[FailureCause] = None,
        trace_failures: Iterable[str] = (),
    ) -> None:
        self.available = available
        self.tracer = tracer
        self.writable = set(writable) if writable is not None else set(EXTERNAL_WRITABLE)
        self.fail_convert = fail_convert
        self.fail_normalize = fail_normalize
        self.trace_failures = set(trace_failures)
        self.calls: List[Tuple[str, str]] = []
        self.probes = 0

    def is_available(self) -> bool:
        return self.available

    def version(self) -> Optional[str]:
        return "ImageMagick 7.1.1-fake" if self.available else None

    def list_formats(self) -> Optional[Dict[str, Tuple[bool, bool]]]:
        self.probes += 1
        if not self.available:
            return None
        return {coder: (True, token in self.writable) for token, coder in MAGICK_CODERS.items()}

    def tracer_available(self) -> bool:
        return self.available and self.tracer

    def convert(self, input_path: Path, output_path: Path, target_format: str) -> Path:
        self.calls.append(("convert", input_path.name))
        if self.fail_convert:
            raise ConverterError(self.fail_convert, "simulated convert failure")
        target = normalize_format(target_format)
        if target == "svg":
            output_path.write_text(SVG_DOCUMENT, encoding="utf-8")
            return output_path
        return self._reencode(input_path, output_path, PIL_WRITERS.get(target, "PNG"))

    def normalize(self, input_path: Path, output_path: Path, input_format: Optional[str]) -> Path:
        self.calls.append(("normalize", input_path.name))
        if self.fail_normalize:
            raise ConverterError(self.fail_normalize, "simulated normalize failure")
        return self._reencode(input_path, output_path, "PNG")

    def trace(self, input_path: Path, output_path: Path, mode: str, work_dir: Path) -> Path:
        self.calls.append(("trace", mode))
        if mode in self.trace_failures:
            raise ConverterError(FailureCause.TOOL_FAILURE, f"simulated {mode} trace failure")
        output_path.write_text(SVG_DOCUMENT, encoding="utf-8")
        return output_path

    @staticmethod
    def _reencode(input_path: Path, output_path: Path, pil_format: str) -> Path:
        try:
            with Image.open(input_path) as image:
                image.convert("RGB").save(output_path, format=pil_format)
        except (OSError, ValueError) as error:
            output_path.unlink(missing_ok=True)
            raise ConverterError(FailureCause.DECODE_UNSUPPORTED, str(error)) from error
        return output_path


def make_image(path: Path, size: Tuple[int, int] = (100, 100), mode: str = "RGB", fmt: str = "PNG") -> Path:
    """Write a solid-color test image."""
    color = (120, 140, 180, 128) if mode == "RGBA" else (120, 140, 180)
    Image.new(mode, size, color=color).save(path, format=fmt)
    return path


@pytest.fixture
def fake_external() -> FakeExternalConverter:
    return FakeExternalConverter()


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    path = tmp_path / "converted"
    path.mkdir()
    return path


@pytest.fixture
def upload_dir(tmp_path: Path) -> Path:
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def orchestrator(
    fake_external: FakeExternalConverter, output_dir: Path, upload_dir: Path
) -> ConversionOrchestrator:
    return ConversionOrchestrator(
        fake_external,
        CapabilityRegistry(fake_external),
        output_dir=output_dir,
        work_root=upload_dir,
    )
