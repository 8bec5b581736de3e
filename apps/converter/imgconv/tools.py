"""In-process conversion utilities: raster fast path, PDF embedding and archives."""

from __future__ import annotations

import zipfile
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple

import fitz
import img2pdf
from fpdf import FPDF
from PIL import Image, ImageOps
from pillow_heif import register_heif_opener

from .errors import ConverterError, FailureCause
from .formats import normalize_format

register_heif_opener()

PIL_FORMATS: Dict[str, str] = {
    "jpg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "tiff": "TIFF",
    "avif": "AVIF",
    "heic": "HEIF",
    "gif": "GIF",
}

SAVE_OPTIONS: Dict[str, Dict[str, Any]] = {
    "jpg": {"quality": 90, "progressive": True, "optimize": True},
    "png": {"compress_level": 6},
    "webp": {"quality": 90, "lossless": False},
    "tiff": {"compression": "tiff_lzw"},
    "avif": {"quality": 90},
    "heic": {"quality": 90},
    "gif": {"optimize": True},
}

ANIMATED_TARGETS = frozenset({"gif", "webp"})
ALPHA_TARGETS = frozenset({"png", "webp", "tiff", "avif", "heic"})

GIF_TRANSPARENT_INDEX = 255

FIT_BOX_POINTS = 500
RASTER_DPI = 150


def _flatten_alpha(image: Image.Image, background: Tuple[int, int, int] = (255, 255, 255)) -> Image.Image:
    """Composite an image with transparency onto a solid background."""
    rgba = image.convert("RGBA")
    canvas = Image.new("RGB", rgba.size, background)
    canvas.paste(rgba, mask=rgba.getchannel("A"))
    return canvas


def _has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA", "PA") or (image.mode == "P" and "transparency" in image.info)


def _quantize_transparent(image: Image.Image) -> Image.Image:
    """Quantize to 255 colors and map fully transparent pixels to the spare index."""
    rgba = image.convert("RGBA")
    frame = rgba.convert("RGB").quantize(colors=GIF_TRANSPARENT_INDEX, method=Image.Quantize.MEDIANCUT)
    palette = frame.getpalette() or []
    frame.putpalette(palette[:768] + [0] * (768 - len(palette[:768])))
    transparent = rgba.getchannel("A").point(lambda value: 255 if value == 0 else 0)
    frame.paste(GIF_TRANSPARENT_INDEX, mask=transparent)
    frame.info["transparency"] = GIF_TRANSPARENT_INDEX
    return frame


def _prepare_frame(image: Image.Image, target: str) -> Image.Image:
    """Convert a decoded frame into a mode the target encoder accepts."""
    if target == "gif":
        if image.mode == "P" and not isinstance(image.info.get("transparency"), bytes):
            return image
        if _has_alpha(image):
            return _quantize_transparent(image)
        return image.convert("RGB").quantize(colors=256, method=Image.Quantize.MEDIANCUT)
    if target in ALPHA_TARGETS and _has_alpha(image):
        return image.convert("RGBA")
    if target == "jpg" and _has_alpha(image):
        return _flatten_alpha(image)
    if target == "tiff" and image.mode in ("1", "L", "RGB", "CMYK"):
        return image
    if target == "png" and image.mode in ("1", "L", "RGB", "I", "I;16"):
        return image
    return image.convert("RGB")


def _apply_gif_transparency(options: Dict[str, Any], frame: Image.Image, target: str, animated: bool = False) -> None:
    transparency = frame.info.get("transparency")
    if target != "gif" or not isinstance(transparency, int):
        return
    # Palette optimization would remap the transparent index.
    options.pop("optimize", None)
    options["transparency"] = transparency
    if animated:
        options["disposal"] = 2


def convert_fast(input_path: Path, output_path: Path, target_format: str) -> Path:
    """
    Re-encode an image with Pillow using the per-format output policy.

    Parameters:
        input_path (Path): Source image in any format Pillow (or pillow-heif) can decode.
        output_path (Path): Destination file; removed again if encoding fails.
        target_format (str): Requested target token; aliases such as ``jpeg`` are accepted.

    Returns:
        Path: The written output path.

    Raises:
        ConverterError: On any decode or encode failure. The caller treats this as a
            signal to fall back to the external tool.
    """
    target = normalize_format(target_format)
    pil_format = PIL_FORMATS.get(target)
    if pil_format is None:
        raise ConverterError(FailureCause.ENCODE_UNSUPPORTED, f"fast path cannot write {target}")
    options = dict(SAVE_OPTIONS.get(target, {}))
    source = None
    try:
        source = Image.open(input_path)
        source.load()
    except Exception as error:  # noqa: BLE001
        if source is not None:
            source.close()
        raise ConverterError(FailureCause.DECODE_UNSUPPORTED, str(error) or type(error).__name__) from error
    try:
        with source:
            frame_count = getattr(source, "n_frames", 1)
            if target in ANIMATED_TARGETS and frame_count > 1:
                decoded = []
                for index in range(frame_count):
                    source.seek(index)
                    decoded.append(source.copy())
                # GIF frames share one transparent index.
                if target == "gif" and any(_has_alpha(frame) for frame in decoded):
                    frames = [_quantize_transparent(frame) for frame in decoded]
                else:
                    frames = [_prepare_frame(frame, target) for frame in decoded]
                options.update(
                    save_all=True,
                    append_images=frames[1:],
                    loop=source.info.get("loop", 0),
                    duration=source.info.get("duration", 100),
                )
                _apply_gif_transparency(options, frames[0], target, animated=True)
                frames[0].save(output_path, format=pil_format, **options)
            else:
                image = _prepare_frame(ImageOps.exif_transpose(source), target)
                _apply_gif_transparency(options, image, target)
                image.save(output_path, format=pil_format, **options)
    except Exception as error:  # noqa: BLE001
        output_path.unlink(missing_ok=True)
        # Pillow raises KeyError when no encoder is registered for the format.
        cause = FailureCause.ENCODE_UNSUPPORTED if isinstance(error, KeyError) else FailureCause.TOOL_FAILURE
        raise ConverterError(cause, str(error) or type(error).__name__) from error
    if not output_path.exists() or output_path.stat().st_size == 0:
        output_path.unlink(missing_ok=True)
        raise ConverterError(FailureCause.EMPTY_OUTPUT, f"{output_path.name} is empty")
    return output_path


def probe_image_size(input_path: Path) -> Tuple[int, int]:
    """Return the (width, height) of an image in pixels."""
    with Image.open(input_path) as image:
        return image.size


def image_to_pdf(input_path: Path, output_path: Path) -> Path:
    """
    Embed an image on a single PDF page sized exactly to the image.

    One pixel maps to one PDF point, so a 100x100 image yields a 100x100 pt page.

    Raises:
        ConverterError: If the dimensions cannot be probed or img2pdf rejects the image.
    """
    try:
        width, height = probe_image_size(input_path)
        layout = img2pdf.get_layout_fun((float(width), float(height)))
        pdf_bytes = img2pdf.convert(str(input_path), layout_fun=layout)
    except Exception as error:  # noqa: BLE001
        raise ConverterError(FailureCause.DOCUMENT, str(error) or type(error).__name__) from error
    if not pdf_bytes:
        raise ConverterError(FailureCause.DOCUMENT, "Failed to render image to PDF")
    output_path.write_bytes(pdf_bytes)
    return output_path


def _fit_box(width: float, height: float, box: float) -> Tuple[float, float]:
    scale = min(box / width, box / height)
    return width * scale, height * scale


def image_to_pdf_fitted(input_path: Path, output_path: Path, box: float = FIT_BOX_POINTS) -> Path:
    """Place an image on a default A4 page, fit into a square box and centered."""
    try:
        pdf = FPDF(orientation="P", unit="pt", format="A4")
        pdf.set_margins(0, 0, 0)
        pdf.set_auto_page_break(auto=False)
        pdf.add_page()
        with Image.open(input_path) as image:
            image.load()
            if _has_alpha(image) or image.mode not in ("RGB", "L"):
                image = _flatten_alpha(image) if _has_alpha(image) else image.convert("RGB")
            draw_width, draw_height = _fit_box(float(image.width), float(image.height), box)
            x = (pdf.w - draw_width) / 2
            y = (pdf.h - draw_height) / 2
            pdf.image(image, x=x, y=y, w=draw_width, h=draw_height)
        pdf.output(str(output_path))
    except Exception as error:  # noqa: BLE001
        output_path.unlink(missing_ok=True)
        raise ConverterError(FailureCause.DOCUMENT, str(error) or type(error).__name__) from error
    return output_path


def rasterize_pdf_page(input_path: Path, output_path: Path, dpi: int = RASTER_DPI) -> Path:
    """Render the first page of a PDF to PNG."""
    with fitz.open(str(input_path)) as document:
        if getattr(document, "is_encrypted", False):
            raise ValueError("PDF is encrypted")
        if document.page_count == 0:
            raise ValueError("PDF has no pages")
        scale = dpi / 72
        page = document.load_page(0)
        pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
        pix.save(str(output_path))
    return output_path


def zip_outputs(outputs: Iterable[Path], zip_path: Path) -> Path:
    """Zip multiple output files into a single, maximally compressed archive."""
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for item in outputs:
            archive.write(item, arcname=item.name)
    return zip_path
