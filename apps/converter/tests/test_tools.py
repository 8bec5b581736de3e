import zipfile
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest
from PIL import Image
from pypdf import PdfReader, PdfWriter

from imgconv.errors import ConverterError, FailureCause
from imgconv.tools import (
    convert_fast,
    image_to_pdf,
    image_to_pdf_fitted,
    rasterize_pdf_page,
    zip_outputs,
)


def _make_pdf(path: Path, pages: int) -> None:
    """Create a blank PDF with the given number of pages."""
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=300, height=300)
    with path.open("wb") as handle:
        writer.write(handle)


def _make_image(path: Path, mode: str = "RGB", size=(100, 100)) -> Path:
    color = (120, 140, 180, 128) if mode == "RGBA" else (120, 140, 180)
    Image.new(mode, size, color=color).save(path)
    return path


def test_convert_fast_png_to_jpg() -> None:
    """Re-encode a PNG as JPEG, keeping its dimensions."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = _make_image(temp_path / "sample.png")

        output = convert_fast(source, temp_path / "sample.jpg", "jpeg")
        with Image.open(output) as image:
            assert image.format == "JPEG"
            assert image.size == (100, 100)


def test_convert_fast_flattens_alpha_for_jpg() -> None:
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = _make_image(temp_path / "alpha.png", mode="RGBA")

        output = convert_fast(source, temp_path / "alpha.jpg", "jpg")
        with Image.open(output) as image:
            assert image.mode == "RGB"


def test_convert_fast_keeps_alpha_for_webp() -> None:
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = _make_image(temp_path / "alpha.png", mode="RGBA")

        output = convert_fast(source, temp_path / "alpha.webp", "webp")
        with Image.open(output) as image:
            assert image.format == "WEBP"
            assert image.mode == "RGBA"


def test_convert_fast_writes_gif() -> None:
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = _make_image(temp_path / "sample.png")

        output = convert_fast(source, temp_path / "sample.gif", "gif")
        with Image.open(output) as image:
            assert image.format == "GIF"


def test_convert_fast_keeps_gif_transparency() -> None:
    """Fully transparent pixels stay transparent in a GIF."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "half.png"
        image = Image.new("RGBA", (16, 10), (0, 0, 0, 0))
        image.paste((255, 0, 0, 255), (0, 0, 8, 10))
        image.save(source)

        output = convert_fast(source, temp_path / "half.gif", "gif")
        with Image.open(output) as result:
            rgba = result.convert("RGBA")
            assert rgba.getpixel((12, 5))[3] == 0
            assert rgba.getpixel((2, 5))[3] == 255
            assert rgba.getpixel((2, 5))[:3] == (255, 0, 0)


def test_convert_fast_keeps_animated_gif_transparency() -> None:
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        frames = []
        for color in ((255, 0, 0, 255), (0, 0, 255, 255)):
            frame = Image.new("RGBA", (16, 10), (0, 0, 0, 0))
            frame.paste(color, (0, 0, 8, 10))
            frames.append(frame)
        source = temp_path / "anim.webp"
        frames[0].save(source, save_all=True, append_images=frames[1:], duration=100, loop=0, lossless=True)

        output = convert_fast(source, temp_path / "anim.gif", "gif")
        with Image.open(output) as result:
            assert result.n_frames == 2
            assert result.convert("RGBA").getpixel((12, 5))[3] == 0


def test_convert_fast_keeps_animation() -> None:
    """Animated GIF to WEBP keeps every frame."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        frames = [Image.new("RGB", (40, 40), color=color) for color in ("red", "green", "blue")]
        source = temp_path / "anim.gif"
        frames[0].save(source, save_all=True, append_images=frames[1:], duration=100, loop=0)

        output = convert_fast(source, temp_path / "anim.webp", "webp")
        with Image.open(output) as image:
            assert image.n_frames == 3


def test_convert_fast_rejects_corrupt_input() -> None:
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "broken.png"
        source.write_bytes(b"definitely not a png")

        with pytest.raises(ConverterError) as excinfo:
            convert_fast(source, temp_path / "broken.jpg", "jpg")
        assert excinfo.value.cause is FailureCause.DECODE_UNSUPPORTED
        assert not (temp_path / "broken.jpg").exists()


def test_convert_fast_rejects_unknown_target() -> None:
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = _make_image(temp_path / "sample.png")

        with pytest.raises(ConverterError) as excinfo:
            convert_fast(source, temp_path / "sample.ico", "ico")
        assert excinfo.value.cause is FailureCause.ENCODE_UNSUPPORTED


def test_image_to_pdf_page_matches_image() -> None:
    """One image pixel maps to one PDF point."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = _make_image(temp_path / "sample.png", size=(200, 120))

        output = image_to_pdf(source, temp_path / "sample.pdf")
        reader = PdfReader(str(output))
        assert len(reader.pages) == 1
        box = reader.pages[0].mediabox
        assert float(box.width) == pytest.approx(200, abs=0.5)
        assert float(box.height) == pytest.approx(120, abs=0.5)


def test_image_to_pdf_rejects_corrupt_input() -> None:
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "broken.png"
        source.write_bytes(b"\x89PNG broken")

        with pytest.raises(ConverterError) as excinfo:
            image_to_pdf(source, temp_path / "broken.pdf")
        assert excinfo.value.cause is FailureCause.DOCUMENT


def test_image_to_pdf_fitted_uses_a4() -> None:
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = _make_image(temp_path / "wide.png", mode="RGBA", size=(800, 200))

        output = image_to_pdf_fitted(source, temp_path / "wide.pdf")
        reader = PdfReader(str(output))
        box = reader.pages[0].mediabox
        assert float(box.width) == pytest.approx(595.28, abs=1)
        assert float(box.height) == pytest.approx(841.89, abs=1)


def test_rasterize_pdf_page() -> None:
    """The first page is rendered at 150 dpi."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = temp_path / "source.pdf"
        _make_pdf(source, 2)

        output = rasterize_pdf_page(source, temp_path / "page.png")
        with Image.open(output) as image:
            assert image.format == "PNG"
            width, height = image.size
            assert abs(width - 625) <= 1 and abs(height - 625) <= 1


def test_zip_outputs() -> None:
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        first = _make_image(temp_path / "first.png")
        second = _make_image(temp_path / "second.png")

        zipped = zip_outputs([first, second], temp_path / "bundle.zip")
        with zipfile.ZipFile(zipped) as archive:
            assert sorted(archive.namelist()) == ["first.png", "second.png"]
