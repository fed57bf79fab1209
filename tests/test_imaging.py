from __future__ import annotations

import io

import pytest
from PIL import Image

from typus.services import imaging

from conftest import png_bytes


def test_read_metadata():
    meta = imaging.read_metadata(png_bytes(64, 48))

    assert (meta.width, meta.height, meta.format) == (64, 48, 'PNG')
    assert meta.size > 0


def test_invalid_bytes_are_rejected():
    with pytest.raises(ValueError, match='invalid_image'):
        imaging.read_metadata(b'not an image')


def test_validate_for_upscaling_limits():
    assert imaging.validate_for_upscaling(png_bytes(100, 100)).width == 100
    with pytest.raises(ValueError, match='image_too_small'):
        imaging.validate_for_upscaling(png_bytes(40, 100))

    buf = io.BytesIO()
    Image.new('RGB', (60, 60)).save(buf, format='GIF')
    with pytest.raises(ValueError, match='unsupported_format'):
        imaging.validate_for_upscaling(buf.getvalue())


def test_upscale_reaches_target_on_longer_side():
    data, width, height = imaging.upscale_image(png_bytes(200, 100), target=800)

    assert (width, height) == (800, 400)
    assert imaging.read_metadata(data).format == 'PNG'


def test_upscale_keeps_large_images():
    _, width, height = imaging.upscale_image(png_bytes(300, 200), target=250)
    assert (width, height) == (300, 200)


def test_thumbnail_is_square_jpeg():
    meta = imaging.read_metadata(imaging.create_thumbnail(png_bytes(640, 320), size=120))
    assert (meta.width, meta.height, meta.format) == (120, 120, 'JPEG')


def test_fit_within_preserves_aspect():
    meta = imaging.read_metadata(imaging.fit_within(png_bytes(1600, 800), 800, 600))
    assert (meta.width, meta.height) == (800, 400)


def test_paste_onto_resizes_and_clips():
    data, width, height = imaging.paste_onto(png_bytes(100, 50, 'blue'), png_bytes(10, 10, 'red'), 80, 10, 40, 20)

    assert (width, height) == (100, 50)
    composite = Image.open(io.BytesIO(data))
    assert composite.format == 'PNG'
    assert composite.getpixel((90, 20)) == (255, 0, 0)
    assert composite.getpixel((70, 20)) == (0, 0, 255)
    assert composite.getpixel((90, 40)) == (0, 0, 255)


def test_paste_onto_rejects_overlay_outside_base():
    with pytest.raises(ValueError, match='image_outside_canvas'):
        imaging.paste_onto(png_bytes(100, 50), png_bytes(10, 10), -20, 0, 20, 20)
