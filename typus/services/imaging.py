from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError


UPSCALE_FORMATS = {'JPEG', 'PNG', 'WEBP', 'TIFF'}
MIN_SIDE = 50
MAX_SIDE = 10000


@dataclass
class ImageMeta:
    width: int
    height: int
    format: str
    size: int


def _open(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError('invalid_image') from exc
    return ImageOps.exif_transpose(image)


def _encode(image: Image.Image, fmt: str, **params) -> bytes:
    if fmt == 'JPEG' and image.mode not in ('RGB', 'L'):
        image = image.convert('RGB')
    buf = io.BytesIO()
    image.save(buf, format=fmt, **params)
    return buf.getvalue()


def read_metadata(data: bytes) -> ImageMeta:
    image = _open(data)
    with Image.open(io.BytesIO(data)) as raw:
        fmt = raw.format or ''
    return ImageMeta(width=image.width, height=image.height, format=fmt.upper(), size=len(data))


def validate_for_upscaling(data: bytes) -> ImageMeta:
    meta = read_metadata(data)
    if meta.format not in UPSCALE_FORMATS:
        raise ValueError('unsupported_format')
    if meta.width < MIN_SIDE or meta.height < MIN_SIDE:
        raise ValueError('image_too_small')
    if meta.width > MAX_SIDE or meta.height > MAX_SIDE:
        raise ValueError('image_too_large')
    return meta


def upscale_image(data: bytes, target: int = 2000) -> tuple[bytes, int, int]:
    """Upscale so the longer side reaches ``target``.

    Returns PNG bytes with the new dimensions. Images that already reach the
    target are only re-encoded.
    """
    image = _open(data)
    longest = max(image.width, image.height)
    if longest < target:
        scale = target / longest
        size = (max(1, round(image.width * scale)), max(1, round(image.height * scale)))
        image = image.resize(size, Image.Resampling.LANCZOS)
        image = image.filter(ImageFilter.UnsharpMask(radius=1, percent=60, threshold=2))
    return _encode(image, 'PNG', optimize=True), image.width, image.height


def create_thumbnail(data: bytes, size: int = 300) -> bytes:
    image = _open(data)
    thumb = ImageOps.fit(image, (size, size), Image.Resampling.LANCZOS)
    return _encode(thumb, 'JPEG', quality=90)


def fit_within(data: bytes, max_width: int = 800, max_height: int = 600) -> bytes:
    image = _open(data)
    image.thumbnail((max_width, max_height), Image.Resampling.LANCZOS)
    return _encode(image, 'JPEG', quality=90)


def paste_onto(base: bytes, overlay: bytes, x: int, y: int, width: int, height: int) -> tuple[bytes, int, int]:
    """Paste ``overlay``, resized to ``width`` x ``height``, with its top-left corner at (x, y).

    Parts that fall outside the base are clipped. Returns PNG bytes of the base size.
    """
    canvas = _open(base).convert('RGBA')
    if x >= canvas.width or y >= canvas.height or x + width <= 0 or y + height <= 0:
        raise ValueError('image_outside_canvas')
    layer = _open(overlay).convert('RGBA').resize((width, height), Image.Resampling.LANCZOS)
    canvas.paste(layer, (x, y), layer)
    return _encode(canvas.convert('RGB'), 'PNG', optimize=True), canvas.width, canvas.height
