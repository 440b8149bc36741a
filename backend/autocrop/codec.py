# backend/autocrop/codec.py
import io
from typing import Optional, Tuple

from PIL import Image, ImageChops, UnidentifiedImageError

from .bounds import Bounds, PixelBuffer
from .errors import DecodeError, EncodeError

LOSSLESS_FORMAT = "PNG"
JPEG_QUALITY = 95

FORMAT_EXTENSIONS = {
    "JPEG": ".jpg",
    "PNG": ".png",
    "GIF": ".gif",
    "WEBP": ".webp",
}

# MPO is what Pillow calls many camera/phone JPEGs (multi-picture JPEG)
FORMAT_ALIASES = {
    "JPG": "JPEG",
    "MPO": "JPEG",
}

_ALPHA_MODES = ("RGBA", "LA", "PA")


def has_alpha(image: Image.Image) -> bool:
    return image.mode in _ALPHA_MODES or "transparency" in image.info


def open_image(data: bytes, max_pixels: Optional[int] = None) -> Image.Image:
    """Decode bytes into a fully loaded Pillow image.

    The pixel count is checked from the header before any pixel data is read,
    so an oversized image is rejected without allocating its raw buffer.
    """
    try:
        image = Image.open(io.BytesIO(data))
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise DecodeError(f"cannot decode image: {e}") from e

    width, height = image.size
    if max_pixels and width * height > max_pixels:
        raise DecodeError(f"image too large: {width}x{height} exceeds {max_pixels} pixels")

    try:
        image.load()
    except (Image.DecompressionBombError, OSError, ValueError, SyntaxError) as e:
        raise DecodeError(f"cannot decode image: {e}") from e
    return image


def flatten(image: Image.Image, background: Tuple[int, int, int]) -> Image.Image:
    """RGB view of the image with any transparency composited over background."""
    if has_alpha(image):
        rgba = image.convert("RGBA")
        base = Image.new("RGBA", rgba.size, tuple(background) + (255,))
        return Image.alpha_composite(base, rgba).convert("RGB")
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def trim_bounds(image: Image.Image, background: Tuple[int, int, int] = (255, 255, 255), tolerance: int = 20) -> Bounds:
    """Rectangle left after stripping border rows/columns that match background.

    A pixel counts as content when any channel differs from the background by
    more than tolerance. When no pixel is content the whole image is returned,
    i.e. trim makes no decision and the caller sees an unchanged size.
    """
    rgb = flatten(image, background)
    bg = Image.new("RGB", rgb.size, tuple(background))
    diff = ImageChops.difference(rgb, bg)
    # (d + d) / 2 - tolerance, clipped at 0: only differences above tolerance survive
    diff = ImageChops.add(diff, diff, 2.0, -tolerance)
    bbox = diff.getbbox()
    if bbox is None:
        return Bounds(left=0, top=0, width=image.width, height=image.height)
    left, top, right, bottom = bbox
    return Bounds(left=left, top=top, width=right - left, height=bottom - top)


def decode_raw(image: Image.Image) -> PixelBuffer:
    """Raw interleaved pixels, RGBA when the source carries alpha, RGB otherwise."""
    alpha = has_alpha(image)
    raw = image.convert("RGBA" if alpha else "RGB")
    return PixelBuffer(
        width=raw.width,
        height=raw.height,
        channels=4 if alpha else 3,
        data=raw.tobytes(),
    )


def extract(image: Image.Image, bounds: Bounds) -> Image.Image:
    if bounds.left < 0 or bounds.top < 0 or bounds.right > image.width or bounds.bottom > image.height:
        raise ValueError(f"bounds {bounds.to_dict()} outside {image.width}x{image.height} image")
    return image.crop(bounds.box())


def normalize_format(fmt: Optional[str]) -> str:
    fmt = (fmt or LOSSLESS_FORMAT).upper()
    fmt = FORMAT_ALIASES.get(fmt, fmt)
    if fmt not in FORMAT_EXTENSIONS:
        return LOSSLESS_FORMAT
    return fmt


def extension_for(fmt: Optional[str]) -> str:
    return FORMAT_EXTENSIONS[normalize_format(fmt)]


def format_for_extension(ext: str) -> Optional[str]:
    """Format a file extension stands for, None when it is not one we write."""
    ext = ext.lower()
    if ext == ".jpeg":
        return "JPEG"
    for fmt, known in FORMAT_EXTENSIONS.items():
        if known == ext:
            return fmt
    return None


def encode(image: Image.Image, fmt: Optional[str] = None) -> bytes:
    fmt = normalize_format(fmt)
    params = {}
    out = image
    if fmt == "JPEG":
        if out.mode not in ("RGB", "L", "CMYK"):
            out = flatten(out, (255, 255, 255))
        params["quality"] = JPEG_QUALITY
    elif fmt == "WEBP":
        if out.mode not in ("RGB", "RGBA"):
            out = out.convert("RGBA" if has_alpha(out) else "RGB")
    elif fmt == "PNG" and out.mode == "CMYK":
        out = out.convert("RGB")

    buf = io.BytesIO()
    try:
        out.save(buf, format=fmt, **params)
    except (OSError, ValueError, KeyError) as e:
        raise EncodeError(f"cannot encode {fmt}: {e}") from e
    return buf.getvalue()
