"""Image I/O, crops and encodings."""

from __future__ import annotations

import base64
import io
from pathlib import Path

from PIL import Image

from .types import CropRegion, Size

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def ensure_dir(p: Path) -> None:
    """Create `p` if it doesn't exist."""
    p.mkdir(parents=True, exist_ok=True)


def read_image(path: Path) -> Image.Image:
    """Read an image from disk and convert it to RGB."""
    return Image.open(path).convert("RGB")


def image_size(img: Image.Image) -> Size:
    w, h = img.size
    return Size(width=w, height=h)


def img_to_png_bytes(img: Image.Image) -> bytes:
    """Encode an image as PNG bytes (lossless, used for everything sent to the oracle)."""
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def img_to_jpeg_bytes(img: Image.Image, quality: int = 90) -> bytes:
    """Encode an image as JPEG bytes."""
    buf = io.BytesIO()
    img.convert("RGB").save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def bytes_to_data_url(data: bytes) -> str:
    """Wrap encoded image bytes into a base64 data URL, sniffing PNG vs JPEG."""
    mime = "image/png" if data.startswith(_PNG_SIGNATURE) else "image/jpeg"
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def crop_region(img: Image.Image, region: CropRegion) -> Image.Image:
    """Cut `region` out of `img` without resampling.

    Raises:
        ValueError: If the region is empty or extends past the image.
    """
    w, h = img.size
    if region.width <= 0 or region.height <= 0:
        raise ValueError(f"Empty crop region: {region}")
    if region.x < 0 or region.y < 0 or region.x + region.width > w or region.y + region.height > h:
        raise ValueError(f"Crop region {region} exceeds image bounds {w}x{h}")
    return img.crop(region.as_pil_box())
