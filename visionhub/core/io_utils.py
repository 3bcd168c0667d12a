"""IO utilities shared across the codebase: image decoding and payload metadata."""

import hashlib
from dataclasses import dataclass
from io import BytesIO

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel

from visionhub.core.errors import InvalidInput

_MIME_BY_FORMAT = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}


class ImageMetadata(BaseModel):
    """What is retained about an analysed image; the pixels themselves are never stored."""

    sha256: str
    format: str | None = None
    mime_type: str = "application/octet-stream"
    width: int = 0
    height: int = 0
    size_bytes: int = 0
    file_name: str | None = None


@dataclass(frozen=True)
class DecodedImage:
    data: bytes
    image: Image.Image
    metadata: ImageMetadata

    def copy_image(self) -> Image.Image:
        """Independent RGB copy, safe to hand to a runtime on another thread."""
        return self.image.copy()


def image_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def decode_image(data: bytes, *, file_name: str | None = None) -> DecodedImage:
    """
    Validate and decode raw image bytes into an RGB Pillow image.
    Raises InvalidInput for empty or undecodable payloads.
    """
    if not data:
        raise InvalidInput("Image payload is empty")
    try:
        with Image.open(BytesIO(data)) as candidate:
            candidate.verify()
        with Image.open(BytesIO(data)) as img:
            fmt = img.format
            rgb = img.convert("RGB") if img.mode != "RGB" else img.copy()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise InvalidInput(f"Image payload could not be decoded: {e}") from e
    metadata = ImageMetadata(
        sha256=image_sha256(data),
        format=fmt,
        mime_type=_MIME_BY_FORMAT.get(fmt or "", "application/octet-stream"),
        width=rgb.width,
        height=rgb.height,
        size_bytes=len(data),
        file_name=file_name,
    )
    return DecodedImage(data=data, image=rgb, metadata=metadata)
