import hashlib
import io
import logging
import pathlib
from typing import Protocol

from PIL import Image, UnidentifiedImageError

from shipment_intake.config import settings
from shipment_intake.exceptions import InvalidDocument

logger = logging.getLogger(__name__)

_CONTENT_TYPES = {
    "PNG": ("image/png", ".png"),
    "JPEG": ("image/jpeg", ".jpg"),
    "TIFF": ("image/tiff", ".tif"),
    "WEBP": ("image/webp", ".webp"),
    "BMP": ("image/bmp", ".bmp"),
    "GIF": ("image/gif", ".gif"),
}


class BlobStore(Protocol):
    def store(self, data: bytes, document_hash: str, extension: str) -> str: ...


def document_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def inspect_image(data: bytes, max_bytes: int | None = None) -> tuple[str, str]:
    """Check the upload is a readable image; return (content_type, extension)."""
    max_bytes = max_bytes or settings.MAX_UPLOAD_BYTES
    if not data:
        raise InvalidDocument("Uploaded file is empty")
    if len(data) > max_bytes:
        raise InvalidDocument(f"Uploaded file exceeds {max_bytes} bytes", {"size": len(data)})
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise InvalidDocument(f"Uploaded file is not a readable image: {e}") from e
    if fmt not in _CONTENT_TYPES:
        raise InvalidDocument(f"Unsupported image format {fmt}")
    return _CONTENT_TYPES[fmt]


class LocalBlobStore:
    """Stores document images under UPLOAD_DIR, named by content hash.

    Same bytes map to the same file, so re-uploads never duplicate storage.
    """

    def __init__(self, root: str | None = None, url_prefix: str = "/uploads"):
        self.root = pathlib.Path(root or settings.UPLOAD_DIR)
        self.url_prefix = url_prefix.rstrip("/")

    def store(self, data: bytes, document_hash: str, extension: str) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        name = f"{document_hash}{extension}"
        dest = self.root / name
        if not dest.exists():
            tmp = dest.with_suffix(dest.suffix + ".part")
            tmp.write_bytes(data)
            tmp.replace(dest)
            logger.info("Stored document %s (%d bytes)", name, len(data))
        return f"{self.url_prefix}/{name}"
