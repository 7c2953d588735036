"""Product image files stored on local disk and served under /uploads."""

import os
import secrets
import time
from pathlib import Path
from typing import Iterable, List

from fastapi import UploadFile

import settings
from errors import ValidationError
from log import get_logger

logger = get_logger(__name__)

ALLOWED_TYPES = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}
URL_PREFIX = "/uploads/products/"


class ImageStore:
    def __init__(self, root: str = settings.UPLOAD_DIR, max_bytes: int = settings.MAX_UPLOAD_BYTES):
        self.root = Path(root)
        self.products_dir = self.root / "products"
        self.max_bytes = max_bytes

    def ensure_dirs(self) -> None:
        self.products_dir.mkdir(parents=True, exist_ok=True)

    def save_all(self, uploads: Iterable[UploadFile]) -> List[str]:
        """Validate and write every upload; on any failure nothing is kept."""
        uploads = [u for u in uploads or [] if u is not None and u.filename]
        if len(uploads) > settings.MAX_UPLOAD_FILES:
            raise ValidationError(f"At most {settings.MAX_UPLOAD_FILES} images can be uploaded at once")
        saved: List[str] = []
        try:
            for upload in uploads:
                saved.append(self.save(upload))
        except Exception:
            self.delete(saved)
            raise
        return saved

    def save(self, upload: UploadFile) -> str:
        ext = ALLOWED_TYPES.get((upload.content_type or "").lower())
        if not ext:
            raise ValidationError("Invalid file type. Only JPEG, PNG, GIF, and WebP are allowed.")
        content = upload.file.read(self.max_bytes + 1)
        if len(content) > self.max_bytes:
            raise ValidationError(f"Image {upload.filename} is larger than {self.max_bytes // (1024 * 1024)}MB")

        self.ensure_dirs()
        name = f"product-{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{ext}"
        (self.products_dir / name).write_bytes(content)
        return URL_PREFIX + name

    def delete(self, paths: Iterable[str]) -> None:
        """Remove locally stored images; external URLs are ignored."""
        for path in paths or []:
            if not path or not path.startswith(URL_PREFIX):
                continue
            target = self.products_dir / os.path.basename(path)
            try:
                target.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("image_delete_failed", path=path, error=str(e))
