"""File storage helpers."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import List, Sequence

from modules.history.errors import PersistenceError
from modules.history.ids import new_id
from modules.pipelines.base import GeneratedImage

_MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/bmp": ".bmp",
    "image/avif": ".avif",
    "image/heic": ".heic",
    "image/heif": ".heif",
    "image/tiff": ".tiff",
    "image/tif": ".tiff",
}


def extension_for_mime(mime_type: str) -> str:
    """Map an image MIME type to the file extension used on disk."""
    normalized = (mime_type or "").strip().lower()
    if normalized in _MIME_EXTENSIONS:
        return _MIME_EXTENSIONS[normalized]
    if "jpeg" in normalized:
        return ".jpg"
    return ".bin"


class StorageService:
    """Handle saving generated assets and snapshot copies."""

    def save_images(self, images: Sequence[GeneratedImage], output_dir: Path) -> List[str]:
        """Write images as ``output-<runid>-<n>.<ext>`` and return the file names."""
        payloads = [image for image in images if image.data]
        if not payloads:
            raise PersistenceError("no image response found")

        output_dir = Path(output_dir)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"failed to create output directory: {exc}") from exc

        run_id = new_id()
        saved: List[str] = []
        for index, image in enumerate(payloads, start=1):
            name = f"output-{run_id}-{index}{extension_for_mime(image.mime_type)}"
            target = output_dir / name
            try:
                target.write_bytes(image.data)
            except OSError as exc:
                raise PersistenceError(f"failed to save image ({target}): {exc}") from exc
            saved.append(name)
        return saved

    def copy_file(self, source: Path, target_dir: Path, name: str) -> Path:
        """Copy ``source`` into ``target_dir`` under ``name``."""
        target = Path(target_dir) / name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)
        except OSError as exc:
            raise PersistenceError(f"failed to copy {source}: {exc}") from exc
        return target
