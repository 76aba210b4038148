"""StorageService 测试。"""

from __future__ import annotations

import re

import pytest

from modules.history.errors import PersistenceError
from modules.pipelines.base import GeneratedImage
from modules.services.storage_service import StorageService, extension_for_mime


@pytest.mark.parametrize(
    ("mime_type", "extension"),
    [
        ("image/png", ".png"),
        ("image/jpeg", ".jpg"),
        ("IMAGE/JPG", ".jpg"),
        ("image/pjpeg", ".jpg"),
        ("image/webp", ".webp"),
        ("image/tif", ".tiff"),
        ("application/octet-stream", ".bin"),
        ("", ".bin"),
    ],
)
def test_extension_for_mime(mime_type, extension):
    assert extension_for_mime(mime_type) == extension


def test_save_images_names_share_run_id(tmp_path):
    storage = StorageService()
    images = [GeneratedImage(b"one", "image/png"), GeneratedImage(b"two", "image/jpeg")]

    names = storage.save_images(images, tmp_path / "out")

    assert len(names) == 2
    pattern = re.compile(r"output-([0-9a-f-]{36})-(\d)(\.\w+)")
    first, second = (pattern.fullmatch(name) for name in names)
    assert first and second
    assert first.group(1) == second.group(1)
    assert (first.group(2), first.group(3)) == ("1", ".png")
    assert (second.group(2), second.group(3)) == ("2", ".jpg")
    assert (tmp_path / "out" / names[1]).read_bytes() == b"two"


def test_save_images_skips_empty_payloads(tmp_path):
    names = StorageService().save_images(
        [GeneratedImage(b"", "image/png"), GeneratedImage(b"data", "image/png")], tmp_path
    )

    assert len(names) == 1
    assert names[0].endswith("-1.png")


def test_save_images_without_images_fails(tmp_path):
    with pytest.raises(PersistenceError, match="no image response found"):
        StorageService().save_images([], tmp_path)


def test_copy_file_missing_source(tmp_path):
    with pytest.raises(PersistenceError):
        StorageService().copy_file(tmp_path / "missing.png", tmp_path, "copy.png")
