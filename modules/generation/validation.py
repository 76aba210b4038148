"""Pre-flight checks run before any directory is created or API call made."""

from __future__ import annotations

import os
import re
from typing import Iterable

from modules.generation.spec import EditSpec, GenerationSpec
from modules.history.errors import ValidationError
from modules.history.ids import is_valid_id
from modules.history.models import SOURCE_EDIT, SOURCE_GENERATE

VALID_IMAGE_SIZES = ("1K", "2K", "4K")

_ASPECT_RATIO_PATTERN = re.compile(r"\d+:\d+")


def validate_aspect_ratio(aspect_ratio: str) -> None:
    """Accept "" (provider default) or an ``N:N`` ratio."""
    if not aspect_ratio:
        return
    if not _ASPECT_RATIO_PATTERN.fullmatch(aspect_ratio):
        raise ValidationError(
            f"invalid aspect ratio {aspect_ratio!r}: must be in N:N format (e.g., 1:1, 16:9)"
        )


def validate_image_size(image_size: str) -> None:
    """Accept "" (provider default) or one of 1K, 2K, 4K."""
    if not image_size:
        return
    if image_size not in VALID_IMAGE_SIZES:
        raise ValidationError(f"invalid image size {image_size!r}: must be 1K, 2K, or 4K")


def validate_input_images(image_paths: Iterable[str]) -> None:
    """Fail with every missing path listed, not only the first."""
    missing = [str(path) for path in image_paths if not os.path.exists(path)]
    if len(missing) == 1:
        raise ValidationError(f"input image not found: {missing[0]}")
    if missing:
        raise ValidationError(f"input images not found: {', '.join(missing)}")


def validate_unique_names(image_paths: Iterable[str]) -> None:
    """Input copies are stored by base name, so two inputs may not share one."""
    seen: set[str] = set()
    duplicates: list[str] = []
    for path in image_paths:
        name = os.path.basename(str(path))
        if name in seen and name not in duplicates:
            duplicates.append(name)
        seen.add(name)
    if duplicates:
        raise ValidationError(f"duplicate input image names: {', '.join(duplicates)}")


def validate_prompt(prompt: str) -> None:
    if not (prompt or "").strip():
        raise ValidationError("prompt cannot be empty")


def validate_spec(spec: GenerationSpec) -> None:
    validate_prompt(spec.prompt)
    validate_aspect_ratio(spec.aspect_ratio)
    validate_image_size(spec.image_size)
    if not spec.image_paths:
        raise ValidationError("no input images specified")
    validate_input_images(spec.image_paths)
    validate_unique_names(spec.input_image_names or spec.image_paths)
    if spec.source_entry_id and not is_valid_id(spec.source_entry_id):
        raise ValidationError(f"invalid source entry id {spec.source_entry_id!r}")


def validate_edit_spec(spec: EditSpec) -> None:
    validate_prompt(spec.prompt)
    validate_aspect_ratio(spec.aspect_ratio)
    validate_image_size(spec.image_size)
    if not is_valid_id(spec.entry_id):
        raise ValidationError(f"invalid entry id {spec.entry_id!r}")

    if spec.source_type == SOURCE_GENERATE:
        if spec.source_edit_id:
            raise ValidationError("source edit id must be empty when editing a generation output")
    elif spec.source_type == SOURCE_EDIT:
        if not is_valid_id(spec.source_edit_id):
            raise ValidationError(f"invalid source edit id {spec.source_edit_id!r}")
    else:
        raise ValidationError(
            f"invalid source type {spec.source_type!r}: must be {SOURCE_GENERATE!r} or {SOURCE_EDIT!r}"
        )

    if not spec.source_output:
        raise ValidationError("source output image name is required")
    if not spec.source_image_path or not os.path.isfile(spec.source_image_path):
        raise ValidationError(f"source image not found: {spec.source_image_path}")
