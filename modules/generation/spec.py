"""Request and result types for the generation workflows."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from modules.history.models import SOURCE_GENERATE, TokenUsage


@dataclass(slots=True)
class GenerationSpec:
    """Everything needed to run a generation and record it in history."""

    model: str
    prompt: str
    image_paths: List[str] = field(default_factory=list)
    aspect_ratio: str = ""
    image_size: str = ""
    # 写入 meta.yaml 的输入图片文件名
    input_image_names: List[str] = field(default_factory=list)
    source_entry_id: str = ""
    context_path: Optional[str] = None
    character_path: Optional[str] = None


@dataclass(slots=True)
class EditSpec:
    """An edit of one existing output image.

    The caller resolves which artifact is edited; ``source_image_path`` is the
    file on disk and the ``source_*`` fields describe it for the chain.
    """

    model: str
    prompt: str
    source_image_path: str
    entry_id: str
    source_output: str
    source_type: str = SOURCE_GENERATE
    source_edit_id: str = ""
    aspect_ratio: str = ""
    image_size: str = ""


@dataclass(slots=True)
class RunResult:
    entry_id: str
    output_images: List[str]
    text: str = ""
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    warnings: List[str] = field(default_factory=list)


@dataclass(slots=True)
class EditResult:
    edit_id: str
    output_images: List[str]
    text: str = ""
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    warnings: List[str] = field(default_factory=list)
