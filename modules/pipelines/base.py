"""Generator capability shared by every image backend."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from modules.history.models import TokenUsage


@dataclass(slots=True)
class GenerateParams:
    """Request passed to an image generator."""

    model: str
    prompt: str
    image_paths: List[str] = field(default_factory=list)
    aspect_ratio: str = ""
    image_size: str = ""


@dataclass(slots=True)
class GeneratedImage:
    """Encoded image bytes returned by a generator."""

    data: bytes
    mime_type: str = "image/png"


@dataclass(slots=True)
class GenerateResult:
    """Response payload produced by a generator."""

    images: List[GeneratedImage] = field(default_factory=list)
    text: str = ""
    token_usage: TokenUsage = field(default_factory=TokenUsage)


class ImageGenerator(Protocol):
    """Anything that can turn a prompt plus input images into images.

    Implementations raise on failure; cancellation is signalled through the
    optional event and surfaces as an exception as well.
    """

    def generate(
        self, params: GenerateParams, cancel_event: Optional[threading.Event] = None
    ) -> GenerateResult:
        ...
