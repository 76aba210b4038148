"""Shared fixtures and fakes for the picturebook tests."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from modules.history.models import TokenUsage
from modules.pipelines.base import GeneratedImage, GenerateParams, GenerateResult

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24


class DummyGenerator:
    """In-memory generator that records every call and returns canned images."""

    def __init__(
        self,
        images: Optional[List[GeneratedImage]] = None,
        error: Optional[BaseException] = None,
        text: str = "",
        token_usage: Optional[TokenUsage] = None,
        on_call: Optional[Callable[[GenerateParams, Optional[threading.Event]], None]] = None,
    ) -> None:
        self.images = images if images is not None else [GeneratedImage(PNG_BYTES, "image/png")]
        self.error = error
        self.text = text
        self.token_usage = token_usage or TokenUsage(prompt=10, candidates=20, total=30)
        self.on_call = on_call
        self.calls: List[GenerateParams] = []

    def generate(
        self, params: GenerateParams, cancel_event: Optional[threading.Event] = None
    ) -> GenerateResult:
        self.calls.append(params)
        if self.on_call is not None:
            self.on_call(params, cancel_event)
        if self.error is not None:
            raise self.error
        return GenerateResult(images=list(self.images), text=self.text, token_usage=self.token_usage)


@pytest.fixture
def input_image(tmp_path: Path) -> Path:
    """A small PNG-looking reference image on disk."""
    path = tmp_path / "refs" / "reference.png"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(PNG_BYTES)
    return path


@pytest.fixture
def history_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "history"
    directory.mkdir()
    return directory
