"""Gemini image generation backend."""

from __future__ import annotations

import mimetypes
import threading
from pathlib import Path
from typing import Any, List, Optional

from google import genai
from google.genai import types
from PIL import Image, UnidentifiedImageError

from modules.history.errors import GenerationCancelled
from modules.history.models import TokenUsage
from modules.pipelines.base import GeneratedImage, GenerateParams, GenerateResult


def image_mime_type(path: Path, data: bytes) -> str:
    """Guess the MIME type from the extension, falling back to the file header."""
    guessed, _ = mimetypes.guess_type(path.name)
    if guessed and guessed.startswith("image/"):
        return guessed
    try:
        with Image.open(path) as image:
            detected = Image.MIME.get(image.format or "")
    except (UnidentifiedImageError, OSError):
        detected = None
    if not detected:
        raise ValueError(f"could not determine image MIME type ({path})")
    return detected


def _token_usage(response: Any) -> TokenUsage:
    usage = getattr(response, "usage_metadata", None)
    if usage is None:
        return TokenUsage()
    return TokenUsage(
        prompt=int(getattr(usage, "prompt_token_count", 0) or 0),
        candidates=int(getattr(usage, "candidates_token_count", 0) or 0),
        total=int(getattr(usage, "total_token_count", 0) or 0),
        cached=int(getattr(usage, "cached_content_token_count", 0) or 0),
        thoughts=int(getattr(usage, "thoughts_token_count", 0) or 0),
    )


class GeminiImageGenerator:
    """Calls the Gemini API with a prompt plus inline input images."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Any = None,
        base_url: Optional[str] = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ValueError("GEMINI_API_KEY is not set")
            client_kwargs: dict[str, Any] = {"api_key": api_key}
            if base_url:
                client_kwargs["http_options"] = types.HttpOptions(base_url=base_url)
            client = genai.Client(**client_kwargs)
        self._client = client

    def _image_part(self, image_path: str) -> types.Part:
        path = Path(image_path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ValueError(f"failed to read image ({path}): {exc}") from exc
        return types.Part.from_bytes(data=data, mime_type=image_mime_type(path, data))

    def _build_config(self, params: GenerateParams) -> types.GenerateContentConfig:
        config_kwargs: dict[str, Any] = {"response_modalities": ["IMAGE"]}
        if params.aspect_ratio or params.image_size:
            image_kwargs: dict[str, Any] = {}
            if params.aspect_ratio:
                image_kwargs["aspect_ratio"] = params.aspect_ratio
            if params.image_size:
                image_kwargs["image_size"] = params.image_size.upper()
            config_kwargs["image_config"] = types.ImageConfig(**image_kwargs)
        return types.GenerateContentConfig(**config_kwargs)

    def generate(
        self, params: GenerateParams, cancel_event: Optional[threading.Event] = None
    ) -> GenerateResult:
        """Generate images; API errors propagate to the caller."""
        contents: List[Any] = [params.prompt]
        contents.extend(self._image_part(path) for path in params.image_paths)

        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelled("generation cancelled")

        response = self._client.models.generate_content(
            model=params.model,
            contents=contents,
            config=self._build_config(params),
        )

        images: List[GeneratedImage] = []
        texts: List[str] = []
        for candidate in getattr(response, "candidates", None) or []:
            content = getattr(candidate, "content", None)
            for part in getattr(content, "parts", None) or []:
                inline = getattr(part, "inline_data", None)
                if inline is not None and getattr(inline, "data", None):
                    images.append(
                        GeneratedImage(data=inline.data, mime_type=inline.mime_type or "image/png")
                    )
                elif getattr(part, "text", None):
                    texts.append(part.text.strip())

        return GenerateResult(
            images=images,
            text="\n".join(text for text in texts if text),
            token_usage=_token_usage(response),
        )
