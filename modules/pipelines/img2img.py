"""Local Stable Diffusion XL image-to-image backend."""

from __future__ import annotations

import io
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import torch
from diffusers import StableDiffusionXLImg2ImgPipeline
from PIL import Image

from config.settings import AppConfig
from modules.history.errors import GenerationCancelled
from modules.history.models import TokenUsage
from modules.pipelines.base import GeneratedImage, GenerateParams, GenerateResult

logger = logging.getLogger(__name__)

# 长边像素数，对应 1K / 2K / 4K
_LONG_EDGE = {"1K": 1024, "2K": 2048, "4K": 4096}
_DIMENSION_STEP = 64


def _round_to_step(value: float) -> int:
    return max(_DIMENSION_STEP, int(round(value / _DIMENSION_STEP)) * _DIMENSION_STEP)


def target_dimensions(
    aspect_ratio: str, image_size: str, fallback: Tuple[int, int]
) -> Tuple[int, int]:
    """Return (width, height) for the requested ratio and size class.

    Without an aspect ratio the init image's own proportions are kept.
    """
    long_edge = _LONG_EDGE.get((image_size or "").upper(), _LONG_EDGE["1K"])
    ratio_w, ratio_h = fallback
    if aspect_ratio:
        left, right = aspect_ratio.split(":", 1)
        if int(left) > 0 and int(right) > 0:
            ratio_w, ratio_h = int(left), int(right)

    if ratio_w >= ratio_h:
        return _round_to_step(long_edge), _round_to_step(long_edge * ratio_h / ratio_w)
    return _round_to_step(long_edge * ratio_w / ratio_h), _round_to_step(long_edge)


class Image2ImageGenerator:
    """Runs an SDXL img2img pipeline with the first input image as the init image."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self._pipeline: Optional[StableDiffusionXLImg2ImgPipeline] = None
        self._device: Optional[str] = None

    def _preferred_device(self) -> str:
        return "cuda" if torch.cuda.is_available() else "cpu"

    def _preferred_dtype(self, device: str) -> torch.dtype:
        if self.config.use_fp16 and device == "cuda":
            return torch.float16
        return torch.float32

    def _resolve_model_id(self, requested: str) -> str:
        # Gemini 模型名对本地管线没有意义
        if requested and not requested.startswith("gemini"):
            return requested
        return self.config.metadata.get("img2img_model_id") or self.config.img2img_model_id

    def _pipeline_kwargs(self, dtype: torch.dtype) -> Dict[str, Any]:
        cache_dir = Path(self.config.model_dir)
        cache_dir.mkdir(parents=True, exist_ok=True)
        return {
            "torch_dtype": dtype,
            "cache_dir": str(cache_dir),
            "use_safetensors": True,
        }

    def _configure_pipeline(self, pipeline: Any, device: str) -> None:
        pipeline.to(device)

        if self.config.enable_xformers:
            try:
                pipeline.enable_xformers_memory_efficient_attention()
            except Exception as exc:  # xformers is optional
                logger.debug("xformers unavailable: %s", exc)

        if self.config.enable_vae_tiling and hasattr(pipeline, "enable_vae_tiling"):
            pipeline.enable_vae_tiling()

    def load_pipeline(self, model_id: str = "") -> StableDiffusionXLImg2ImgPipeline:
        if self._pipeline is not None:
            return self._pipeline

        device = self._preferred_device()
        dtype = self._preferred_dtype(device)
        resolved = self._resolve_model_id(model_id)
        logger.info("Loading img2img pipeline %s on %s", resolved, device)

        pipeline = StableDiffusionXLImg2ImgPipeline.from_pretrained(
            resolved,
            **self._pipeline_kwargs(dtype),
        )
        self._configure_pipeline(pipeline, device)

        self._pipeline = pipeline
        self._device = device
        return pipeline

    def offload(self) -> None:
        """Move the cached pipeline off the GPU and drop it."""
        if self._pipeline is not None:
            try:
                self._pipeline.to("cpu", dtype=torch.float32)
            except (RuntimeError, TypeError) as exc:
                logger.debug("Failed to move pipeline to cpu: %s", exc)
            self._pipeline = None
        self._device = None
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    def generate(
        self, params: GenerateParams, cancel_event: Optional[threading.Event] = None
    ) -> GenerateResult:
        if not params.image_paths:
            raise ValueError("img2img requires at least one input image")
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelled("generation cancelled")

        with Image.open(params.image_paths[0]) as source:
            init_image = source.convert("RGB")
        width, height = target_dimensions(params.aspect_ratio, params.image_size, init_image.size)
        init_image = init_image.resize((width, height))

        pipeline = self.load_pipeline(params.model)

        def _on_step_end(pipe: Any, step: int, timestep: Any, callback_kwargs: Dict[str, Any]):
            if cancel_event is not None and cancel_event.is_set():
                pipe._interrupt = True
            return callback_kwargs

        result = pipeline(
            prompt=params.prompt,
            image=init_image,
            strength=self.config.img2img_strength,
            guidance_scale=self.config.guidance_scale,
            num_inference_steps=self.config.img2img_steps,
            callback_on_step_end=_on_step_end,
        )
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelled("generation cancelled")

        images = []
        for image in getattr(result, "images", None) or []:
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
            images.append(GeneratedImage(data=buffer.getvalue(), mime_type="image/png"))

        return GenerateResult(images=images, text="", token_usage=TokenUsage())
