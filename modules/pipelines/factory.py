"""Select the image generator backend from the app config."""

from __future__ import annotations

from config.settings import AppConfig
from modules.pipelines.base import ImageGenerator


def build_generator(config: AppConfig) -> ImageGenerator:
    if config.generator_backend == "diffusers":
        # torch / diffusers 导入较慢，只在需要时加载
        from modules.pipelines.img2img import Image2ImageGenerator

        return Image2ImageGenerator(config)

    from modules.pipelines.gemini_client import GeminiImageGenerator

    return GeminiImageGenerator(
        api_key=config.gemini_api_key,
        base_url=config.metadata.get("gemini_base_url"),
    )
