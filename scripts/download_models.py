"""Pre-fetch the SDXL img2img weights used by the diffusers backend."""

from __future__ import annotations

import argparse

from config.settings import load_config
from modules.pipelines.img2img import Image2ImageGenerator
from modules.utils.logging import setup_logging


def download_all(model_id: str = "", env_file: str | None = None) -> str:
    """Load the pipeline once so its weights land in MODEL_DIR; return the model id."""
    config = load_config(env_file)
    logger = setup_logging(config)
    generator = Image2ImageGenerator(config)
    pipeline = generator.load_pipeline(model_id)
    resolved = getattr(pipeline, "name_or_path", "") or model_id or config.img2img_model_id
    logger.info("Cached %s under %s", resolved, config.model_dir)
    generator.offload()
    return resolved


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Download img2img weights into MODEL_DIR.")
    parser.add_argument("--model", default="", help="Hugging Face repo id or local path")
    parser.add_argument("--env-file", dest="env_file", help="Path to a .env file")
    return parser.parse_args()


if __name__ == "__main__":
    args = parse_args()
    download_all(args.model, args.env_file)
