"""Manual script to verify the Gemini API key and image model respond."""

from __future__ import annotations

import argparse
from pathlib import Path

from PIL import Image

from config.settings import load_config
from modules.pipelines.base import GenerateParams
from modules.pipelines.gemini_client import GeminiImageGenerator
from modules.services.storage_service import StorageService


def main() -> None:
    parser = argparse.ArgumentParser(description="Send one small image request to Gemini.")
    parser.add_argument("--image", help="Reference image (defaults to a generated white square)")
    parser.add_argument("--out", default="dist", help="Directory for the returned images")
    parser.add_argument("--prompt", default="Draw a small red ball in the centre of this image")
    args = parser.parse_args()

    config = load_config()  # 会读取 .env 并写入 os.environ
    if not config.gemini_api_key:
        print("[error] GEMINI_API_KEY not set; check .env or environment variables.")
        raise SystemExit(1)

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    image_path = Path(args.image) if args.image else out_dir / "check-input.png"
    if not args.image:
        Image.new("RGB", (256, 256), "white").save(image_path)

    generator = GeminiImageGenerator(
        api_key=config.gemini_api_key,
        base_url=config.metadata.get("gemini_base_url"),
    )
    result = generator.generate(
        GenerateParams(
            model=config.default_model,
            prompt=args.prompt,
            image_paths=[str(image_path)],
            aspect_ratio="1:1",
            image_size="1K",
        )
    )

    names = StorageService().save_images(result.images, out_dir)
    print("Saved:", ", ".join(names))
    if result.text:
        print("Text:", result.text)
    print("Tokens:", result.token_usage.to_dict())


if __name__ == "__main__":
    main()
