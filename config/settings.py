"""Configuration helpers for the picturebook project."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

DEFAULT_MODEL = "gemini-3-pro-image-preview"
SUPPORTED_BACKENDS = ("gemini", "diffusers")


@dataclass(slots=True)
class AppConfig:
    """Process-wide settings, built once at start-up and passed down explicitly."""

    generator_backend: str = "gemini"
    gemini_api_key: Optional[str] = None
    default_model: str = DEFAULT_MODEL
    model_dir: Path = Path("models")
    img2img_model_id: str = "models/sdxl-turbo"
    use_fp16: bool = True
    enable_xformers: bool = True
    enable_vae_tiling: bool = True
    img2img_strength: float = 0.6
    img2img_steps: int = 30
    guidance_scale: float = 7.5
    log_dir: Path = Path("logs")
    log_level: str = "INFO"
    server_host: str = "127.0.0.1"
    server_port: int = 7860
    metadata: dict[str, Any] = field(default_factory=dict)


def _load_env_file(path: Path) -> None:
    """Populate environment variables from a simple KEY=VALUE .env file."""
    if not path.exists():
        return

    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip().strip("'\""))


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default: float, cast=float):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Return an AppConfig instance with environment-aware settings."""
    env_path = Path(config_path) if config_path else Path(".env")
    _load_env_file(env_path)

    backend = os.getenv("PICTUREBOOK_BACKEND", "gemini").strip().lower()
    if backend not in SUPPORTED_BACKENDS:
        raise ValueError(
            f"PICTUREBOOK_BACKEND must be one of {', '.join(SUPPORTED_BACKENDS)}, got {backend!r}"
        )

    model_dir = Path(os.getenv("MODEL_DIR", "models")).expanduser().resolve()
    for env_name in ("HUGGINGFACE_HUB_CACHE", "DIFFUSERS_CACHE"):
        os.environ.setdefault(env_name, str(model_dir))

    img2img_model_id = os.getenv("IMG2IMG_MODEL_ID") or str(model_dir / "sdxl-turbo")

    metadata: dict[str, Any] = {}
    if os.getenv("GEMINI_BASE_URL"):
        metadata["gemini_base_url"] = os.getenv("GEMINI_BASE_URL")

    return AppConfig(
        generator_backend=backend,
        gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"),
        default_model=os.getenv("PICTUREBOOK_MODEL", DEFAULT_MODEL),
        model_dir=model_dir,
        img2img_model_id=img2img_model_id,
        use_fp16=_env_flag("USE_FP16", True),
        enable_xformers=_env_flag("ENABLE_XFORMERS", True),
        enable_vae_tiling=_env_flag("ENABLE_VAE_TILING", True),
        img2img_strength=_env_number("IMG2IMG_STRENGTH", 0.6),
        img2img_steps=_env_number("IMG2IMG_STEPS", 30, int),
        guidance_scale=_env_number("GUIDANCE_SCALE", 7.5),
        log_dir=Path(os.getenv("LOG_DIR", "logs")).expanduser(),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        server_host=os.getenv("PICTUREBOOK_HOST", "127.0.0.1"),
        server_port=_env_number("PICTUREBOOK_PORT", 7860, int),
        metadata=metadata,
    )
