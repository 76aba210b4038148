"""Project (picturebook.yaml) and subproject (config.yaml) settings."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from config.settings import DEFAULT_MODEL
from modules.project.paths import PROJECT_CONFIG_FILE, SUBPROJECT_CONFIG_FILE

logger = logging.getLogger(__name__)

CONFIG_VERSION = "1.0"
DEFAULT_CONTEXT_FILE = "context.md"


class ConfigError(Exception):
    """Raised when a project or subproject configuration is missing or invalid."""


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _read_yaml(path: Path) -> Dict[str, Any]:
    logger.debug("Loading config from %s", path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except OSError as exc:
        raise ConfigError(f"failed to read {path}: {exc}") from exc

    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    # created_at 等字段可能被 YAML 解析为 datetime
    return {key: (value.strftime("%Y-%m-%dT%H:%M:%SZ") if isinstance(value, datetime) else value)
            for key, value in data.items()}


def _write_yaml(path: Path, data: Dict[str, Any]) -> None:
    try:
        path.write_text(
            yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False),
            encoding="utf-8",
        )
    except OSError as exc:
        raise ConfigError(f"failed to write {path}: {exc}") from exc


def _drop_empty(data: Dict[str, Any], keys: tuple[str, ...]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if key not in keys or value}


@dataclass(slots=True)
class ProjectDefaults:
    aspect_ratio: str = ""
    image_size: str = ""


@dataclass(slots=True)
class ProjectConfig:
    """Root project configuration."""

    name: str
    version: str = CONFIG_VERSION
    model: str = DEFAULT_MODEL
    created_at: str = field(default_factory=_now)
    defaults: ProjectDefaults = field(default_factory=ProjectDefaults)

    def save(self, directory: Union[str, Path]) -> Path:
        path = Path(directory) / PROJECT_CONFIG_FILE
        data = {
            "version": self.version,
            "name": self.name,
            "model": self.model,
            "created_at": self.created_at,
        }
        defaults = _drop_empty(asdict(self.defaults), ("aspect_ratio", "image_size"))
        if defaults:
            data["defaults"] = defaults
        _write_yaml(path, data)
        return path

    @classmethod
    def load(cls, directory: Union[str, Path]) -> "ProjectConfig":
        path = Path(directory) / PROJECT_CONFIG_FILE
        data = _read_yaml(path)
        defaults = data.get("defaults") or {}
        if not isinstance(defaults, dict):
            raise ConfigError(f"{path}: defaults must be a mapping")
        return cls(
            name=str(data.get("name") or ""),
            version=str(data.get("version") or CONFIG_VERSION),
            model=str(data.get("model") or DEFAULT_MODEL),
            created_at=str(data.get("created_at") or ""),
            defaults=ProjectDefaults(
                aspect_ratio=str(defaults.get("aspect_ratio") or ""),
                image_size=str(defaults.get("image_size") or ""),
            ),
        )

    @staticmethod
    def exists(directory: Union[str, Path]) -> bool:
        return (Path(directory) / PROJECT_CONFIG_FILE).is_file()


@dataclass(slots=True)
class SubprojectConfig:
    """Per-subproject generation settings."""

    name: str
    version: str = CONFIG_VERSION
    description: str = ""
    created_at: str = field(default_factory=_now)
    character_file: str = ""
    context_file: str = DEFAULT_CONTEXT_FILE
    aspect_ratio: str = ""
    image_size: str = ""
    input_images: List[str] = field(default_factory=list)

    def save(self, directory: Union[str, Path]) -> Path:
        path = Path(directory) / SUBPROJECT_CONFIG_FILE
        data = {
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at,
            "character_file": self.character_file,
            "context_file": self.context_file,
            "aspect_ratio": self.aspect_ratio,
            "image_size": self.image_size,
            "input_images": list(self.input_images),
        }
        _write_yaml(
            path,
            _drop_empty(
                data, ("description", "character_file", "aspect_ratio", "image_size", "input_images")
            ),
        )
        return path

    @classmethod
    def load(cls, directory: Union[str, Path]) -> "SubprojectConfig":
        path = Path(directory) / SUBPROJECT_CONFIG_FILE
        data = _read_yaml(path)
        images = data.get("input_images") or []
        if not isinstance(images, list):
            raise ConfigError(f"{path}: input_images must be a list")
        return cls(
            name=str(data.get("name") or Path(directory).name),
            version=str(data.get("version") or CONFIG_VERSION),
            description=str(data.get("description") or ""),
            created_at=str(data.get("created_at") or ""),
            character_file=str(data.get("character_file") or ""),
            context_file=str(data.get("context_file") or ""),
            aspect_ratio=str(data.get("aspect_ratio") or ""),
            image_size=str(data.get("image_size") or ""),
            input_images=[str(item) for item in images],
        )

    @staticmethod
    def exists(directory: Union[str, Path]) -> bool:
        return (Path(directory) / SUBPROJECT_CONFIG_FILE).is_file()

