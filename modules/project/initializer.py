"""Scaffolding for new projects and subprojects."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Union

from config.project import DEFAULT_CONTEXT_FILE, ConfigError, ProjectConfig, SubprojectConfig
from modules.project import paths

logger = logging.getLogger(__name__)

_SUBPROJECT_NAME = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")

_CONTEXT_TEMPLATE = """# {name}

Describe the goal of this subproject, the style to keep and anything the
generator should know before editing.
"""


def init_project(directory: Union[str, Path], name: str = "", model: str = "") -> ProjectConfig:
    """Create picturebook.yaml plus the subprojects/ and characters/ folders."""
    root = Path(directory)
    if ProjectConfig.exists(root):
        raise ConfigError(f"picturebook project already initialized in {root}")

    root.mkdir(parents=True, exist_ok=True)
    config = ProjectConfig(name=name or root.resolve().name)
    if model:
        config.model = model
    config.save(root)
    paths.subprojects_dir(root).mkdir(exist_ok=True)
    paths.characters_dir(root).mkdir(exist_ok=True)
    logger.info("Initialized project %s in %s", config.name, root)
    return config


def create_subproject(
    project_root: Union[str, Path], name: str, description: str = ""
) -> SubprojectConfig:
    """Create subprojects/<name>/ with config.yaml, context.md, inputs/ and history/."""
    if not _SUBPROJECT_NAME.fullmatch(name or ""):
        raise ConfigError(f"invalid subproject name {name!r}")

    directory = paths.subproject_dir(project_root, name)
    if SubprojectConfig.exists(directory):
        raise ConfigError(f"subproject {name!r} already exists")

    paths.inputs_dir(directory).mkdir(parents=True, exist_ok=True)
    paths.history_dir(directory).mkdir(parents=True, exist_ok=True)

    config = SubprojectConfig(name=name, description=description)
    context_path = directory / DEFAULT_CONTEXT_FILE
    if not context_path.exists():
        context_path.write_text(_CONTEXT_TEMPLATE.format(name=name), encoding="utf-8")
    config.save(directory)
    logger.info("Created subproject %s", name)
    return config
