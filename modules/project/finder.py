"""Locate the project root and the subproject the user is working in."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Union

from config.project import ProjectConfig, SubprojectConfig
from modules.project import paths


class ProjectNotFoundError(LookupError):
    """No picturebook.yaml in the start directory or any parent."""


class NotInSubprojectError(LookupError):
    """The working directory is not inside subprojects/<name>/."""


def find_project_root(start_dir: Optional[Union[str, Path]] = None) -> Path:
    """Walk up from ``start_dir`` until a directory holding picturebook.yaml is found."""
    current = Path(start_dir or Path.cwd()).resolve()
    while True:
        if ProjectConfig.exists(current):
            return current
        if current.parent == current:
            raise ProjectNotFoundError(
                f"picturebook project not found (no {paths.PROJECT_CONFIG_FILE} in "
                "current or parent directories). Run 'picturebook init' first"
            )
        current = current.parent


def find_current_subproject(project_root: Union[str, Path], cwd: Union[str, Path]) -> str:
    """Return the subproject name when ``cwd`` lies inside one."""
    root = Path(project_root).resolve()
    try:
        relative = Path(cwd).resolve().relative_to(root)
    except ValueError as exc:
        raise NotInSubprojectError(f"{cwd} is outside the project {root}") from exc

    parts = relative.parts
    if len(parts) >= 2 and parts[0] == paths.SUBPROJECTS_DIR:
        name = parts[1]
        if SubprojectConfig.exists(paths.subproject_dir(root, name)):
            return name
    raise NotInSubprojectError(
        "not in a subproject. Navigate to a subproject directory"
    )


def list_subprojects(project_root: Union[str, Path]) -> List[str]:
    """Return subproject names that carry a config.yaml, sorted by name."""
    directory = paths.subprojects_dir(project_root)
    if not directory.is_dir():
        return []
    return sorted(
        child.name
        for child in directory.iterdir()
        if child.is_dir() and SubprojectConfig.exists(child)
    )
