"""Path helpers for the project / subproject / history layout."""

from __future__ import annotations

from pathlib import Path
from typing import Union

PathLike = Union[str, Path]

PROJECT_CONFIG_FILE = "picturebook.yaml"
SUBPROJECT_CONFIG_FILE = "config.yaml"
SUBPROJECTS_DIR = "subprojects"
CHARACTERS_DIR = "characters"
INPUTS_DIR = "inputs"
HISTORY_DIR = "history"
EDITS_DIR = "edits"


def subprojects_dir(project_root: PathLike) -> Path:
    return Path(project_root) / SUBPROJECTS_DIR


def subproject_dir(project_root: PathLike, name: str) -> Path:
    return subprojects_dir(project_root) / name


def characters_dir(project_root: PathLike) -> Path:
    return Path(project_root) / CHARACTERS_DIR


def character_path(project_root: PathLike, character_file: str) -> Path:
    return characters_dir(project_root) / character_file


def inputs_dir(subproject: PathLike) -> Path:
    return Path(subproject) / INPUTS_DIR


def history_dir(subproject: PathLike) -> Path:
    return Path(subproject) / HISTORY_DIR


def resolve_history_dir(project_root: PathLike, name: str) -> Path:
    """Map a project root and subproject name to its history directory."""
    return history_dir(subproject_dir(project_root, name))


def entry_dir(history: PathLike, entry_id: str) -> Path:
    return Path(history) / entry_id


def edits_dir(entry: PathLike) -> Path:
    return Path(entry) / EDITS_DIR


def edit_dir(entry: PathLike, edit_id: str) -> Path:
    return edits_dir(entry) / edit_id


def edit_output_path(entry: PathLike, edit_id: str, output_name: str) -> Path:
    return edit_dir(entry, edit_id) / output_name
