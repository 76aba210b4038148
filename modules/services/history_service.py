"""Directory-backed history of generation entries and their edits.

Each record owns one directory named after its time-ordered id. Metadata is
written last and atomically, so a directory without readable metadata is an
in-flight or foreign directory and is invisible to listings.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generic, Iterable, List, Type, TypeVar, Union

import yaml

from modules.history.errors import CorruptRecordError, NotFoundError, PersistenceError
from modules.history.ids import is_valid_id
from modules.history.models import (
    CHARACTER_FILE,
    CONTEXT_FILE,
    EDIT_PROMPT_FILE,
    PROMPT_FILE,
    EditEntry,
    Entry,
)
from modules.project import paths
from modules.services.storage_service import StorageService

logger = logging.getLogger(__name__)

META_FILE = "meta.yaml"
EDIT_META_FILE = "edit-meta.yaml"

R = TypeVar("R", Entry, EditEntry)


def metadata_file_mode() -> int:
    """0644 under the current umask, the mode ordinary writes end up with."""
    # umask 只能通过设置来读取
    mask = os.umask(0)
    os.umask(mask)
    return 0o644 & ~mask


def _normalize_timestamps(data: Any) -> Any:
    """Turn YAML-native timestamps back into the RFC 3339 strings we store."""
    if isinstance(data, dict):
        return {key: _normalize_timestamps(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_normalize_timestamps(item) for item in data]
    if isinstance(data, datetime):
        if data.tzinfo is None:
            data = data.replace(tzinfo=timezone.utc)
        return data.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return data


class RecordStore(ABC, Generic[R]):
    """Put / get / list / delete over time-ordered records."""

    @abstractmethod
    def save(self, record: R) -> Path:
        """Persist record metadata, overwriting any previous version."""

    @abstractmethod
    def get(self, record_id: str) -> R:
        """Load one record by id."""

    @abstractmethod
    def list_records(self) -> List[R]:
        """Return every readable record, oldest first."""

    @abstractmethod
    def cleanup(self, record: R) -> None:
        """Delete the record and everything stored with it."""


class DirectoryStore(RecordStore[R]):
    """Filesystem adapter: one directory per record under ``root``."""

    meta_file: str
    prompt_file: str
    record_type: Type[R]
    label: str

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def record_dir(self, record_id: str) -> Path:
        return self.root / record_id

    # Writes -----------------------------------------------------------------
    def save(self, record: R) -> Path:
        record_dir = self.record_dir(record.id)
        try:
            record_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"failed to create {self.label} directory: {exc}") from exc

        payload = yaml.safe_dump(
            record.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False
        )
        target = record_dir / self.meta_file
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.meta_file}.", dir=record_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            # mkstemp 创建的文件是 0600
            os.chmod(tmp_name, metadata_file_mode())
            os.replace(tmp_name, target)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise PersistenceError(f"failed to write {self.meta_file}: {exc}") from exc
        return target

    def save_prompt(self, record: R, prompt: str) -> Path:
        record_dir = self.record_dir(record.id)
        target = record_dir / self.prompt_file
        try:
            record_dir.mkdir(parents=True, exist_ok=True)
            target.write_text(prompt, encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"failed to write {self.prompt_file}: {exc}") from exc
        return target

    def cleanup(self, record: R) -> None:
        record_dir = self.record_dir(record.id)
        if not record_dir.exists():
            return
        try:
            shutil.rmtree(record_dir)
        except OSError as exc:
            raise PersistenceError(f"failed to remove {self.label} directory {record_dir}: {exc}") from exc

    # Reads ------------------------------------------------------------------
    def _load(self, record_dir: Path) -> R:
        meta_path = record_dir / self.meta_file
        try:
            text = meta_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise NotFoundError(f"{self.label} not found: {record_dir.name}") from exc
        except OSError as exc:
            raise PersistenceError(f"failed to read {meta_path}: {exc}") from exc

        try:
            data = _normalize_timestamps(yaml.safe_load(text))
            record = self.record_type.from_dict(data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            raise CorruptRecordError(f"failed to parse {meta_path}: {exc}") from exc

        if record.id != record_dir.name:
            raise CorruptRecordError(
                f"{meta_path} declares id {record.id!r} but lives in {record_dir.name!r}"
            )
        return record

    def get(self, record_id: str) -> R:
        if not is_valid_id(record_id):
            raise NotFoundError(f"{self.label} not found: {record_id!r} is not a valid id")
        return self._load(self.record_dir(record_id))

    def list_records(self) -> List[R]:
        try:
            children: Iterable[Path] = list(self.root.iterdir())
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise PersistenceError(f"failed to read {self.root}: {exc}") from exc

        records: List[R] = []
        for child in children:
            if not child.is_dir() or not is_valid_id(child.name):
                continue
            try:
                records.append(self._load(child))
            except (NotFoundError, CorruptRecordError, PersistenceError) as exc:
                logger.debug("Skipping %s %s: %s", self.label, child.name, exc)
        records.sort(key=lambda record: record.id)
        return records

    def latest(self) -> R:
        records = self.list_records()
        if not records:
            raise NotFoundError(f"no {self.label} records found in {self.root}")
        return records[-1]

    def load_prompt(self, record_id: str) -> str:
        prompt_path = self.record_dir(record_id) / self.prompt_file
        try:
            return prompt_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise NotFoundError(f"prompt not found for {self.label} {record_id}") from exc
        except OSError as exc:
            raise PersistenceError(f"failed to read {prompt_path}: {exc}") from exc


class HistoryService(DirectoryStore[Entry]):
    """Generation entries stored under ``<subproject>/history``."""

    meta_file = META_FILE
    prompt_file = PROMPT_FILE
    record_type = Entry
    label = "history entry"

    def __init__(self, history_dir: Union[str, Path], storage: StorageService | None = None) -> None:
        super().__init__(history_dir)
        self.storage = storage or StorageService()

    @property
    def history_dir(self) -> Path:
        return self.root

    def entry_dir(self, entry_id: str) -> Path:
        return paths.entry_dir(self.root, entry_id)

    def list_entries(self) -> List[Entry]:
        return self.list_records()

    def get_entry_by_id(self, entry_id: str) -> Entry:
        return self.get(entry_id)

    def get_latest_entry(self) -> Entry:
        return self.latest()

    def save_input_images(self, entry: Entry, image_paths: Iterable[Union[str, Path]]) -> List[str]:
        """Copy every input image into the entry; report all failures together."""
        entry_dir = self.entry_dir(entry.id)
        saved: List[str] = []
        failures: List[str] = []
        for image_path in image_paths:
            source = Path(image_path)
            try:
                self.storage.copy_file(source, entry_dir, source.name)
            except PersistenceError as exc:
                failures.append(str(exc))
                continue
            saved.append(source.name)
        if failures:
            raise PersistenceError("failed to save input images: " + "; ".join(failures))
        return saved

    def save_context_file(self, entry: Entry, source: Union[str, Path]) -> str:
        self.storage.copy_file(Path(source), self.entry_dir(entry.id), CONTEXT_FILE)
        return CONTEXT_FILE

    def save_character_file(self, entry: Entry, source: Union[str, Path]) -> str:
        self.storage.copy_file(Path(source), self.entry_dir(entry.id), CHARACTER_FILE)
        return CHARACTER_FILE

    def input_image_paths(self, entry: Entry) -> List[Path]:
        """Return stored copies of the entry's input images that exist on disk."""
        entry_dir = self.entry_dir(entry.id)
        return [
            entry_dir / name
            for name in entry.generation.input_images
            if (entry_dir / name).is_file()
        ]

    def snapshot_path(self, entry: Entry, name: str) -> Path | None:
        if not name:
            return None
        candidate = self.entry_dir(entry.id) / name
        return candidate if candidate.is_file() else None

    def edits(self, entry_id: str) -> "EditHistoryService":
        """Return the edit store of an existing entry."""
        if not is_valid_id(entry_id):
            raise NotFoundError(f"history entry not found: {entry_id!r} is not a valid id")
        entry_dir = self.entry_dir(entry_id)
        if not entry_dir.is_dir():
            raise NotFoundError(f"history entry not found: {entry_id}")
        return EditHistoryService(entry_dir, storage=self.storage)


class EditHistoryService(DirectoryStore[EditEntry]):
    """Edits of one entry, stored under ``<entry>/edits``."""

    meta_file = EDIT_META_FILE
    prompt_file = EDIT_PROMPT_FILE
    record_type = EditEntry
    label = "edit entry"

    def __init__(self, entry_dir: Union[str, Path], storage: StorageService | None = None) -> None:
        super().__init__(paths.edits_dir(entry_dir))
        self.entry_dir = Path(entry_dir)
        self.storage = storage or StorageService()

    def list_edits(self) -> List[EditEntry]:
        return self.list_records()

    def count_edits(self) -> int:
        return len(self.list_records())

    def get_edit_by_id(self, edit_id: str) -> EditEntry:
        return self.get(edit_id)

    def get_latest_edit(self) -> EditEntry:
        return self.latest()

    def edit_output_path(self, edit_id: str, output_name: str) -> Path:
        return paths.edit_output_path(self.entry_dir, edit_id, output_name)
