"""Callback implementations for the read-only history browser."""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Tuple, Union

import yaml

from modules.history.errors import HistoryError, NotFoundError
from modules.history.ids import id_timestamp
from modules.project import paths
from modules.project.finder import list_subprojects
from modules.services.history_service import EditHistoryService, HistoryService

EntryRow = List[Union[str, int]]


def build_callbacks(project_root: Union[str, Path]) -> dict[str, Any]:
    """Return a dictionary of Gradio callback functions bound to one project."""

    root = Path(project_root)

    def _history(subproject: str) -> HistoryService:
        # 只接受真实存在的子项目名，避免路径穿越
        if not subproject or subproject not in list_subprojects(root):
            raise NotFoundError(f"subproject not found: {subproject!r}")
        return HistoryService(paths.resolve_history_dir(root, subproject))

    def _dump(data: dict[str, Any]) -> str:
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)

    def _existing(files: List[Path]) -> List[str]:
        return [str(path) for path in files if path.is_file()]

    def _created(created_at: str, record_id: str) -> str:
        # 旧记录可能没有 created_at，退回到 id 内嵌的时间戳
        if created_at:
            return created_at
        try:
            return id_timestamp(record_id).strftime("%Y-%m-%dT%H:%M:%SZ")
        except ValueError:
            return ""

    def on_list_subprojects() -> List[str]:
        return list_subprojects(root)

    def on_select_subproject(subproject: str) -> Tuple[List[EntryRow], List[str], str]:
        """Entries newest first, as table rows plus the id choices."""
        try:
            history = _history(subproject)
            entries = list(reversed(history.list_entries()))
            rows: List[EntryRow] = []
            for entry in entries:
                rows.append(
                    [
                        entry.id,
                        _created(entry.created_at, entry.id),
                        "成功" if entry.result.success else "失败",
                        len(entry.result.output_images),
                        history.edits(entry.id).count_edits(),
                    ]
                )
        except HistoryError as exc:
            return [], [], f"加载失败：{exc}"
        return rows, [entry.id for entry in entries], f"共 {len(rows)} 条记录"

    def on_select_entry(
        subproject: str, entry_id: str
    ) -> Tuple[str, str, List[str], List[EntryRow], List[str], str]:
        """Prompt, metadata, output images and edit rows of one entry."""
        try:
            history = _history(subproject)
            entry = history.get_entry_by_id(entry_id)
            prompt = history.load_prompt(entry.id) if entry.generation.prompt_file else ""
            entry_dir = history.entry_dir(entry.id)
            outputs = _existing([entry_dir / name for name in entry.result.output_images])
            edits = history.edits(entry.id).list_edits()
        except HistoryError as exc:
            return "", "", [], [], [], f"加载失败：{exc}"

        edit_rows: List[EntryRow] = [
            [
                edit.id,
                _created(edit.created_at, edit.id),
                edit.source.type,
                edit.source.output,
                "成功" if edit.result.success else "失败",
            ]
            for edit in reversed(edits)
        ]
        edit_ids = [edit.id for edit in reversed(edits)]
        return prompt, _dump(entry.to_dict()), outputs, edit_rows, edit_ids, f"已加载 {entry.id}"

    def on_select_edit(
        subproject: str, entry_id: str, edit_id: str
    ) -> Tuple[str, str, List[str], str]:
        try:
            history = _history(subproject)
            edits: EditHistoryService = history.edits(entry_id)
            edit = edits.get_edit_by_id(edit_id)
            prompt = edits.load_prompt(edit.id) if edit.generation.prompt_file else ""
            outputs = _existing(
                [edits.edit_output_path(edit.id, name) for name in edit.result.output_images]
            )
        except HistoryError as exc:
            return "", "", [], f"加载失败：{exc}"
        return prompt, _dump(edit.to_dict()), outputs, f"已加载编辑 {edit.id}"

    return {
        "on_list_subprojects": on_list_subprojects,
        "on_select_subproject": on_select_subproject,
        "on_select_entry": on_select_entry,
        "on_select_edit": on_select_edit,
    }
