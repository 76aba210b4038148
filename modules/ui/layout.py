"""Gradio layout of the read-only history browser."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Union

import gradio as gr

from config.project import ConfigError, ProjectConfig
from config.settings import AppConfig
from modules.ui.callbacks import build_callbacks

ENTRY_HEADERS = ["ID", "创建时间", "状态", "输出数", "编辑数"]
EDIT_HEADERS = ["ID", "创建时间", "来源", "来源图像", "状态"]


def build_app(config: AppConfig, project_root: Union[str, Path]) -> Any:
    """Compose and return the Gradio application."""
    callbacks_map = build_callbacks(project_root)
    subprojects = callbacks_map["on_list_subprojects"]()
    try:
        model = ProjectConfig.load(project_root).model
    except ConfigError:
        model = "?"

    def _load_subproject(subproject: str):
        rows, entry_ids, message = callbacks_map["on_select_subproject"](subproject)
        return rows, gr.update(choices=entry_ids, value=entry_ids[0] if entry_ids else None), message

    def _load_entry(subproject: str, entry_id: str):
        if not entry_id:
            return "", "", [], [], gr.update(choices=[], value=None), "请选择一条记录。"
        prompt, meta, outputs, edit_rows, edit_ids, message = callbacks_map["on_select_entry"](
            subproject, entry_id
        )
        return prompt, meta, outputs, edit_rows, gr.update(choices=edit_ids, value=None), message

    def _load_edit(subproject: str, entry_id: str, edit_id: str):
        if not edit_id:
            return "", "", [], "请选择一条编辑记录。"
        return callbacks_map["on_select_edit"](subproject, entry_id, edit_id)

    with gr.Blocks(title=f"picturebook · {Path(project_root).name}") as demo:
        gr.Markdown(
            f"## picturebook 历史浏览 · 模型 `{model}` · 后端 `{config.generator_backend}`"
        )

        with gr.Row():
            subproject_select = gr.Dropdown(
                label="子项目",
                choices=subprojects,
                value=subprojects[0] if subprojects else None,
            )
            refresh_btn = gr.Button("刷新")
        status = gr.Markdown("准备就绪。")

        entries_table = gr.Dataframe(headers=ENTRY_HEADERS, label="生成记录（新→旧）", interactive=False)
        entry_select = gr.Dropdown(label="生成记录 ID", choices=[])

        with gr.Row():
            with gr.Column():
                entry_prompt = gr.Textbox(label="提示词", lines=4, interactive=False)
                entry_meta = gr.Code(label="meta.yaml", language="yaml", interactive=False)
            with gr.Column():
                entry_gallery = gr.Gallery(label="输出图像")

        edits_table = gr.Dataframe(headers=EDIT_HEADERS, label="编辑记录（新→旧）", interactive=False)
        edit_select = gr.Dropdown(label="编辑记录 ID", choices=[])

        with gr.Row():
            with gr.Column():
                edit_prompt = gr.Textbox(label="编辑提示词", lines=3, interactive=False)
                edit_meta = gr.Code(label="edit-meta.yaml", language="yaml", interactive=False)
            with gr.Column():
                edit_gallery = gr.Gallery(label="编辑输出")

        subproject_outputs = [entries_table, entry_select, status]
        subproject_select.change(fn=_load_subproject, inputs=[subproject_select], outputs=subproject_outputs)
        refresh_btn.click(fn=_load_subproject, inputs=[subproject_select], outputs=subproject_outputs)
        demo.load(fn=_load_subproject, inputs=[subproject_select], outputs=subproject_outputs)

        entry_select.change(
            fn=_load_entry,
            inputs=[subproject_select, entry_select],
            outputs=[entry_prompt, entry_meta, entry_gallery, edits_table, edit_select, status],
        )
        edit_select.change(
            fn=_load_edit,
            inputs=[subproject_select, entry_select, edit_select],
            outputs=[edit_prompt, edit_meta, edit_gallery, status],
        )

    return demo
