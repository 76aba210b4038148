"""picturebook command line interface."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, TextIO

from config.project import ConfigError, ProjectConfig, SubprojectConfig
from config.settings import AppConfig, load_config
from modules.generation.service import GenerationService
from modules.generation.spec import EditSpec, GenerationSpec
from modules.history.errors import HistoryError, ValidationError
from modules.history.models import SOURCE_EDIT, SOURCE_GENERATE, TokenUsage, first_output
from modules.pipelines.base import ImageGenerator
from modules.pipelines.factory import build_generator
from modules.project import paths
from modules.project.finder import (
    NotInSubprojectError,
    ProjectNotFoundError,
    find_current_subproject,
    find_project_root,
    list_subprojects,
)
from modules.project.initializer import create_subproject, init_project
from modules.services.history_service import HistoryService
from modules.utils.logging import setup_logging


@dataclass(slots=True)
class CommandContext:
    """What a command handler needs besides its parsed arguments."""

    config: AppConfig
    cwd: Path
    out: TextIO
    err: TextIO
    generator_factory: Callable[[], ImageGenerator]

    def resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else self.cwd / path


@dataclass(slots=True)
class SubprojectContext:
    project_root: Path
    project: ProjectConfig
    name: str
    directory: Path
    config: SubprojectConfig

    @property
    def history_dir(self) -> Path:
        return paths.history_dir(self.directory)


def _first_non_empty(*values: str) -> str:
    for value in values:
        if value:
            return value
    return ""


def _load_subproject(ctx: CommandContext) -> SubprojectContext:
    project_root = find_project_root(ctx.cwd)
    project = ProjectConfig.load(project_root)
    name = find_current_subproject(project_root, ctx.cwd)
    directory = paths.subproject_dir(project_root, name)
    return SubprojectContext(
        project_root=project_root,
        project=project,
        name=name,
        directory=directory,
        config=SubprojectConfig.load(directory),
    )


def _read_prompt(ctx: CommandContext, args: argparse.Namespace) -> str:
    if args.prompt_file:
        path = ctx.resolve(args.prompt_file)
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ValidationError(f"failed to read prompt file: {exc}") from exc
    return (args.prompt or "").strip()


def _print_usage(out: TextIO, usage: TokenUsage) -> None:
    if not usage.total and not usage.prompt and not usage.candidates:
        return
    print("", file=out)
    print("Token usage:", file=out)
    print(f"  prompt: {usage.prompt}", file=out)
    print(f"  candidates: {usage.candidates}", file=out)
    print(f"  total: {usage.total}", file=out)
    if usage.cached:
        print(f"  cached: {usage.cached}", file=out)
    if usage.thoughts:
        print(f"  thoughts: {usage.thoughts}", file=out)


def _print_warnings(err: TextIO, warnings: Sequence[str]) -> None:
    for message in warnings:
        print(f"warning: {message}", file=err)


def _print_outcome(ctx: CommandContext, label: str, record_id: str, result) -> None:
    _print_warnings(ctx.err, result.warnings)
    print(f"{label}: {record_id}", file=ctx.out)
    print("", file=ctx.out)
    print("Generated files:", file=ctx.out)
    for name in result.output_images:
        print(f"  {name}", file=ctx.out)
    if result.text:
        print("", file=ctx.out)
        print("Text response:", file=ctx.out)
        print(result.text, file=ctx.out)
    _print_usage(ctx.out, result.token_usage)


# Project commands ------------------------------------------------------------
def cmd_init(args: argparse.Namespace, ctx: CommandContext) -> int:
    config = init_project(ctx.cwd, name=args.name or "", model=ctx.config.default_model)
    print(f"Initialized picturebook project '{config.name}'", file=ctx.out)
    print("", file=ctx.out)
    print("Created files:", file=ctx.out)
    for name in (paths.PROJECT_CONFIG_FILE, f"{paths.CHARACTERS_DIR}/", f"{paths.SUBPROJECTS_DIR}/"):
        print(f"  {name}", file=ctx.out)
    return 0


def cmd_subproject_create(args: argparse.Namespace, ctx: CommandContext) -> int:
    project_root = find_project_root(ctx.cwd)
    create_subproject(project_root, args.name, description=args.description or "")
    print(f"Created subproject '{args.name}'", file=ctx.out)
    print("", file=ctx.out)
    print("Next steps:", file=ctx.out)
    print(f"  1. Configure character reference in subprojects/{args.name}/config.yaml", file=ctx.out)
    print(f"  2. Add context info to subprojects/{args.name}/context.md", file=ctx.out)
    print(f"  3. Place reference images in subprojects/{args.name}/inputs/", file=ctx.out)
    return 0


def cmd_subproject_list(args: argparse.Namespace, ctx: CommandContext) -> int:
    project_root = find_project_root(ctx.cwd)
    names = list_subprojects(project_root)
    if not names:
        print("No subprojects found", file=ctx.out)
        print("", file=ctx.out)
        print("To create a new subproject:", file=ctx.out)
        print("  picturebook subproject create <name>", file=ctx.out)
        return 0

    print("Subprojects:", file=ctx.out)
    for name in names:
        config = SubprojectConfig.load(paths.subproject_dir(project_root, name))
        line = f"  {name}"
        if config.description:
            line += f" - {config.description}"
        print(line, file=ctx.out)
    return 0


# Generation commands ---------------------------------------------------------
def cmd_generate(args: argparse.Namespace, ctx: CommandContext) -> int:
    prompt = _read_prompt(ctx, args)
    sub = _load_subproject(ctx)

    inputs = paths.inputs_dir(sub.directory)
    image_paths: List[str] = [str(inputs / name) for name in sub.config.input_images]
    image_paths.extend(str(ctx.resolve(path)) for path in args.image or [])
    if not image_paths:
        raise ValidationError(
            "no images specified. Use --image or set input_images in subproject config.yaml"
        )

    context_path: Optional[str] = None
    if sub.config.context_file:
        candidate = sub.directory / sub.config.context_file
        if candidate.is_file():
            context_path = str(candidate)
    character_path: Optional[str] = None
    if sub.config.character_file:
        candidate = paths.character_path(sub.project_root, sub.config.character_file)
        if candidate.is_file():
            character_path = str(candidate)

    spec = GenerationSpec(
        model=sub.project.model,
        prompt=prompt,
        image_paths=image_paths,
        aspect_ratio=_first_non_empty(
            args.aspect, sub.config.aspect_ratio, sub.project.defaults.aspect_ratio
        ),
        image_size=_first_non_empty(
            args.size, sub.config.image_size, sub.project.defaults.image_size
        ),
        context_path=context_path,
        character_path=character_path,
    )
    service = GenerationService(ctx.generator_factory())
    result = service.run(spec, sub.history_dir)
    _print_outcome(ctx, "History ID", result.entry_id, result)
    return 0


def cmd_regenerate(args: argparse.Namespace, ctx: CommandContext) -> int:
    sub = _load_subproject(ctx)
    history = HistoryService(sub.history_dir)
    source = history.get_latest_entry() if args.latest else history.get_entry_by_id(args.id)

    prompt = history.load_prompt(source.id)
    image_paths = [str(path) for path in history.input_image_paths(source)]
    if not image_paths:
        raise ValidationError("no input images found in history entry")

    print(f"Regenerating from history: {source.id}", file=ctx.out)
    print("", file=ctx.out)

    spec = GenerationSpec(
        model=sub.project.model,
        prompt=prompt,
        image_paths=image_paths,
        aspect_ratio=_first_non_empty(
            args.aspect,
            source.generation.aspect_ratio,
            sub.config.aspect_ratio,
            sub.project.defaults.aspect_ratio,
        ),
        image_size=_first_non_empty(
            args.size,
            source.generation.image_size,
            sub.config.image_size,
            sub.project.defaults.image_size,
        ),
        input_image_names=[Path(path).name for path in image_paths],
        source_entry_id=source.id,
    )
    service = GenerationService(ctx.generator_factory())
    result = service.run(spec, sub.history_dir)
    _print_outcome(ctx, "History ID", result.entry_id, result)
    return 0


def cmd_edit(args: argparse.Namespace, ctx: CommandContext) -> int:
    prompt = _read_prompt(ctx, args)
    sub = _load_subproject(ctx)
    history = HistoryService(sub.history_dir)
    entry = history.get_latest_entry() if args.latest else history.get_entry_by_id(args.id)
    edits = history.edits(entry.id)

    edit_aspect = edit_size = ""
    if args.edit_latest or args.edit_id:
        source_edit = edits.get_latest_edit() if args.edit_latest else edits.get_edit_by_id(args.edit_id)
        source_output = first_output(source_edit.result)
        if not source_output:
            raise ValidationError("no output images in edit entry")
        source_image = edits.edit_output_path(source_edit.id, source_output)
        source_type, source_edit_id = SOURCE_EDIT, source_edit.id
        edit_aspect = source_edit.generation.aspect_ratio
        edit_size = source_edit.generation.image_size
    else:
        source_output = first_output(entry.result)
        if not source_output:
            raise ValidationError("no output images in history entry")
        source_image = history.entry_dir(entry.id) / source_output
        source_type, source_edit_id = SOURCE_GENERATE, ""

    print(f"Editing from {source_type}: {source_output}", file=ctx.out)
    print("", file=ctx.out)

    spec = EditSpec(
        model=sub.project.model,
        prompt=prompt,
        source_image_path=str(source_image),
        entry_id=entry.id,
        source_output=source_output,
        source_type=source_type,
        source_edit_id=source_edit_id,
        aspect_ratio=_first_non_empty(
            args.aspect,
            edit_aspect,
            entry.generation.aspect_ratio,
            sub.config.aspect_ratio,
            sub.project.defaults.aspect_ratio,
        ),
        image_size=_first_non_empty(
            args.size,
            edit_size,
            entry.generation.image_size,
            sub.config.image_size,
            sub.project.defaults.image_size,
        ),
    )
    service = GenerationService(ctx.generator_factory())
    result = service.edit(spec, sub.history_dir)
    _print_outcome(ctx, "Edit ID", result.edit_id, result)
    return 0


# Browsing --------------------------------------------------------------------
def cmd_history(args: argparse.Namespace, ctx: CommandContext) -> int:
    sub = _load_subproject(ctx)
    history = HistoryService(sub.history_dir)
    entries = list(reversed(history.list_entries()))
    if args.limit and args.limit > 0:
        entries = entries[: args.limit]

    if not entries:
        print("No history found", file=ctx.out)
        print("", file=ctx.out)
        print("To generate images:", file=ctx.out)
        print('  picturebook generate --prompt "..."', file=ctx.out)
        return 0

    print(f"History ({len(entries)} entries):", file=ctx.out)
    print("", file=ctx.out)
    for entry in entries:
        status = "ok" if entry.result.success else "failed"
        print(f"  [{status}] {entry.id}", file=ctx.out)
        print(f"      Date: {entry.created_at}", file=ctx.out)
        if entry.result.output_images:
            print(f"      Output: {len(entry.result.output_images)} images", file=ctx.out)
        edit_list = history.edits(entry.id).list_edits()
        if edit_list:
            print("      Edits:", file=ctx.out)
            for edit in edit_list:
                edit_status = "ok" if edit.result.success else "failed"
                print(f"        [{edit_status}] {edit.id}", file=ctx.out)
                print(f"            Date: {edit.created_at}", file=ctx.out)
        if entry.result.error_message:
            print(f"      Error: {entry.result.error_message}", file=ctx.out)
        print("", file=ctx.out)
    return 0


def cmd_status(args: argparse.Namespace, ctx: CommandContext) -> int:
    project_root = find_project_root(ctx.cwd)
    project = ProjectConfig.load(project_root)
    try:
        name = find_current_subproject(project_root, ctx.cwd)
    except NotInSubprojectError:
        print(f"Project: {project.name}", file=ctx.out)
        print(f"Model: {project.model}", file=ctx.out)
        print("", file=ctx.out)
        print("Not in a subproject.", file=ctx.out)
        print("Navigate to a subproject or create one:", file=ctx.out)
        print("  cd subprojects/<name>", file=ctx.out)
        print("  picturebook subproject create <name>", file=ctx.out)
        return 0

    directory = paths.subproject_dir(project_root, name)
    config = SubprojectConfig.load(directory)

    def _shown(path: Path) -> str:
        text = os.path.relpath(path, Path(ctx.cwd).resolve())
        return text if path.exists() else f"{text} (not found)"

    print(f"Project: {project.name}", file=ctx.out)
    print(f"Subproject: {config.name}", file=ctx.out)
    if config.description:
        print(f"Description: {config.description}", file=ctx.out)
    print(f"Model: {project.model}", file=ctx.out)
    print("", file=ctx.out)

    if config.context_file:
        print(f"Context: {_shown(directory / config.context_file)}", file=ctx.out)
    if config.character_file:
        character = paths.character_path(project_root, config.character_file)
        print(f"Character: {_shown(character)}", file=ctx.out)
    print("", file=ctx.out)

    print("Input images:", file=ctx.out)
    if not config.input_images:
        print("  (none)", file=ctx.out)
    inputs = paths.inputs_dir(directory)
    for image in config.input_images:
        print(f"  {_shown(inputs / image)}", file=ctx.out)
    print("", file=ctx.out)

    try:
        entries = HistoryService(paths.history_dir(directory)).list_entries()
    except HistoryError:
        print("History: (load error)", file=ctx.out)
        return 0
    if not entries:
        print("History: none", file=ctx.out)
        return 0
    latest = entries[-1]
    print(f"History: {len(entries)} entries", file=ctx.out)
    print(f"  Latest: {latest.id[:8]}... ({latest.created_at[:10]})", file=ctx.out)
    return 0


def cmd_serve(args: argparse.Namespace, ctx: CommandContext) -> int:
    # gradio 导入较慢，只在 serve 时加载
    from modules.ui.layout import build_app

    project_root = find_project_root(ctx.cwd)
    app = build_app(ctx.config, project_root)
    app.queue()
    app.launch(
        server_name=args.host or ctx.config.server_host,
        server_port=args.port or ctx.config.server_port,
        share=False,
        inbrowser=False,
        allowed_paths=[str(project_root)],
    )
    return 0


# Parser ----------------------------------------------------------------------
def _add_prompt_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("-p", "--prompt", help="Prompt text")
    group.add_argument("-F", "--prompt-file", dest="prompt_file", help="Path to a prompt text file")


def _add_output_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--aspect", default="", help="Output aspect ratio, e.g. 1:1 or 16:9")
    parser.add_argument("--size", default="", help="Output image size (1K / 2K / 4K)")


def _add_entry_selector(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--latest", action="store_true", help="Use the latest history entry")
    group.add_argument("--id", help="History entry ID")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="picturebook", description="Image generation workbench")
    parser.add_argument("--env-file", dest="env_file", help="Path to a .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Also log to stderr")
    sub = parser.add_subparsers(dest="command")

    init = sub.add_parser("init", help="Initialize a project in the current directory")
    init.add_argument("--name", default="", help="Project name (defaults to the directory name)")
    init.set_defaults(handler=cmd_init)

    subproject = sub.add_parser("subproject", help="Manage subprojects")
    subproject_sub = subproject.add_subparsers(dest="subcommand")
    create = subproject_sub.add_parser("create", help="Create a subproject")
    create.add_argument("name")
    create.add_argument("--description", default="")
    create.set_defaults(handler=cmd_subproject_create)
    listing = subproject_sub.add_parser("list", help="List subprojects")
    listing.set_defaults(handler=cmd_subproject_list)

    generate = sub.add_parser("generate", help="Generate images in the current subproject")
    _add_prompt_arguments(generate)
    generate.add_argument(
        "-i", "--image", action="append", default=[], help="Additional input image (repeatable)"
    )
    _add_output_arguments(generate)
    generate.set_defaults(handler=cmd_generate)

    regenerate = sub.add_parser("regenerate", help="Generate again from a history entry")
    _add_entry_selector(regenerate)
    _add_output_arguments(regenerate)
    regenerate.set_defaults(handler=cmd_regenerate)

    edit = sub.add_parser("edit", help="Edit an output image of a history entry")
    _add_entry_selector(edit)
    edit_source = edit.add_mutually_exclusive_group()
    edit_source.add_argument("--edit-latest", dest="edit_latest", action="store_true",
                             help="Edit the output of the latest edit")
    edit_source.add_argument("--edit-id", dest="edit_id", help="Edit the output of this edit")
    _add_prompt_arguments(edit)
    _add_output_arguments(edit)
    edit.set_defaults(handler=cmd_edit)

    history = sub.add_parser("history", help="List history entries, newest first")
    history.add_argument("--limit", type=int, default=0, help="Show at most N entries")
    history.set_defaults(handler=cmd_history)

    status = sub.add_parser("status", help="Show the current project or subproject status")
    status.set_defaults(handler=cmd_status)

    serve = sub.add_parser("serve", help="Start the read-only history browser")
    serve.add_argument("--host", default="")
    serve.add_argument("--port", type=int, default=0)
    serve.set_defaults(handler=cmd_serve)

    return parser


def main(
    argv: Optional[Sequence[str]] = None,
    *,
    cwd: Optional[Path] = None,
    out: Optional[TextIO] = None,
    err: Optional[TextIO] = None,
    config: Optional[AppConfig] = None,
    generator: Optional[ImageGenerator] = None,
) -> int:
    """Run one command and return the exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    out = out or sys.stdout
    err = err or sys.stderr

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help(file=err)
        return 1

    try:
        if config is None:
            config = load_config(args.env_file)
            setup_logging(config, console=args.verbose)
    except (ValueError, OSError) as exc:
        print(f"error: {exc}", file=err)
        return 1

    ctx = CommandContext(
        config=config,
        cwd=Path(cwd) if cwd is not None else Path.cwd(),
        out=out,
        err=err,
        generator_factory=(lambda: generator) if generator is not None else (lambda: build_generator(config)),
    )
    try:
        return handler(args, ctx)
    except HistoryError as exc:
        _print_warnings(err, exc.warnings)
        print(f"error: {exc}", file=err)
    except (ConfigError, ProjectNotFoundError, NotInSubprojectError, ValueError, OSError) as exc:
        print(f"error: {exc}", file=err)
    except KeyboardInterrupt:
        print("error: interrupted", file=err)
        return 130
    return 1
