"""GenerationService 测试：生成、重新生成、编辑与回滚。"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from conftest import PNG_BYTES, DummyGenerator
from modules.generation.service import GenerationService
from modules.generation.spec import EditSpec, GenerationSpec
from modules.history.errors import (
    GenerationFailedError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from modules.history.ids import new_id
from modules.history.models import CHARACTER_FILE, CONTEXT_FILE, Entry
from modules.pipelines.base import GeneratedImage
from modules.services.history_service import META_FILE, DirectoryStore, HistoryService


def _spec(input_image: Path, **overrides) -> GenerationSpec:
    values = dict(model="test-model", prompt="a red ball", image_paths=[str(input_image)])
    values.update(overrides)
    return GenerationSpec(**values)


def _dir_names(directory: Path) -> list[str]:
    return sorted(p.name for p in directory.iterdir()) if directory.exists() else []


def _edit_spec(history_dir: Path, entry_id: str, **overrides) -> EditSpec:
    history = HistoryService(history_dir)
    entry = history.get_entry_by_id(entry_id)
    output = entry.result.output_images[0]
    values = dict(
        model="test-model",
        prompt="make it blue",
        source_image_path=str(history.entry_dir(entry_id) / output),
        entry_id=entry_id,
        source_output=output,
    )
    values.update(overrides)
    return EditSpec(**values)


# Run ----------------------------------------------------------------------------
def test_run_with_two_outputs(history_dir, input_image):
    generator = DummyGenerator(
        images=[GeneratedImage(PNG_BYTES, "image/png"), GeneratedImage(b"jpeg", "image/jpeg")]
    )
    service = GenerationService(generator)

    result = service.run(_spec(input_image, aspect_ratio="16:9", image_size="2K"), history_dir)

    assert len(result.output_images) == 2
    history = HistoryService(history_dir)
    entries = history.list_entries()
    assert [e.id for e in entries] == [result.entry_id]

    entry_dir = history_dir / result.entry_id
    names = _dir_names(entry_dir)
    assert len([n for n in names if n.startswith("output-")]) == 2
    assert META_FILE in names and "prompt.txt" in names
    assert input_image.name in names

    entry = entries[0]
    assert entry.result.success is True
    assert entry.result.output_images == result.output_images
    assert entry.result.token_usage.total == 30
    assert entry.generation.prompt_file == "prompt.txt"
    assert entry.generation.input_images == [input_image.name]
    assert entry.generation.aspect_ratio == "16:9"
    assert entry.generation.image_size == "2K"

    params = generator.calls[0]
    assert params.model == "test-model"
    assert params.prompt == "a red ball"
    assert params.image_paths == [str(input_image)]


def test_run_generator_failure_rolls_back(history_dir, input_image):
    service = GenerationService(DummyGenerator(error=RuntimeError("quota exceeded")))

    with pytest.raises(GenerationFailedError, match="failed to generate image") as excinfo:
        service.run(_spec(input_image), history_dir)

    assert "quota exceeded" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert HistoryService(history_dir).list_entries() == []
    assert _dir_names(history_dir) == []


def test_run_failure_leaves_existing_entries_untouched(history_dir, input_image):
    GenerationService(DummyGenerator()).run(_spec(input_image), history_dir)
    before = _dir_names(history_dir)

    with pytest.raises(GenerationFailedError):
        GenerationService(DummyGenerator(error=RuntimeError("boom"))).run(
            _spec(input_image), history_dir
        )

    assert _dir_names(history_dir) == before


def test_run_validation_failure_has_no_side_effects(history_dir, tmp_path):
    generator = DummyGenerator()
    service = GenerationService(generator)

    with pytest.raises(ValidationError):
        service.run(_spec(tmp_path / "missing.png"), history_dir)
    with pytest.raises(ValidationError):
        service.run(_spec(tmp_path / "missing.png", prompt=""), history_dir)

    assert generator.calls == []
    assert _dir_names(history_dir) == []


def test_run_without_images_in_response_rolls_back(history_dir, input_image):
    service = GenerationService(DummyGenerator(images=[]))

    with pytest.raises(PersistenceError, match="no image response found"):
        service.run(_spec(input_image), history_dir)

    assert _dir_names(history_dir) == []


def test_runs_are_listed_in_call_order(history_dir, input_image):
    service = GenerationService(DummyGenerator())

    ids = [service.run(_spec(input_image), history_dir).entry_id for _ in range(5)]

    assert [e.id for e in HistoryService(history_dir).list_entries()] == ids
    assert ids == sorted(ids)


def test_run_input_copy_failure_is_warning(history_dir, input_image, monkeypatch):
    service = GenerationService(DummyGenerator())

    def _fail(self, entry, image_paths):
        raise PersistenceError("failed to save input images: disk full")

    monkeypatch.setattr(HistoryService, "save_input_images", _fail)

    result = service.run(_spec(input_image), history_dir)

    assert any("disk full" in message for message in result.warnings)
    assert HistoryService(history_dir).get_entry_by_id(result.entry_id).result.success


def test_run_snapshots_context_and_character(history_dir, input_image, tmp_path):
    context = tmp_path / "context.md"
    context.write_text("# story", encoding="utf-8")
    character = tmp_path / "hero.md"
    character.write_text("# hero", encoding="utf-8")

    result = GenerationService(DummyGenerator()).run(
        _spec(input_image, context_path=str(context), character_path=str(character)), history_dir
    )

    entry = HistoryService(history_dir).get_entry_by_id(result.entry_id)
    assert entry.generation.context_file == CONTEXT_FILE
    assert entry.generation.character_file == CHARACTER_FILE
    assert (history_dir / entry.id / CHARACTER_FILE).read_text(encoding="utf-8") == "# hero"


def test_run_missing_context_file_is_warning(history_dir, input_image, tmp_path):
    result = GenerationService(DummyGenerator()).run(
        _spec(input_image, context_path=str(tmp_path / "absent.md")), history_dir
    )

    assert result.warnings
    entry = HistoryService(history_dir).get_entry_by_id(result.entry_id)
    assert entry.generation.context_file == ""


# Regenerate -----------------------------------------------------------------------
def test_regenerate_links_to_source(history_dir, input_image, tmp_path):
    context = tmp_path / "context.md"
    context.write_text("ctx", encoding="utf-8")
    service = GenerationService(DummyGenerator())
    first = service.run(
        _spec(input_image, context_path=str(context), aspect_ratio="1:1"), history_dir
    )
    history = HistoryService(history_dir)
    source = history.get_entry_by_id(first.entry_id)

    second = service.run(
        _spec(
            input_image,
            image_paths=[str(p) for p in history.input_image_paths(source)],
            input_image_names=list(source.generation.input_images),
            source_entry_id=source.id,
            aspect_ratio="1:1",
        ),
        history_dir,
    )

    child = history.get_entry_by_id(second.entry_id)
    assert child.id != source.id
    assert child.generation.input_images == source.generation.input_images
    assert child.generation.context_file == source.generation.context_file == CONTEXT_FILE
    assert (history_dir / child.id / CONTEXT_FILE).read_text(encoding="utf-8") == "ctx"


def test_regenerate_unknown_source_has_no_side_effects(history_dir, input_image):
    generator = DummyGenerator()

    with pytest.raises(NotFoundError):
        GenerationService(generator).run(_spec(input_image, source_entry_id=new_id()), history_dir)

    assert generator.calls == []
    assert _dir_names(history_dir) == []


def test_entry_from_source_deep_copies_lists():
    parent = Entry.new()
    parent.generation.input_images = ["a.png", "b.png"]
    parent.generation.context_file = CONTEXT_FILE

    child = Entry.from_source(parent)
    parent.generation.input_images.append("c.png")

    assert child.id != parent.id
    assert child.generation.input_images == ["a.png", "b.png"]
    assert child.generation.context_file == CONTEXT_FILE
    assert child.result.output_images == []


# Edit ---------------------------------------------------------------------------
def test_edit_chain(history_dir, input_image):
    generator = DummyGenerator()
    service = GenerationService(generator)
    run = service.run(_spec(input_image), history_dir)

    first = service.edit(_edit_spec(history_dir, run.entry_id), history_dir)

    edits = HistoryService(history_dir).edits(run.entry_id)
    first_edit = edits.get_edit_by_id(first.edit_id)
    second = service.edit(
        _edit_spec(
            history_dir,
            run.entry_id,
            source_type="edit",
            source_edit_id=first.edit_id,
            source_output=first_edit.result.output_images[0],
            source_image_path=str(edits.edit_output_path(first.edit_id, first.output_images[0])),
        ),
        history_dir,
    )

    listed = edits.list_edits()
    assert [e.id for e in listed] == [first.edit_id, second.edit_id]
    assert listed[0].source.type == "generate" and listed[0].source.edit_id == ""
    assert listed[1].source.type == "edit" and listed[1].source.edit_id == first.edit_id
    assert listed[1].generation.prompt_file == "edit-prompt.txt"
    assert edits.load_prompt(second.edit_id) == "make it blue"
    # 编辑请求只发送一张图片
    assert [len(call.image_paths) for call in generator.calls] == [1, 1, 1]
    assert HistoryService(history_dir).list_entries()[0].id == run.entry_id


def test_edit_failure_rolls_back(history_dir, input_image):
    run = GenerationService(DummyGenerator()).run(_spec(input_image), history_dir)
    service = GenerationService(DummyGenerator(error=RuntimeError("safety block")))

    with pytest.raises(GenerationFailedError, match="failed to edit image"):
        service.edit(_edit_spec(history_dir, run.entry_id), history_dir)

    edits = HistoryService(history_dir).edits(run.entry_id)
    assert edits.list_edits() == []
    assert _dir_names(history_dir / run.entry_id / "edits") == []


def test_edit_unknown_entry(history_dir, input_image):
    with pytest.raises(NotFoundError):
        GenerationService(DummyGenerator()).edit(
            EditSpec(
                model="m",
                prompt="p",
                source_image_path=str(input_image),
                entry_id=new_id(),
                source_output=input_image.name,
            ),
            history_dir,
        )


def test_edit_unknown_source_edit(history_dir, input_image):
    run = GenerationService(DummyGenerator()).run(_spec(input_image), history_dir)
    generator = DummyGenerator()

    with pytest.raises(NotFoundError):
        GenerationService(generator).edit(
            _edit_spec(history_dir, run.entry_id, source_type="edit", source_edit_id=new_id()),
            history_dir,
        )

    assert generator.calls == []


# Cancellation and persistence failures ------------------------------------------
def test_cancel_before_call_rolls_back(history_dir, input_image):
    generator = DummyGenerator()
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(GenerationFailedError, match="cancelled"):
        GenerationService(generator).run(_spec(input_image), history_dir, cancel_event=cancel)

    assert generator.calls == []
    assert _dir_names(history_dir) == []


def test_cancel_during_call_discards_result(history_dir, input_image):
    cancel = threading.Event()
    generator = DummyGenerator(on_call=lambda params, event: event.set())

    with pytest.raises(GenerationFailedError):
        GenerationService(generator).run(_spec(input_image), history_dir, cancel_event=cancel)

    assert _dir_names(history_dir) == []


def test_keyboard_interrupt_rolls_back_and_propagates(history_dir, input_image):
    service = GenerationService(DummyGenerator(error=KeyboardInterrupt()))

    with pytest.raises(KeyboardInterrupt):
        service.run(_spec(input_image), history_dir)

    assert _dir_names(history_dir) == []


def test_metadata_write_is_retried_once(history_dir, input_image, monkeypatch):
    original = DirectoryStore.save
    attempts = []

    def _flaky(self, record):
        attempts.append(record.id)
        if len(attempts) == 1:
            raise PersistenceError("failed to write meta.yaml: transient")
        return original(self, record)

    monkeypatch.setattr(DirectoryStore, "save", _flaky)

    result = GenerationService(DummyGenerator()).run(_spec(input_image), history_dir)

    assert len(attempts) == 2
    assert HistoryService(history_dir).get_entry_by_id(result.entry_id).result.success


def test_metadata_write_failure_rolls_back(history_dir, input_image, monkeypatch):
    def _broken(self, record):
        raise PersistenceError("failed to write meta.yaml: read-only")

    monkeypatch.setattr(DirectoryStore, "save", _broken)

    with pytest.raises(PersistenceError, match="failed to save history metadata"):
        GenerationService(DummyGenerator()).run(_spec(input_image), history_dir)

    assert _dir_names(history_dir) == []


def test_cleanup_failure_records_failed_state(history_dir, input_image, monkeypatch):
    def _stuck(self, record):
        raise PersistenceError("failed to remove directory: busy")

    monkeypatch.setattr(DirectoryStore, "cleanup", _stuck)

    with pytest.raises(GenerationFailedError) as excinfo:
        GenerationService(DummyGenerator(error=RuntimeError("boom"))).run(
            _spec(input_image), history_dir
        )

    assert any("busy" in message for message in excinfo.value.warnings)
    entries = HistoryService(history_dir).list_entries()
    assert len(entries) == 1
    assert entries[0].result.success is False
    assert "failed to generate image" in entries[0].result.error_message
