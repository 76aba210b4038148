"""Generation and edit workflows on top of the history store."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import List, Optional, Union

from modules.generation.spec import EditResult, EditSpec, GenerationSpec, RunResult
from modules.generation.validation import validate_edit_spec, validate_spec
from modules.history.errors import GenerationCancelled, GenerationFailedError, PersistenceError
from modules.history.models import (
    EDIT_PROMPT_FILE,
    PROMPT_FILE,
    SOURCE_EDIT,
    EditEntry,
    EditGeneration,
    EditSource,
    Entry,
)
from modules.pipelines.base import GenerateParams, GenerateResult, ImageGenerator
from modules.services.history_service import DirectoryStore, HistoryService
from modules.services.storage_service import StorageService

logger = logging.getLogger(__name__)


class GenerationService:
    """Run generations and edits, leaving no trace of failed attempts.

    Every workflow follows the same order: validate, write the prompt (and
    inputs) ahead of the generator call, call the generator, then write the
    outputs and finally the metadata. Any failure after the record directory
    was created removes that directory again.
    """

    def __init__(
        self,
        generator: ImageGenerator,
        storage: Optional[StorageService] = None,
        metadata_attempts: int = 2,
    ) -> None:
        self.generator = generator
        self.storage = storage or StorageService()
        self.metadata_attempts = max(1, metadata_attempts)

    # Run --------------------------------------------------------------------
    def run(
        self,
        spec: GenerationSpec,
        history_dir: Union[str, Path],
        cancel_event: Optional[threading.Event] = None,
    ) -> RunResult:
        """Generate images and record them as a new history entry."""
        validate_spec(spec)
        history = HistoryService(history_dir, storage=self.storage)

        source: Optional[Entry] = None
        if spec.source_entry_id:
            source = history.get_entry_by_id(spec.source_entry_id)
            entry = Entry.from_source(source)
        else:
            entry = Entry.new()

        entry.generation.prompt_file = PROMPT_FILE
        entry.generation.input_images = list(spec.input_image_names) or [
            Path(path).name for path in spec.image_paths
        ]
        entry.generation.aspect_ratio = spec.aspect_ratio
        entry.generation.image_size = spec.image_size
        entry.generation.context_file = ""
        entry.generation.character_file = ""

        warnings: List[str] = []
        try:
            history.save_prompt(entry, spec.prompt)
        except PersistenceError as exc:
            self._rollback(history, entry, warnings, str(exc))
            raise PersistenceError(f"failed to save prompt: {exc}", warnings) from exc

        try:
            history.save_input_images(entry, spec.image_paths)
        except PersistenceError as exc:
            self._warn(warnings, str(exc))

        self._save_snapshots(history, entry, spec, source, warnings)

        params = GenerateParams(
            model=spec.model,
            prompt=spec.prompt,
            image_paths=list(spec.image_paths),
            aspect_ratio=spec.aspect_ratio,
            image_size=spec.image_size,
        )
        try:
            result = self._call_generator(params, cancel_event)
        except BaseException as exc:
            self._rollback(history, entry, warnings, f"failed to generate image: {exc}")
            if not isinstance(exc, Exception):
                raise
            raise GenerationFailedError(f"failed to generate image: {exc}", warnings) from exc

        try:
            saved = self.storage.save_images(result.images, history.entry_dir(entry.id))
        except PersistenceError as exc:
            self._rollback(history, entry, warnings, str(exc))
            raise PersistenceError(f"failed to save generated images: {exc}", warnings) from exc

        entry.result.success = True
        entry.result.output_images = saved
        entry.result.token_usage = result.token_usage
        self._finalize(history, entry, warnings)

        logger.info("Saved history entry %s with %d image(s)", entry.id, len(saved))
        return RunResult(
            entry_id=entry.id,
            output_images=list(saved),
            text=result.text,
            token_usage=result.token_usage,
            warnings=warnings,
        )

    # Edit -------------------------------------------------------------------
    def edit(
        self,
        spec: EditSpec,
        history_dir: Union[str, Path],
        cancel_event: Optional[threading.Event] = None,
    ) -> EditResult:
        """Edit one existing output image and record it under its entry."""
        validate_edit_spec(spec)
        history = HistoryService(history_dir, storage=self.storage)
        edits = history.edits(spec.entry_id)
        if spec.source_type == SOURCE_EDIT:
            edits.get_edit_by_id(spec.source_edit_id)

        edit = EditEntry.new()
        edit.source = EditSource(
            type=spec.source_type,
            edit_id=spec.source_edit_id,
            output=spec.source_output,
        )
        edit.generation = EditGeneration(
            prompt_file=EDIT_PROMPT_FILE,
            aspect_ratio=spec.aspect_ratio,
            image_size=spec.image_size,
        )

        warnings: List[str] = []
        try:
            edits.save_prompt(edit, spec.prompt)
        except PersistenceError as exc:
            self._rollback(edits, edit, warnings, str(exc))
            raise PersistenceError(f"failed to save edit prompt: {exc}", warnings) from exc

        params = GenerateParams(
            model=spec.model,
            prompt=spec.prompt,
            image_paths=[spec.source_image_path],
            aspect_ratio=spec.aspect_ratio,
            image_size=spec.image_size,
        )
        try:
            result = self._call_generator(params, cancel_event)
        except BaseException as exc:
            self._rollback(edits, edit, warnings, f"failed to edit image: {exc}")
            if not isinstance(exc, Exception):
                raise
            raise GenerationFailedError(f"failed to edit image: {exc}", warnings) from exc

        try:
            saved = self.storage.save_images(result.images, edits.record_dir(edit.id))
        except PersistenceError as exc:
            self._rollback(edits, edit, warnings, str(exc))
            raise PersistenceError(f"failed to save edited images: {exc}", warnings) from exc

        edit.result.success = True
        edit.result.output_images = saved
        edit.result.token_usage = result.token_usage
        self._finalize(edits, edit, warnings)

        logger.info("Saved edit %s of entry %s with %d image(s)", edit.id, spec.entry_id, len(saved))
        return EditResult(
            edit_id=edit.id,
            output_images=list(saved),
            text=result.text,
            token_usage=result.token_usage,
            warnings=warnings,
        )

    # Internal helpers -------------------------------------------------------
    def _call_generator(
        self, params: GenerateParams, cancel_event: Optional[threading.Event]
    ) -> GenerateResult:
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelled("generation cancelled")
        result = self.generator.generate(params, cancel_event=cancel_event)
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelled("generation cancelled")
        return result

    def _save_snapshots(
        self,
        history: HistoryService,
        entry: Entry,
        spec: GenerationSpec,
        source: Optional[Entry],
        warnings: List[str],
    ) -> None:
        """Copy context/character files; failures only produce warnings."""
        context_source = spec.context_path
        character_source = spec.character_path
        if source is not None:
            if context_source is None:
                context_source = history.snapshot_path(source, source.generation.context_file)
            if character_source is None:
                character_source = history.snapshot_path(source, source.generation.character_file)

        if context_source is not None:
            try:
                entry.generation.context_file = history.save_context_file(entry, context_source)
            except PersistenceError as exc:
                self._warn(warnings, f"failed to save context file: {exc}")
        if character_source is not None:
            try:
                entry.generation.character_file = history.save_character_file(entry, character_source)
            except PersistenceError as exc:
                self._warn(warnings, f"failed to save character file: {exc}")

    def _finalize(self, store: DirectoryStore, record, warnings: List[str]) -> None:
        """Write metadata; a record whose metadata cannot be written is rolled back."""
        for attempt in range(1, self.metadata_attempts + 1):
            try:
                store.save(record)
                return
            except PersistenceError as exc:
                if attempt < self.metadata_attempts:
                    logger.warning("Retrying metadata write for %s: %s", record.id, exc)
                    continue
                self._rollback(store, record, warnings, str(exc))
                raise PersistenceError(f"failed to save history metadata: {exc}", warnings) from exc

    def _rollback(self, store: DirectoryStore, record, warnings: List[str], reason: str) -> None:
        """Remove the record directory; leave a failed-state record if that fails."""
        try:
            store.cleanup(record)
            return
        except PersistenceError as exc:
            self._warn(warnings, f"failed to clean up {store.label} directory: {exc}")

        record.result.success = False
        record.result.error_message = reason
        try:
            store.save(record)
        except PersistenceError as exc:
            self._warn(warnings, f"failed to record failed state for {record.id}: {exc}")

    @staticmethod
    def _warn(warnings: List[str], message: str) -> None:
        logger.warning(message)
        warnings.append(message)
