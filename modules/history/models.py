"""Persisted data model for generation entries and their edits."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from modules.history.ids import new_id

PROMPT_FILE = "prompt.txt"
CONTEXT_FILE = "context.md"
CHARACTER_FILE = "character.md"
EDIT_PROMPT_FILE = "edit-prompt.txt"

SOURCE_GENERATE = "generate"
SOURCE_EDIT = "edit"


def utc_timestamp() -> str:
    """Return the current time as an RFC 3339 UTC string with second precision."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _as_str(value: Any) -> str:
    return "" if value is None else str(value)


def _as_int(value: Any) -> int:
    if value in (None, ""):
        return 0
    return int(value)


def _as_str_list(value: Any) -> list[str]:
    if not value:
        return []
    if not isinstance(value, list):
        raise ValueError(f"expected a list, got {type(value).__name__}")
    return [str(item) for item in value]


def _as_mapping(value: Any, name: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be a mapping")
    return value


@dataclass(slots=True)
class TokenUsage:
    """Token accounting reported by the generator, stored verbatim."""

    prompt: int = 0
    candidates: int = 0
    total: int = 0
    cached: int = 0
    thoughts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "prompt": self.prompt,
            "candidates": self.candidates,
            "total": self.total,
        }
        if self.cached:
            data["cached"] = self.cached
        if self.thoughts:
            data["thoughts"] = self.thoughts
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "TokenUsage":
        data = _as_mapping(data, "token_usage")
        return cls(
            prompt=_as_int(data.get("prompt")),
            candidates=_as_int(data.get("candidates")),
            total=_as_int(data.get("total")),
            cached=_as_int(data.get("cached")),
            thoughts=_as_int(data.get("thoughts")),
        )


@dataclass(slots=True)
class Result:
    """Outcome of a generation or edit, written once when the attempt concludes."""

    success: bool = False
    output_images: list[str] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    error_message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.output_images:
            data["output_images"] = list(self.output_images)
        if self.token_usage != TokenUsage():
            data["token_usage"] = self.token_usage.to_dict()
        if self.error_message:
            data["error_message"] = self.error_message
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Result":
        data = _as_mapping(data, "result")
        return cls(
            success=bool(data.get("success", False)),
            output_images=_as_str_list(data.get("output_images")),
            token_usage=TokenUsage.from_dict(data.get("token_usage")),
            error_message=_as_str(data.get("error_message")),
        )


@dataclass(slots=True)
class Generation:
    """Inputs of a generation attempt, fixed when the entry is created."""

    prompt_file: str = ""
    input_images: list[str] = field(default_factory=list)
    context_file: str = ""
    character_file: str = ""
    aspect_ratio: str = ""
    image_size: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "prompt_file": self.prompt_file,
            "input_images": list(self.input_images),
        }
        for key in ("context_file", "character_file", "aspect_ratio", "image_size"):
            value = getattr(self, key)
            if value:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Generation":
        data = _as_mapping(data, "generation")
        return cls(
            prompt_file=_as_str(data.get("prompt_file")),
            input_images=_as_str_list(data.get("input_images")),
            context_file=_as_str(data.get("context_file")),
            character_file=_as_str(data.get("character_file")),
            aspect_ratio=_as_str(data.get("aspect_ratio")),
            image_size=_as_str(data.get("image_size")),
        )


@dataclass(slots=True)
class Entry:
    """One generation attempt; its id doubles as the directory name."""

    id: str
    created_at: str
    generation: Generation = field(default_factory=Generation)
    result: Result = field(default_factory=Result)

    @classmethod
    def new(cls) -> "Entry":
        """Create an empty entry with a fresh time-ordered id."""
        return cls(id=new_id(), created_at=utc_timestamp())

    @classmethod
    def from_source(cls, source: "Entry") -> "Entry":
        """Create a new entry that reuses the generation inputs of ``source``.

        The lists are copied, so later changes to the parent never leak into
        the child. Output parameters (aspect ratio, size) are copied as well;
        the result starts empty.
        """
        entry = cls.new()
        entry.generation = Generation(
            prompt_file=source.generation.prompt_file,
            input_images=list(source.generation.input_images),
            context_file=source.generation.context_file,
            character_file=source.generation.character_file,
            aspect_ratio=source.generation.aspect_ratio,
            image_size=source.generation.image_size,
        )
        return entry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "generation": self.generation.to_dict(),
            "result": self.result.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Entry":
        data = _as_mapping(data, "entry")
        entry_id = _as_str(data.get("id"))
        if not entry_id:
            raise ValueError("entry id is missing")
        return cls(
            id=entry_id,
            created_at=_as_str(data.get("created_at")),
            generation=Generation.from_dict(data.get("generation")),
            result=Result.from_dict(data.get("result")),
        )


@dataclass(slots=True)
class EditSource:
    """Backward pointer to the artifact an edit was derived from."""

    type: str = SOURCE_GENERATE
    edit_id: str = ""
    output: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type}
        if self.edit_id:
            data["edit_id"] = self.edit_id
        data["output"] = self.output
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "EditSource":
        data = _as_mapping(data, "source")
        return cls(
            type=_as_str(data.get("type")),
            edit_id=_as_str(data.get("edit_id")),
            output=_as_str(data.get("output")),
        )


@dataclass(slots=True)
class EditGeneration:
    """Parameters of an edit request."""

    prompt_file: str = EDIT_PROMPT_FILE
    aspect_ratio: str = ""
    image_size: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"prompt_file": self.prompt_file}
        if self.aspect_ratio:
            data["aspect_ratio"] = self.aspect_ratio
        if self.image_size:
            data["image_size"] = self.image_size
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "EditGeneration":
        data = _as_mapping(data, "generation")
        return cls(
            prompt_file=_as_str(data.get("prompt_file")),
            aspect_ratio=_as_str(data.get("aspect_ratio")),
            image_size=_as_str(data.get("image_size")),
        )


@dataclass(slots=True)
class EditEntry:
    """One edit of an output image, stored under its parent entry."""

    id: str
    created_at: str
    source: EditSource = field(default_factory=EditSource)
    generation: EditGeneration = field(default_factory=EditGeneration)
    result: Result = field(default_factory=Result)

    @classmethod
    def new(cls) -> "EditEntry":
        return cls(id=new_id(), created_at=utc_timestamp())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "source": self.source.to_dict(),
            "generation": self.generation.to_dict(),
            "result": self.result.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "EditEntry":
        data = _as_mapping(data, "edit entry")
        edit_id = _as_str(data.get("id"))
        if not edit_id:
            raise ValueError("edit id is missing")
        return cls(
            id=edit_id,
            created_at=_as_str(data.get("created_at")),
            source=EditSource.from_dict(data.get("source")),
            generation=EditGeneration.from_dict(data.get("generation")),
            result=Result.from_dict(data.get("result")),
        )


def first_output(result: Result) -> Optional[str]:
    """Return the first output image name, or None when there is none."""
    return result.output_images[0] if result.output_images else None
