import json
from typing import Any, Dict, List

from pydantic import BaseModel, Field, ValidationError


class MalformedResponse(ValueError):
    pass


class InvalidInstruction(ValueError):
    pass


class FileEntry(BaseModel):
    path: str
    content: str


class PatchInstruction(BaseModel):
    lineNumber: int
    oldText: str
    newText: str


class FilePatch(BaseModel):
    file: str
    instructions: List[PatchInstruction] = Field(default_factory=list)


class InstructionSet(BaseModel):
    """Decoded model turn. Items are kept raw and validated one by one when applied."""
    files: List[Any] = Field(default_factory=list)
    patches: List[Any] = Field(default_factory=list)
    commands: List[Any] = Field(default_factory=list)


def decode_instruction_set(raw: str) -> InstructionSet:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedResponse(f"Could not parse JSON. {e}") from e
    if not isinstance(data, dict):
        raise MalformedResponse("Expected a JSON object with files/patches/commands.")
    # Explicit nulls count as absent.
    fields: Dict[str, Any] = {k: data[k] for k in ("files", "patches", "commands") if data.get(k) is not None}
    try:
        return InstructionSet(**fields)
    except ValidationError as e:
        raise MalformedResponse(f"Unexpected instruction shape: {e}") from e


def _validate(model: Any, item: Any) -> Any:
    if not isinstance(item, dict):
        raise InvalidInstruction(f"{model.__name__} must be an object, got {type(item).__name__}")
    try:
        return model(**item)
    except ValidationError as e:
        raise InvalidInstruction(f"Invalid {model.__name__}: {e}") from e


def parse_file_entry(item: Any) -> FileEntry:
    return _validate(FileEntry, item)


def parse_file_patch(item: Any) -> FilePatch:
    return _validate(FilePatch, item)


def parse_command(item: Any) -> str:
    if not isinstance(item, str) or not item.strip():
        raise InvalidInstruction(f"Command must be a non-empty string, got {item!r}")
    return item.strip()
