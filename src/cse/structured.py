"""Typed payloads exchanged between the remote producer and the apply engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.type_adapter import TypeAdapter

__all__ = [
    "CHANGE_SET_ADAPTER",
    "ChangeOperation",
    "ChangeSet",
    "CreateOperation",
    "DeleteOperation",
    "FileSnapshot",
    "ModifyOperation",
    "MoveOperation",
    "ProducerRequest",
    "operation_paths",
]


@dataclass(slots=True, frozen=True)
class FileSnapshot:
    """Workspace file captured at scan time for staleness comparison."""

    path: str
    content: str
    checksum: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "content": self.content, "checksum": self.checksum}


class OperationModel(BaseModel):
    """Base model for change operations; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    explanation: Optional[str] = None


class ModifyOperation(OperationModel):
    """Apply a unified diff to an existing file."""

    operation: Literal["modify"] = "modify"
    path: str = Field(min_length=1, alias="filePath")
    diff: str


class CreateOperation(OperationModel):
    """Create a file with the given full content."""

    operation: Literal["create"] = "create"
    path: str = Field(min_length=1, alias="filePath")
    content: str
    overwrite: bool = False


class DeleteOperation(OperationModel):
    """Remove a file; removing an absent file is not an error."""

    operation: Literal["delete"] = "delete"
    path: str = Field(min_length=1, alias="filePath")


class MoveOperation(OperationModel):
    """Rename ``old_path`` to ``new_path``."""

    operation: Literal["move"] = "move"
    old_path: str = Field(min_length=1, alias="oldPath")
    new_path: str = Field(min_length=1, alias="newPath")

    @property
    def path(self) -> str:
        return self.new_path


ChangeOperation = Annotated[
    Union[ModifyOperation, CreateOperation, DeleteOperation, MoveOperation],
    Field(discriminator="operation"),
]


class ChangeSet(BaseModel):
    """Full ordered list of file operations proposed for one request."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    summary: str = Field(default="", alias="reasoning")
    changes: List[ChangeOperation] = Field(default_factory=list)


CHANGE_SET_ADAPTER: TypeAdapter[ChangeSet] = TypeAdapter(ChangeSet)


@dataclass(slots=True)
class ProducerRequest:
    """Input handed to the remote change-set producer."""

    prompt: str
    files: list[FileSnapshot] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "files": [
                {"filePath": snapshot.path, "content": snapshot.content, "checksum": snapshot.checksum}
                for snapshot in self.files
            ],
            "diagnostics": list(self.diagnostics),
        }


def operation_paths(operation: Any) -> tuple[str, ...]:
    """Return every workspace path an operation touches."""
    if isinstance(operation, MoveOperation):
        return (operation.old_path, operation.new_path)
    return (operation.path,)
