# mdai: Pydantic v2 models for conversation messages, file patches, patch results and turns. These are the
# single source of truth for shapes shared by the markdown codec, the patch engine and the tools.

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .fs import normalize_path


class CustomBaseModel(BaseModel):
    """Pydantic base model configured to forbid unknown fields for strict validation."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class Role(str, Enum):
    system = "system"
    user = "user"
    assistant = "assistant"
    tool = "tool"


# -----------------------------
# Content parts
# -----------------------------

class TextPart(CustomBaseModel):
    type: Literal["text"] = "text"
    text: str


class FilePart(CustomBaseModel):
    """Inline reference to a file on disk (user messages only)."""
    type: Literal["file"] = "file"
    path: str


class ImagePart(CustomBaseModel):
    """Inline reference to an image on disk (user messages only)."""
    type: Literal["image"] = "image"
    path: str


class ToolCallPart(CustomBaseModel):
    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str = Field(..., alias="toolCallId", description="Correlates the call with its result")
    tool_name: str = Field(..., alias="toolName", description="Registered tool name")
    args: Dict[str, Any] = Field(..., description="Tool arguments object")


class ToolResultPart(CustomBaseModel):
    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str = Field(..., alias="toolCallId", description="Id of the call this result answers")
    tool_name: str = Field(..., alias="toolName", description="Registered tool name")
    result: Dict[str, Any] = Field(..., description="Tool result object")


ContentPart = Annotated[
    Union[TextPart, FilePart, ImagePart, ToolCallPart, ToolResultPart],
    Field(discriminator="type"),
]

MessageContent = Union[str, List[ContentPart]]


def trim_blank_lines(text: str) -> str:
    """Drop whitespace-only lines from both ends of text; inner lines are untouched."""
    lines = text.split("\n")
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines)


def canonical_content(content: MessageContent) -> MessageContent:
    """
    Return the canonical form of message content.

    Text loses leading and trailing blank lines. Blank text parts are dropped
    and adjacent text parts are merged with a blank line, mirroring the
    serializer's layout. A list left with a single text part collapses to a
    bare string, and an empty list becomes "".
    """
    if isinstance(content, str):
        return trim_blank_lines(content)
    parts: List[Any] = []
    for part in content:
        if isinstance(part, TextPart):
            text = trim_blank_lines(part.text)
            if not text:
                continue
            if parts and isinstance(parts[-1], TextPart):
                text = parts[-1].text + "\n\n" + text
                parts.pop()
            part = TextPart(text=text)
        parts.append(part)
    if not parts:
        return ""
    if len(parts) == 1 and isinstance(parts[0], TextPart):
        return parts[0].text
    return parts


class Message(CustomBaseModel):
    role: Role
    content: MessageContent = ""

    @model_validator(mode="after")
    def _canonicalize(self) -> "Message":
        self.content = canonical_content(self.content)
        if isinstance(self.content, str):
            return self
        if self.role == Role.system:
            raise ValueError("system messages only support string content")
        for part in self.content:
            if isinstance(part, ToolCallPart) and self.role != Role.assistant:
                raise ValueError("Tool calls are only allowed in assistant messages")
            if isinstance(part, ToolResultPart) and self.role != Role.tool:
                raise ValueError("Tool results are only allowed in tool messages")
            if isinstance(part, (FilePart, ImagePart)) and self.role != Role.user:
                raise ValueError(f"{part.type} parts are only allowed in user messages")
        return self

    def parts(self) -> List[Any]:
        """Return content as a list of parts (a string becomes one text part)."""
        if isinstance(self.content, str):
            return [TextPart(text=self.content)] if self.content else []
        return list(self.content)

    def tool_calls(self) -> List[ToolCallPart]:
        return [p for p in self.parts() if isinstance(p, ToolCallPart)]

    def tool_results(self) -> List[ToolResultPart]:
        return [p for p in self.parts() if isinstance(p, ToolResultPart)]


# -----------------------------
# File patches
# -----------------------------

class _PathPatch(CustomBaseModel):
    path: str = Field(..., description="Project-relative file path")

    @field_validator("path")
    @classmethod
    def _normalize_path(cls, v: str) -> str:
        return normalize_path(v)


class AddPatch(_PathPatch):
    type: Literal["add"] = "add"
    content: str = Field(..., description="Content of the new file")


class DeletePatch(_PathPatch):
    type: Literal["delete"] = "delete"


class UpdatePatch(_PathPatch):
    type: Literal["update"] = "update"
    search: str = Field(..., description="Existing lines to replace (whitespace-insensitive)")
    replace: str = Field(..., description="Replacement lines")


class MovePatch(_PathPatch):
    type: Literal["move"] = "move"
    to: str = Field(..., description="Destination path")

    @field_validator("to")
    @classmethod
    def _normalize_to(cls, v: str) -> str:
        return normalize_path(v)


class ReplacePatch(_PathPatch):
    type: Literal["replace"] = "replace"
    content: str = Field(..., description="Full new content of an existing file")


FilePatch = Annotated[
    Union[AddPatch, DeletePatch, UpdatePatch, MovePatch, ReplacePatch],
    Field(discriminator="type"),
]


class PatchResult(CustomBaseModel):
    ok: bool
    path: str
    status: str
    reason: Optional[str] = None

    def to_result(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# -----------------------------
# Turns
# -----------------------------

class UserTurn(CustomBaseModel):
    actor: Literal["user"] = "user"
    new_heading: bool


class AssistantTurn(CustomBaseModel):
    actor: Literal["assistant"] = "assistant"
    confirm: bool


NextTurn = Union[UserTurn, AssistantTurn]
