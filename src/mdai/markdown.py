# mdai: Markdown <-> message codec. Level-2 role headings open messages, tool calls and results travel as
# fenced JSON blocks (optionally Brotli-compressed), everything else is kept as the exact source text.

import base64
import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

import brotli
from markdown_it import MarkdownIt
from markdown_it.token import Token
from pydantic import ValidationError

from .errors import MalformedInput, UnsupportedContent, should_never_happen
from .models import (
    Message,
    MessageContent,
    Role,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    trim_blank_lines,
)

logger = logging.getLogger(__name__)

_md = MarkdownIt("commonmark")

FENCE_TOOL_CALL = "tool-call"
FENCE_TOOL_RESULT = "tool-result"
FENCE_TOOL_CALL_COMPRESSED = "tool-call-compressed"
FENCE_TOOL_RESULT_COMPRESSED = "tool-result-compressed"

_TOOL_FENCES = {
    FENCE_TOOL_CALL: (ToolCallPart, Role.assistant, "args", False),
    FENCE_TOOL_CALL_COMPRESSED: (ToolCallPart, Role.assistant, "args", True),
    FENCE_TOOL_RESULT: (ToolResultPart, Role.tool, "result", False),
    FENCE_TOOL_RESULT_COMPRESSED: (ToolResultPart, Role.tool, "result", True),
}

_ROLE_ERRORS = {
    Role.assistant: "Tool calls are only allowed in assistant messages",
    Role.tool: "Tool results are only allowed in tool messages",
}

_ROLES = {r.value: r for r in Role}


# -----------------------------
# Parsing
# -----------------------------

class _Section:
    """A role heading plus the line range of its body and the tool fences decoded inside it."""

    def __init__(self, role: Role, body_start: int) -> None:
        self.role = role
        self.body_start = body_start
        self.body_end = body_start
        # (start_line, end_line, part) per decoded tool fence, in source order
        self.fences: List[Tuple[int, int, Any]] = []

    def parts(self, lines: List[str]) -> List[Any]:
        """
        Cut the body into text runs and tool parts.

        Text runs are the source lines between decoded fences, so anything the
        block parser emits no token for (link reference definitions) is kept.
        """
        parts: List[Any] = []
        cursor = self.body_start
        for start, end, part in self.fences:
            text = _slice(lines, cursor, start)
            if text:
                parts.append(TextPart(text=text))
            parts.append(part)
            cursor = end
        text = _slice(lines, cursor, self.body_end)
        if text:
            parts.append(TextPart(text=text))
        return parts


def _slice(lines: List[str], start: int, end: int) -> str:
    return trim_blank_lines("\n".join(lines[start:end]))


def _heading_role(tokens: List[Token], idx: int) -> Optional[Role]:
    """Return the role named by a level-2 heading at tokens[idx], if any."""
    tok = tokens[idx]
    if tok.tag != "h2" or idx + 1 >= len(tokens):
        return None
    inline = tokens[idx + 1]
    if inline.type != "inline":
        return None
    return _ROLES.get(inline.content.strip().lower())


def _fence_name(info: str) -> str:
    words = info.strip().split()
    return words[0] if words else ""


def _decompress_json(data: str) -> Any:
    raw = brotli.decompress(base64.b64decode(data, validate=True))
    return json.loads(raw.decode("utf-8"))


def _parse_tool_fence(name: str, body: str) -> Any:
    """
    Build a ToolCallPart/ToolResultPart from a tool fence body.

    Plain fences raise MalformedInput on bad JSON or schema mismatch. Compressed
    fences return None on any failure so the caller keeps them as text.
    """
    model, _, key, compressed = _TOOL_FENCES[name]
    if not compressed:
        try:
            return model.model_validate(json.loads(body))
        except json.JSONDecodeError as e:
            raise MalformedInput(f"invalid JSON in {name} fence: {e}")
        except ValidationError as e:
            raise MalformedInput(f"{name} fence does not match the expected schema: {e}")
    compressed_key = "compressedArgs" if key == "args" else "compressedResult"
    try:
        envelope = json.loads(body)
        payload = {
            "toolCallId": envelope["toolCallId"],
            "toolName": envelope["toolName"],
            key: _decompress_json(envelope[compressed_key]),
        }
        return model.model_validate(payload)
    except (brotli.error, ValueError, TypeError, KeyError) as e:
        logger.warning("Failed to decompress or parse %s data, keeping it as text: %s", name, e)
        return None


def parse_markdown(markdown: str) -> List[Message]:
    """
    Transform a markdown conversation into a list of messages.

    Raises:
        MalformedInput: If a tool-call/tool-result fence sits under the wrong
            role or its payload does not match the schema.
    """
    lines = markdown.split("\n")
    tokens = _md.parse(markdown)
    sections: List[_Section] = []
    current: Optional[_Section] = None

    for idx, tok in enumerate(tokens):
        # Only top-level blocks; closing tokens and inline children are skipped.
        if tok.level != 0 or tok.nesting == -1 or tok.map is None:
            continue
        start, end = tok.map
        if tok.type == "heading_open":
            role = _heading_role(tokens, idx)
            if role is not None:
                if current is not None:
                    current.body_end = start
                current = _Section(role, end)
                sections.append(current)
                continue
        if current is None or tok.type != "fence":
            continue
        name = _fence_name(tok.info)
        if name not in _TOOL_FENCES:
            continue
        _, required_role, _, _ = _TOOL_FENCES[name]
        if current.role != required_role:
            raise MalformedInput(_ROLE_ERRORS[required_role])
        part = _parse_tool_fence(name, tok.content)
        # undecodable compressed fences stay in the surrounding text run
        if part is not None:
            current.fences.append((start, end, part))
    if current is not None:
        current.body_end = len(lines)

    messages: List[Message] = []
    for section in sections:
        parts = section.parts(lines)
        content: MessageContent
        if not parts:
            content = ""
        elif len(parts) == 1 and isinstance(parts[0], TextPart):
            content = parts[0].text
        else:
            content = parts
        try:
            messages.append(Message(role=section.role, content=content))
        except ValidationError as e:
            raise MalformedInput(f"invalid {section.role.value} message: {e}")
    return messages


# -----------------------------
# Serialization
# -----------------------------

def _compact_json(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _compress_json(obj: Any) -> str:
    return base64.b64encode(brotli.compress(_compact_json(obj).encode("utf-8"))).decode("ascii")


def _fence(name: str, content: str) -> str:
    return f"```{name}\n{content}\n```"


def _tool_fence(part: Union[ToolCallPart, ToolResultPart], compress: bool) -> str:
    if isinstance(part, ToolCallPart):
        key, name = "args", FENCE_TOOL_CALL
        value: Dict[str, Any] = part.args
    else:
        key, name = "result", FENCE_TOOL_RESULT
        value = part.result
    payload: Dict[str, Any] = {"toolCallId": part.tool_call_id, "toolName": part.tool_name}
    if compress:
        payload["compressedArgs" if key == "args" else "compressedResult"] = _compress_json(value)
        return _fence(f"{name}-compressed", _compact_json(payload))
    payload[key] = value
    return _fence(name, _compact_json(payload))


def _serialize_parts(role: Role, content: MessageContent, allowed: tuple, compress: bool) -> str:
    if isinstance(content, str):
        return content
    out: List[str] = []
    for part in content:
        if not isinstance(part, allowed):
            raise UnsupportedContent(f"unsupported {role.value} message content part type {part.type}")
        if isinstance(part, TextPart):
            out.append(part.text)
        else:
            out.append(_tool_fence(part, compress))
    # exactly one blank line between parts
    return "\n\n".join(out)


def _serialize_body(message: Message, compress: bool) -> str:
    role = message.role
    if role == Role.system:
        if not isinstance(message.content, str):
            raise UnsupportedContent("system messages only support string content")
        return message.content
    if role == Role.user:
        return _serialize_parts(role, message.content, (TextPart,), compress)
    if role == Role.assistant:
        return _serialize_parts(role, message.content, (TextPart, ToolCallPart), compress)
    if role == Role.tool:
        return _serialize_parts(role, message.content, (TextPart, ToolResultPart), compress)
    should_never_happen("unexpected message role", role)


def serialize_messages(messages: List[Message], compress: bool = True) -> str:
    """
    Convert messages into markdown with compact JSON tool fences.

    Args:
        messages: Conversation to write.
        compress: Write tool fences as `*-compressed` (Brotli + base64) payloads.

    Raises:
        UnsupportedContent: If a message holds a part the parser could not read
            back, or text that would parse back as something else (an unclosed
            fence, a role heading, a tool fence).
    """
    md = ""
    for message in messages:
        md += f"## {message.role.value}\n\n"
        md += _serialize_body(message, compress) + "\n\n"
    md = md.rstrip("\n") + "\n"
    _check_round_trip(messages, md)
    return md


def _check_round_trip(messages: List[Message], md: str) -> None:
    try:
        parsed = parse_markdown(md)
    except MalformedInput as e:
        raise UnsupportedContent(f"serialized conversation does not parse back: {e}")
    if parsed == list(messages):
        return
    for i, (expected, actual) in enumerate(zip(messages, parsed)):
        if expected != actual:
            raise UnsupportedContent(
                f"{expected.role.value} message {i} would not read back identically; "
                "check its text for unclosed fences or role headings"
            )
    raise UnsupportedContent(
        f"serialized conversation reads back as {len(parsed)} messages instead of {len(messages)}"
    )
