# mdai: ChatSession: the turn loop over one markdown conversation file. Composes the codec, the turn automaton
# and the tool registry with external collaborators (prompter, editor, model client).

import logging
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from .context import Context
from .errors import CollaboratorFailure, UnsupportedContent, UserCancelled, should_never_happen
from .fs import read_text, write_text_atomic
from .markdown import serialize_messages, parse_markdown
from .models import AssistantTurn, Message, Role, ToolResultPart, UserTurn
from .prompts import get_prompt
from .settings import SessionSettings, load_settings
from .tools import discover_tools, run_tool
from .turns import next_turn

logger = logging.getLogger(__name__)

USER_HEADING = "\n## user\n"

USER_OPEN_EDITOR = "open-editor"
USER_PROMPT = "prompt"
ASSISTANT_CALL_MODEL = "call-model"
STOP = "stop"


# -----------------------------
# Collaborators
# -----------------------------

class Prompter(Protocol):
    """Interactive user I/O. mdai.context.Context is the console implementation."""

    def get_user_input(self, prompt: str) -> Optional[str]: ...

    def choose(self, prompt: str, options: List[str]) -> Optional[str]: ...

    def send_to_user(self, message: str) -> None: ...

    def stream(self, chunk: str) -> None: ...

    def log(self, message: str) -> None: ...

    def error_message(self, message: str) -> None: ...


class Editor(Protocol):
    def open(self, command: str, path: pathlib.Path) -> int:
        """Open path with the editor command, wait for it to exit and return its exit status."""
        ...


@dataclass
class ModelReply:
    """Streamed text chunks plus the complete response messages (assistant text and tool calls)."""
    chunks: Iterable[str] = field(default_factory=list)
    messages: List[Message] = field(default_factory=list)


class ModelClient(Protocol):
    def invoke(self, messages: List[Message], tools: List[Dict[str, Any]], model: str) -> ModelReply:
        """Send the conversation to the model named by the settings and return its reply."""
        ...


# -----------------------------
# Session
# -----------------------------

class ChatSession:
    """
    Drive a conversation stored in a markdown file until the user stops.

    Every turn re-reads the file, so edits made in the editor between turns
    are always picked up. The file is only ever replaced as a whole.
    """

    def __init__(
        self,
        path: pathlib.Path,
        ctx: Context,
        model: ModelClient,
        editor: Editor,
        settings: Optional[SessionSettings] = None,
    ) -> None:
        self.path = pathlib.Path(path)
        self.ctx = ctx
        self.model = model
        self.editor = editor
        self.settings = settings or load_settings(ctx.root)

    def run(self) -> None:
        proceed = True
        while proceed:
            try:
                proceed = self.step()
            except UserCancelled as e:
                self.ctx.log(f"cancelled: {e}")
                return
            except (CollaboratorFailure, UnsupportedContent) as e:
                self.ctx.error_message(str(e))
                return

    def step(self) -> bool:
        """Perform one turn. Returns False when the session should stop."""
        messages = self.read_messages()
        turn = next_turn(messages)
        if isinstance(turn, UserTurn):
            return self.user_turn(turn)
        if isinstance(turn, AssistantTurn):
            return self.assistant_turn(messages, turn)
        should_never_happen("unexpected turn", turn)

    # ---- file ----

    def read_text(self) -> str:
        if not self.path.exists():
            return ""
        return read_text(self.path)

    def read_messages(self) -> List[Message]:
        return parse_markdown(self.read_text())

    def write_messages(self, messages: List[Message]) -> None:
        write_text_atomic(self.path, serialize_messages(messages, compress=self.settings.compression))

    def append_text(self, text: str) -> None:
        current = self.read_text()
        if current and not current.endswith("\n"):
            current += "\n"
        write_text_atomic(self.path, current + text)

    def drop_heading(self, before: str, existed: bool) -> None:
        """Undo a heading appended for the editor, unless the editor changed the file anyway."""
        current = self.read_text()
        if not current.startswith(before) or current[len(before):].strip() != USER_HEADING.strip():
            return
        if existed:
            write_text_atomic(self.path, before)
        else:
            self.path.unlink()

    # ---- turns ----

    def user_turn(self, turn: UserTurn) -> bool:
        heading = USER_HEADING if turn.new_heading else ""
        choice = self.ctx.choose("Your turn. What do you want to do?", [USER_OPEN_EDITOR, USER_PROMPT, STOP])
        if choice is None or choice == STOP:
            return False
        if choice == USER_OPEN_EDITOR:
            if not heading:
                self.open_editor()
                return True
            existed = self.path.exists()
            before = self.read_text()
            self.append_text(heading)
            try:
                self.open_editor()
            except CollaboratorFailure:
                self.drop_heading(before, existed)
                raise
            return True
        if choice == USER_PROMPT:
            message = self.ctx.get_user_input("Your message:")
            if message is None:
                return False
            self.append_text(heading + message.rstrip("\n") + "\n")
            return True
        should_never_happen("unexpected user turn choice", choice)

    def assistant_turn(self, messages: List[Message], turn: AssistantTurn) -> bool:
        if turn.confirm:
            choice = self.ctx.choose("AI's turn. What do you want to do?", [ASSISTANT_CALL_MODEL, USER_OPEN_EDITOR, STOP])
            if choice is None or choice == STOP:
                return False
            if choice == USER_OPEN_EDITOR:
                self.open_editor()
                return True
        reply_messages = self.call_model(messages)
        tool_message = self.resolve_tool_calls(reply_messages)
        if tool_message is not None:
            reply_messages.append(tool_message)
        self.write_messages(messages + reply_messages)
        return True

    # ---- collaborators ----

    def open_editor(self) -> None:
        try:
            status = self.editor.open(self.settings.editor, self.path)
        except OSError as e:
            raise CollaboratorFailure(f"could not start editor '{self.settings.editor}': {e}") from e
        if status != 0:
            raise CollaboratorFailure(f"Editor exited {status}")

    def system_prompt(self) -> str:
        return self.settings.system_prompt or get_prompt("system_prompt.md")

    def call_model(self, messages: List[Message]) -> List[Message]:
        """Send the conversation (behind a system prompt that is never persisted) and stream the reply."""
        request = [Message(role=Role.system, content=self.system_prompt())] + messages
        tools = discover_tools(self.settings.tools or None)
        self.ctx.log("Calling model...")
        try:
            reply = self.model.invoke(request, tools, model=self.settings.model)
            for chunk in reply.chunks:
                self.ctx.stream(chunk)
            reply_messages = list(reply.messages)
        except (CollaboratorFailure, UserCancelled):
            raise
        except Exception as e:
            raise CollaboratorFailure(f"model call failed: {e}") from e
        self.ctx.send_to_user("")
        logger.debug("model replied with %d message(s)", len(reply_messages))
        return reply_messages

    def resolve_tool_calls(self, reply_messages: List[Message]) -> Optional[Message]:
        """Run every tool call of the reply that has no result yet and collect the results in one tool message."""
        answered: Set[str] = {r.tool_call_id for m in reply_messages for r in m.tool_results()}
        enabled = self.settings.tools
        results: List[ToolResultPart] = []
        for message in reply_messages:
            for call in message.tool_calls():
                if call.tool_call_id in answered:
                    continue
                if enabled and call.tool_name not in enabled:
                    result: Dict[str, Any] = {"ok": False, "reason": f"tool {call.tool_name} is not enabled"}
                else:
                    result = run_tool(self.ctx, call.tool_name, call.args)
                results.append(
                    ToolResultPart(tool_call_id=call.tool_call_id, tool_name=call.tool_name, result=result)
                )
                answered.add(call.tool_call_id)
        if not results:
            return None
        return Message(role=Role.tool, content=results)
