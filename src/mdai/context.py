# mdai: Console user I/O Context plus the session-scoped SessionState (ignore cache, file-access tracker,
# "always allow writes" flag) that tools read and update during a run.

import pathlib
import sys
from typing import Dict, List, Optional

from .errors import UserCancelled
from .ignore import IgnoreCache


class SessionState:
    """
    Mutable state that lives exactly as long as one chat session.

    Passed explicitly to tools through the Context; nothing here is module-level.
    """

    def __init__(self) -> None:
        self.ignore_cache = IgnoreCache()
        # absolute path -> mtime (ns) last observed by the model
        self.file_tracker: Dict[pathlib.Path, Optional[int]] = {}
        self.always_allow_writes = False

    def track(self, path: pathlib.Path, mtime: Optional[int]) -> None:
        self.file_tracker[path] = mtime

    def forget(self, path: pathlib.Path) -> None:
        self.file_tracker.pop(path, None)


class Context:
    """
    Thin wrapper around console I/O used by the chat session and its tools.

    Holds the project root and the SessionState so tools receive everything
    they need through a single argument. Tests substitute scripted answers by
    subclassing or by passing a fake with the same methods.
    """

    def __init__(self, root: pathlib.Path, state: Optional[SessionState] = None) -> None:
        self.root = pathlib.Path(root).resolve()
        self.state = state or SessionState()

    def send_to_user(self, message: str) -> None:
        """Send a user-facing message to stdout."""
        print(message)

    def stream(self, chunk: str) -> None:
        """Write a piece of streamed model output without a trailing newline."""
        print(chunk, end="", flush=True)

    def log(self, message: str) -> None:
        print(f"[LOG] {message}")

    def error_message(self, message: str) -> None:
        """Print an error message to stderr."""
        print(f"Error: {message}", file=sys.stderr)

    def get_user_input(self, prompt: str) -> Optional[str]:
        """Read one line from stdin; None when input is closed or interrupted."""
        try:
            return input(f"{prompt} ")
        except (EOFError, KeyboardInterrupt):
            return None

    def choose(self, prompt: str, options: List[str]) -> Optional[str]:
        """
        Ask the user to pick one of options by number or by name.

        Returns None when the user cancels (closed input). Unknown answers are
        asked again.
        """
        self.send_to_user(prompt)
        for i, option in enumerate(options, start=1):
            self.send_to_user(f"  {i}) {option}")
        while True:
            answer = self.get_user_input(">")
            if answer is None:
                return None
            answer = answer.strip().lower()
            if answer.isdigit() and 1 <= int(answer) <= len(options):
                return options[int(answer) - 1]
            for option in options:
                if option.lower() == answer:
                    return option
            self.error_message(f"Please answer with one of: {', '.join(options)}")

    def confirm(self, prompt: str) -> bool:
        """Yes/no question. Raises UserCancelled when input is closed."""
        answer = self.choose(prompt, ["yes", "no"])
        if answer is None:
            raise UserCancelled(prompt)
        return answer == "yes"
