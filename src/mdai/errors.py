# mdai: Exception hierarchy shared by the codec, the patch engine and the chat session.

from typing import Any, NoReturn


class MdaiError(Exception):
    """Base class for all mdai errors."""


class MalformedInput(MdaiError, ValueError):
    """A conversation file or patch description that cannot be parsed safely."""


class UnsupportedContent(MdaiError, ValueError):
    """A message shape the markdown serializer cannot write and read back."""


class PatchConflict(MdaiError, RuntimeError):
    """A patch whose preconditions do not hold against the files on disk."""


class PathEscape(MdaiError, ValueError):
    """A path that resolves outside of the project root."""


class CollaboratorFailure(MdaiError, RuntimeError):
    """The model, the editor or another external collaborator failed."""


class UserCancelled(MdaiError):
    """The user aborted an interactive prompt."""


def should_never_happen(msg: str, *args: Any) -> NoReturn:
    """Unreachable-case guard for exhaustive matches over closed unions."""
    detail = " ".join([msg] + [repr(a) for a in args])
    raise AssertionError(f"This should never happen: {detail}")
