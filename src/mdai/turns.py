# mdai: Turn automaton: decides from the tail of the conversation who acts next and how.

import logging
from typing import List

from .errors import should_never_happen
from .models import AssistantTurn, Message, NextTurn, Role, UserTurn

logger = logging.getLogger(__name__)


def next_turn(messages: List[Message]) -> NextTurn:
    """
    Decide the next actor from the last message.

    - empty history, or last message from assistant/system: user, with a new heading
    - last message an empty user message: user, reusing the open heading
    - last message a tool result: assistant, without confirmation
    - otherwise (non-empty user message): assistant, after confirmation
    """
    if not messages:
        return UserTurn(new_heading=True)
    last = messages[-1]
    role = last.role
    if role == Role.assistant or role == Role.system:
        turn: NextTurn = UserTurn(new_heading=True)
    elif role == Role.user:
        if len(last.content) == 0:
            turn = UserTurn(new_heading=False)
        else:
            turn = AssistantTurn(confirm=True)
    elif role == Role.tool:
        turn = AssistantTurn(confirm=False)
    else:
        should_never_happen("unexpected message role", role)
    logger.debug("next turn after %s message: %s", role.value, turn)
    return turn
