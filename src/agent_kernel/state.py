# state.py
# Agent lifecycle automaton.
#
#   IDLE --START--> THINKING
#   THINKING --THINK_DONE_WITH_TOOLS--> ACTING
#   THINKING --THINK_DONE_NO_TOOLS----> FINISHED
#   ACTING ----ACT_DONE---------------> THINKING
#   ACTING ----TOOL_TERMINATE---------> FINISHED
#   THINKING|ACTING --STOP_*----------> FINISHED
#   THINKING|ACTING --FAIL------------> ERROR
#
# Pure transition table. Unknown events are rejected and logged; the machine
# never advances silently. FINISHED and ERROR have no outgoing transitions.

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class AgentState(str, Enum):
    IDLE = "IDLE"
    THINKING = "THINKING"
    ACTING = "ACTING"
    FINISHED = "FINISHED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentState.FINISHED, AgentState.ERROR)


class AgentEvent(str, Enum):
    START = "START"
    THINK_DONE_WITH_TOOLS = "THINK_DONE_WITH_TOOLS"
    THINK_DONE_NO_TOOLS = "THINK_DONE_NO_TOOLS"
    ACT_DONE = "ACT_DONE"
    TOOL_TERMINATE = "TOOL_TERMINATE"
    STOP_MAX_STEPS = "STOP_MAX_STEPS"
    STOP_EMPTY = "STOP_EMPTY"
    STOP_DUPLICATE = "STOP_DUPLICATE"
    FAIL = "FAIL"


_STOP_EVENTS = (AgentEvent.STOP_MAX_STEPS, AgentEvent.STOP_EMPTY, AgentEvent.STOP_DUPLICATE)


def _build_transitions() -> dict[tuple[AgentState, AgentEvent], AgentState]:
    table = {
        (AgentState.IDLE, AgentEvent.START): AgentState.THINKING,
        (AgentState.THINKING, AgentEvent.THINK_DONE_WITH_TOOLS): AgentState.ACTING,
        (AgentState.THINKING, AgentEvent.THINK_DONE_NO_TOOLS): AgentState.FINISHED,
        (AgentState.THINKING, AgentEvent.FAIL): AgentState.ERROR,
        (AgentState.ACTING, AgentEvent.ACT_DONE): AgentState.THINKING,
        (AgentState.ACTING, AgentEvent.TOOL_TERMINATE): AgentState.FINISHED,
        (AgentState.ACTING, AgentEvent.FAIL): AgentState.ERROR,
    }
    for source in (AgentState.THINKING, AgentState.ACTING):
        for event in _STOP_EVENTS:
            table[(source, event)] = AgentState.FINISHED
    return table


TRANSITIONS: dict[tuple[AgentState, AgentEvent], AgentState] = _build_transitions()


class StateMachine:
    """
    One instance per run, keyed by conversation id (for log correlation only).

    Example:
        sm = StateMachine("conv-1")
        sm.send(AgentEvent.START)      # True, state is THINKING
        sm.send(AgentEvent.ACT_DONE)   # False, rejected, state unchanged
    """

    def __init__(self, machine_id: str) -> None:
        self.machine_id = machine_id
        self._state = AgentState.IDLE

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    def can_accept(self, event: AgentEvent) -> bool:
        return (self._state, event) in TRANSITIONS

    def send(self, event: AgentEvent) -> bool:
        """Apply `event`. Returns False, leaving the state untouched, if no transition exists."""
        target = TRANSITIONS.get((self._state, event))
        if target is None:
            logger.warning(
                "Event %s rejected in state %s (machine=%s)",
                event.value, self._state.value, self.machine_id,
            )
            return False

        logger.debug(
            "Machine %s: %s --%s--> %s",
            self.machine_id, self._state.value, event.value, target.value,
        )
        self._state = target
        return True
