"""Confirmation gate for write-capable actions.

The machine tracks which named state the assistant reports being in and
whether the current action needs (and has received) human confirmation.
Every write, append, memory append and pending-edit apply consults
`can_act()` before touching the document store.
"""

from typing import Optional

from agent import config
from agent.errors import InvalidStateError


class StateMachine:
    def __init__(
        self,
        states: list[str],
        initial_state: Optional[str] = None,
        state_map: Optional[dict[str, str]] = None,
        acting_state: str = config.ACTING_STATE,
    ):
        if not states:
            raise InvalidStateError("StateMachine requires at least one state")
        self._allowed = frozenset(states)
        self._state_map = dict(state_map or {})
        self._acting_state = acting_state
        self.needs_confirmation = False
        self.confirmed = False

        initial = initial_state if initial_state is not None else states[0]
        if initial not in self._allowed:
            raise InvalidStateError(f"Invalid initial state: {initial}")
        self.state = initial

    @property
    def allowed_states(self) -> frozenset[str]:
        return self._allowed

    def resolve_state(self, name: str) -> str:
        return self._state_map.get(name, name)

    def set_state(self, name: str) -> None:
        """Move to *name* (after alias resolution).

        Raises:
            InvalidStateError: If the resolved name is not allowed. The
                current state is left unchanged.
        """
        resolved = self.resolve_state(name)
        if resolved not in self._allowed:
            raise InvalidStateError(f"Invalid state: {name}")
        self.state = resolved
        if resolved != self._acting_state:
            self.needs_confirmation = False
            self.confirmed = False

    def set_needs_confirmation(self, flag: bool) -> None:
        self.needs_confirmation = flag
        if not flag:
            self.confirmed = False

    def confirm(self) -> None:
        """Record approval; ignored unless confirmation is currently required."""
        if self.needs_confirmation:
            self.confirmed = True

    def can_act(self) -> bool:
        if self.state != self._acting_state:
            return True
        if not self.needs_confirmation:
            return True
        return self.confirmed


def default_state_machine() -> StateMachine:
    """The idle → thinking → acting machine used by chat sessions."""
    return StateMachine(
        config.AGENT_STATES,
        initial_state="idle",
        state_map=config.STATE_ALIASES,
    )
