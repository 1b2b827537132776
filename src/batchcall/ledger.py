"""Per-principal nonce ledger."""

from __future__ import annotations

import logging

from .calls import normalize_address
from .errors import StateError
from .state import HostState

logger = logging.getLogger(__name__)


class NonceLedger:
    """
    The single replay-protection counter of one principal.

    The counter starts at 0 on activation, only ever moves up by one, and only
    inside a unit of work, so a rolled-back batch leaves it untouched.
    """

    def __init__(self, state: HostState, principal: str):
        self._state = state
        self.principal = normalize_address(principal)

    def current(self) -> int:
        return self._state.nonce_of(self.principal)

    @property
    def is_activated(self) -> bool:
        return self._state.is_activated(self.principal)

    def activate(self) -> int:
        with self._state.unit_of_work():
            created = self._state.activate_nonce(self.principal)
        if created:
            logger.info("Activated nonce ledger for %s", self.principal)
        return self.current()

    def advance(self) -> int:
        """Consume the current nonce and return the consumed value."""
        if not self._state.in_unit_of_work:
            raise StateError("Nonce can only advance inside a unit of work")
        consumed = self.current()
        self._state.set_nonce(self.principal, consumed + 1)
        return consumed
