"""
Ledger state stores.

A store hands out the current LedgerState and commits a new state together
with the events that produced it. Commits are all-or-nothing, and a commit
built on an outdated revision raises StaleStateError.
"""

from dataclasses import replace
from typing import List

from edgecharge.core.errors import StaleStateError

from .state import LedgerEvent, LedgerState


class LedgerStore:
    """Interface for ledger persistence."""

    def load(self) -> LedgerState:
        raise NotImplementedError

    def commit(self, state: LedgerState, events: List[LedgerEvent]) -> None:
        raise NotImplementedError

    def events(self) -> List[LedgerEvent]:
        raise NotImplementedError


class InMemoryLedgerStore(LedgerStore):
    """Non-durable store for tests and single-process use."""

    def __init__(self, owner: str):
        self._state = LedgerState.genesis(owner)
        self._events: List[LedgerEvent] = []

    def load(self) -> LedgerState:
        return self._state

    def commit(self, state: LedgerState, events: List[LedgerEvent]) -> None:
        if state.revision != self._state.revision:
            raise StaleStateError(
                f"Commit based on revision {state.revision}, store is at {self._state.revision}"
            )
        # single assignment: readers see the old state or the new one
        self._state = replace(state, revision=state.revision + 1)
        self._events.extend(events)

    def events(self) -> List[LedgerEvent]:
        return list(self._events)
