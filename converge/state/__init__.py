"""State store: last-known resource state keyed by address."""

from converge.state.store import StateEntry, StateStore

__all__ = ["StateEntry", "StateStore"]
