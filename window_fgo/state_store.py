"""Append-only, time-indexed store of estimation states."""

from __future__ import annotations

import bisect
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from window_fgo import utils
from window_fgo.errors import DuplicateStateError, UnknownStateError

StateId = Tuple[str, float]


@dataclass
class StateVariable:
    """A named unknown at one timestamp."""

    name: str
    timestamp: float
    mean: np.ndarray
    key: int = 0
    constant: bool = False
    covariance: Optional[np.ndarray] = None

    @property
    def state_id(self) -> StateId:
        return (self.name, self.timestamp)

    @property
    def dim(self) -> int:
        return self.mean.size

    def copy(self) -> "StateVariable":
        return StateVariable(
            name=self.name,
            timestamp=self.timestamp,
            mean=self.mean.copy(),
            key=self.key,
            constant=self.constant,
            covariance=None if self.covariance is None else self.covariance.copy(),
        )


class Trajectory:
    """Per-name, time-ordered sequences of :class:`StateVariable`.

    Entries are never removed. A solve may replace their means, the sliding
    window may mark them constant.
    """

    def __init__(self) -> None:
        self._states: Dict[str, List[StateVariable]] = {}
        self._times: Dict[str, List[float]] = {}
        self._lookup: Dict[StateId, StateVariable] = {}
        self._next_idx = 0

    def add(self, state: StateVariable) -> StateVariable:
        state.timestamp = float(state.timestamp)
        state.mean = np.atleast_1d(np.asarray(state.mean, dtype=float))
        if state.state_id in self._lookup:
            raise DuplicateStateError(
                f"State '{state.name}' at t={state.timestamp:.6f} already exists"
            )
        if state.key == 0:
            state.key = utils.state_key(state.name, self._next_idx)
        self._next_idx += 1

        times = self._times.setdefault(state.name, [])
        idx = bisect.bisect_right(times, state.timestamp)
        times.insert(idx, state.timestamp)
        self._states.setdefault(state.name, []).insert(idx, state)
        self._lookup[state.state_id] = state
        return state

    def create(
        self, name: str, timestamp: float, mean: np.ndarray
    ) -> StateVariable:
        return self.add(StateVariable(name=name, timestamp=timestamp, mean=mean))

    def exists(self, name: str, timestamp: float) -> bool:
        return (name, float(timestamp)) in self._lookup

    def find(self, name: str, timestamp: float) -> Optional[StateVariable]:
        return self._lookup.get((name, float(timestamp)))

    def get(self, name: str, timestamp: float) -> StateVariable:
        state = self._lookup.get((name, float(timestamp)))
        if state is None:
            raise UnknownStateError(f"No state '{name}' at t={timestamp:.6f}")
        return state

    def get_all(self, name: str) -> List[StateVariable]:
        return list(self._states.get(name, []))

    def latest(
        self, name: str, before: Optional[float] = None
    ) -> Optional[StateVariable]:
        """Most recent ``name`` state, optionally at or before ``before``."""
        states = self._states.get(name)
        if not states:
            return None
        if before is None:
            return states[-1]
        idx = bisect.bisect_right(self._times[name], before)
        return states[idx - 1] if idx > 0 else None

    def timestamps(self, name: str) -> List[float]:
        return list(self._times.get(name, []))

    def names(self) -> List[str]:
        return [name for name, states in self._states.items() if states]

    def count(self, name: Optional[str] = None) -> int:
        if name is None:
            return len(self._lookup)
        return len(self._states.get(name, []))

    def __iter__(self) -> Iterator[StateVariable]:
        for states in self._states.values():
            yield from states

    def __len__(self) -> int:
        return len(self._lookup)

    def free_states(self) -> List[StateVariable]:
        return [state for state in self if not state.constant]

    def frozen_states(self) -> List[StateVariable]:
        return [state for state in self if state.constant]

    def set_constant_before(self, timestamp: float) -> int:
        """Mark every state older than ``timestamp`` constant.

        Returns the number of states that were free before the call.
        """
        frozen = 0
        for name, states in self._states.items():
            end = bisect.bisect_left(self._times[name], timestamp)
            for state in states[:end]:
                if not state.constant:
                    state.constant = True
                    frozen += 1
        return frozen

    def update_from(self, source: "Trajectory") -> None:
        """Copy means, flags and covariances of ``source`` into this store.

        Entries that are constant in both stores are skipped; a constant
        state's mean never changes after it was frozen.
        """
        for state in source:
            existing = self._lookup.get(state.state_id)
            if existing is None:
                self.add(state.copy())
                continue
            if existing.constant and state.constant:
                continue
            existing.mean = state.mean.copy()
            existing.constant = state.constant
            existing.covariance = (
                None if state.covariance is None else state.covariance.copy()
            )

    def subset(self, name: str) -> "Trajectory":
        """Deep copy of the ``name`` states only."""
        result = Trajectory()
        for state in self._states.get(name, []):
            result.add(state.copy())
        return result
