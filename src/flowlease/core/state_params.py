"""Immutable State Params snapshots carried across retries of a task attempt."""

from __future__ import annotations

import copy
import json
from collections.abc import Iterator, Mapping
from typing import Any

RESERVED_PREFIX = "__"
POLL_INTERVAL_KEY = "__poll_interval"


class StateParams(Mapping[str, Any]):
    """Read-only JSON object owned by the operator of one task attempt.

    The core stores the JSON text exactly as produced by :meth:`to_json` and
    hands it back unchanged on the next lease. Operators never mutate a
    snapshot; :meth:`with_values` and :meth:`without` return new ones.
    Keys starting with ``__`` are reserved for core bookkeeping.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Mapping[str, Any] | None = None) -> None:
        values = dict(data or {})
        for key in values:
            if not isinstance(key, str):
                raise TypeError(f"State params keys must be strings, got {key!r}")
        self._data: dict[str, Any] = copy.deepcopy(values)

    @classmethod
    def empty(cls) -> StateParams:
        return cls()

    @classmethod
    def from_json(cls, text: str | None) -> StateParams:
        if not text:
            return cls()
        parsed = json.loads(text)
        if not isinstance(parsed, dict):
            raise ValueError("State params must be a JSON object.")
        return cls(parsed)

    def to_json(self) -> str:
        return json.dumps(self._data, ensure_ascii=False, separators=(",", ":"))

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    def with_values(self, **values: Any) -> StateParams:
        """Return a new snapshot with ``values`` set on top of this one."""

        merged = self.to_dict()
        merged.update(copy.deepcopy(values))
        return StateParams(merged)

    def without(self, *keys: str) -> StateParams:
        remaining = {key: value for key, value in self._data.items() if key not in keys}
        return StateParams(remaining)

    def operator_keys(self) -> dict[str, Any]:
        """Keys written by the operator, excluding reserved core bookkeeping."""

        return {
            key: copy.deepcopy(value)
            for key, value in self._data.items()
            if not key.startswith(RESERVED_PREFIX)
        }

    def __getitem__(self, key: str) -> Any:
        return copy.deepcopy(self._data[key])

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, StateParams):
            return self._data == other._data
        if isinstance(other, Mapping):
            return self._data == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.to_json())

    def __repr__(self) -> str:
        return f"StateParams({self._data!r})"
