"""
Idempotency labels for margin operations.

Every mutating engine call carries a caller-chosen label. The first call with a
label is executed and its result recorded; any later call with the same label
returns the recorded result without touching state again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Generic, Mapping, Optional, TypeVar

T = TypeVar("T")

MAX_LABEL_LEN = 256


def require_label(label: object) -> str:
    if not isinstance(label, str) or not label:
        raise TypeError("label must be a non-empty string")
    if len(label) > MAX_LABEL_LEN:
        raise ValueError(f"label too long (> {MAX_LABEL_LEN} chars)")
    return label


@dataclass
class LabelTable(Generic[T]):
    """Mutable mapping: label -> recorded result."""

    _seen: Dict[str, T] = field(default_factory=dict)

    def get(self, label: str) -> Optional[T]:
        return self._seen.get(require_label(label))

    def record(self, label: str, result: T) -> None:
        label = require_label(label)
        if label in self._seen:
            raise ValueError(f"label already recorded: {label!r}")
        self._seen[label] = result

    def __contains__(self, label: object) -> bool:
        return isinstance(label, str) and label in self._seen

    def copy(self) -> "LabelTable[T]":
        return LabelTable(dict(self._seen))

    def get_all(self) -> Mapping[str, T]:
        # Return a shallow copy to avoid accidental mutation during iteration.
        return dict(self._seen)
