"""Fixed-capacity mapping with insertion-order eviction.

Used for per-chat derived state (remote session ids, usage snapshots) so a
long-running relay with many distinct chats keeps bounded memory without any
explicit per-chat teardown.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Iterator, MutableMapping, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class BoundedMap(MutableMapping[K, V]):
    """Mapping that never holds more than ``max_size`` entries.

    Inserting a new key at capacity evicts the oldest key (first inserted).
    Re-setting an existing key moves it to the newest position.
    """

    def __init__(self, max_size: int = 1000):
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self.max_size = max_size
        self._data: OrderedDict[K, V] = OrderedDict()

    def __getitem__(self, key: K) -> V:
        return self._data[key]

    def __setitem__(self, key: K, value: V) -> None:
        if key in self._data:
            del self._data[key]
        elif len(self._data) >= self.max_size:
            self._data.popitem(last=False)
        self._data[key] = value

    def __delitem__(self, key: K) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[K]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"BoundedMap(max_size={self.max_size}, size={len(self._data)})"

    def set(self, key: K, value: V) -> "BoundedMap[K, V]":
        self[key] = value
        return self

    def has(self, key: K) -> bool:
        return key in self._data

    def delete(self, key: K) -> bool:
        if key in self._data:
            del self._data[key]
            return True
        return False

    def clear(self) -> None:
        self._data.clear()

    @property
    def size(self) -> int:
        return len(self._data)
