"""Fixed-capacity row buffer reused across chunks."""

from typing import Any, Iterable, Iterator, List, Mapping, Optional, Sequence

MIN_CAPACITY = 100
MAX_CAPACITY = 1_000_000
DEFAULT_CAPACITY = 10_000


class ChunkBuffer(Sequence):
    """Holds at most ``capacity`` rows in a slot list allocated once.

    ``reset`` drops the row references but keeps the slots, so steady-state
    extraction allocates no new buffers. Serializers see only the filled
    slots through the ``Sequence`` protocol.

    Args:
        capacity: Number of slots, clamped to [100, 1,000,000].
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        self.capacity = min(max(capacity, MIN_CAPACITY), MAX_CAPACITY)
        self._slots: List[Optional[Mapping[str, Any]]] = [None] * self.capacity
        self._size = 0

    def append(self, row: Mapping[str, Any]) -> None:
        if self._size >= self.capacity:
            raise OverflowError(f"chunk buffer is full ({self.capacity} rows)")
        self._slots[self._size] = row
        self._size += 1

    def extend(self, rows: Iterable[Mapping[str, Any]]) -> None:
        for row in rows:
            self.append(row)

    def is_full(self) -> bool:
        return self._size >= self.capacity

    def remaining(self) -> int:
        return self.capacity - self._size

    def reset(self) -> None:
        for i in range(self._size):
            self._slots[i] = None
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def __getitem__(self, index):
        if isinstance(index, slice):
            return [self._slots[i] for i in range(*index.indices(self._size))]
        if index < 0:
            index += self._size
        if not 0 <= index < self._size:
            raise IndexError("chunk buffer index out of range")
        return self._slots[index]

    def __iter__(self) -> Iterator[Mapping[str, Any]]:
        for i in range(self._size):
            yield self._slots[i]
