"""
Multi-select state for batch operations.
"""

from typing import Iterable, Optional


class SelectionSet:
    """Insertion-ordered set of entity ids with an optional size cap.

    Adding beyond the cap is a no-op, not an error.
    """

    def __init__(self, max_size: Optional[int] = None):
        if max_size is not None and max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._ids: dict[str, None] = {}
        self._max_size = max_size

    @property
    def max_size(self) -> Optional[int]:
        return self._max_size

    @property
    def ids(self) -> list[str]:
        return list(self._ids)

    @property
    def is_full(self) -> bool:
        return self._max_size is not None and len(self._ids) >= self._max_size

    def add(self, entity_id: str) -> bool:
        """Select ``entity_id``. Returns False when the cap prevented it."""
        if entity_id in self._ids:
            return True
        if self.is_full:
            return False
        self._ids[entity_id] = None
        return True

    def discard(self, entity_id: str) -> None:
        self._ids.pop(entity_id, None)

    def toggle(self, entity_id: str) -> bool:
        """Flip selection; returns whether the id is selected afterwards."""
        if entity_id in self._ids:
            del self._ids[entity_id]
            return False
        return self.add(entity_id)

    def select_many(self, entity_ids: Iterable[str]) -> None:
        """Replace the selection, keeping at most ``max_size`` ids."""
        self._ids.clear()
        for entity_id in entity_ids:
            if not self.add(entity_id):
                break

    def clear(self) -> None:
        self._ids.clear()

    def set_max_size(self, max_size: Optional[int]) -> None:
        """Change the cap; an over-full selection is truncated in order."""
        if max_size is not None and max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._max_size = max_size
        if max_size is not None and len(self._ids) > max_size:
            self._ids = dict.fromkeys(list(self._ids)[:max_size])

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self):
        return iter(list(self._ids))
