from __future__ import annotations

import math
from typing import Iterable, Mapping


def _checked_amount(resource_id: str, amount: float) -> float:
    value = float(amount)
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"Amount for '{resource_id}' must be a finite value >= 0, got {amount!r}.")
    return value


class ResourceLedger:
    """Authoritative resource quantities. No entry ever drops below zero."""

    def __init__(self, initial: Mapping[str, float] | None = None) -> None:
        self._quantities: dict[str, float] = {}
        for resource_id, amount in (initial or {}).items():
            self.credit(resource_id, amount)

    def quantity(self, resource_id: str) -> float:
        return self._quantities.get(resource_id, 0.0)

    def has(self, requirements: Mapping[str, float]) -> bool:
        return all(self.quantity(resource_id) >= amount for resource_id, amount in requirements.items())

    def credit(self, resource_id: str, amount: float) -> float:
        value = _checked_amount(resource_id, amount)
        total = self._quantities.get(resource_id, 0.0) + value
        self._quantities[resource_id] = total
        return total

    def credit_all(self, amounts: Mapping[str, float]) -> None:
        for resource_id, amount in amounts.items():
            _checked_amount(resource_id, amount)
        for resource_id, amount in amounts.items():
            self.credit(resource_id, amount)

    def debit(self, resource_id: str, amount: float) -> bool:
        value = _checked_amount(resource_id, amount)
        current = self._quantities.get(resource_id, 0.0)
        if current < value:
            return False
        self._quantities[resource_id] = current - value
        return True

    def debit_all(self, requirements: Mapping[str, float]) -> bool:
        """Debit every requirement or nothing at all."""
        for resource_id, amount in requirements.items():
            _checked_amount(resource_id, amount)
        if not self.has(requirements):
            return False
        for resource_id, amount in requirements.items():
            self._quantities[resource_id] = self._quantities.get(resource_id, 0.0) - float(amount)
        return True

    def remove(self, resource_id: str, amount: float) -> float:
        """Take up to ``amount``, clamped at zero. Returns what was actually removed."""
        value = _checked_amount(resource_id, amount)
        current = self._quantities.get(resource_id, 0.0)
        removed = min(current, value)
        self._quantities[resource_id] = current - removed
        return removed

    def resource_ids(self) -> Iterable[str]:
        return tuple(self._quantities)

    def snapshot(self) -> dict[str, float]:
        return dict(sorted(self._quantities.items()))

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._quantities

    def __len__(self) -> int:
        return len(self._quantities)
