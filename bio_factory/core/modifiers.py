from __future__ import annotations

import logging
from typing import Iterable, Mapping

from pydantic import ValidationError

from .models import SYSTEM_WIDE_MODIFIER_KEY, Modifier

logger = logging.getLogger(__name__)


class ModifierStack:
    """Named multiplicative factors applied to recipe outputs.

    One modifier per source; adding a source again replaces it. A factor
    applies to an output when its key is the resource id, one of the
    resource's tags, or the system-wide key.
    """

    def __init__(self) -> None:
        self._modifiers: dict[str, Modifier] = {}

    def add(self, source: str, factors: Mapping[str, float]) -> bool:
        try:
            modifier = Modifier(source=source, factors=dict(factors))
        except ValidationError as exc:
            logger.warning("Rejected modifier '%s': %s", source, exc.errors()[0].get("msg", exc))
            return False
        self._modifiers[modifier.source] = modifier
        return True

    def remove_source(self, source: str) -> bool:
        return self._modifiers.pop(source, None) is not None

    def has_source(self, source: str) -> bool:
        return source in self._modifiers

    def sources(self) -> list[str]:
        return list(self._modifiers)

    def multiplier(self, resource_id: str, tags: Iterable[str] = ()) -> float:
        keys = {resource_id, SYSTEM_WIDE_MODIFIER_KEY, *tags}
        product = 1.0
        for modifier in self._modifiers.values():
            for key, factor in modifier.factors.items():
                if key in keys:
                    product *= factor
        return product

    def apply(self, resource_id: str, amount: float, tags: Iterable[str] = ()) -> float:
        return amount * self.multiplier(resource_id, tags)

    def snapshot(self) -> dict[str, dict[str, float]]:
        return {source: dict(modifier.factors) for source, modifier in self._modifiers.items()}

    def __len__(self) -> int:
        return len(self._modifiers)
