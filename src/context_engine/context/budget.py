"""Token budget allocation across context categories.

Splits an overall token ceiling into per-category sub-budgets for
conversation messages, retrieved memory and plan metadata.

Default allocation:
- messages: 50% (bounded to 100..4000)
- memory:   35% (bounded to 50..3000)
- plan:     15% (bounded to 50..2000)

Each category starts at floor(weight * max_tokens), is clamped to its
bounds, then the difference to max_tokens is redistributed in
proportion to weight across categories that can still move in the
needed direction. Remaining integer tokens go one at a time to the free
categories in weight order.
"""

from __future__ import annotations

import math
from enum import Enum

from pydantic import BaseModel

CATEGORIES = ("messages", "memory", "plan")
MAX_REDISTRIBUTION_PASSES = 8


class DegeneratePolicy(str, Enum):
    """What to return when max_tokens is below the sum of the floors."""

    FLOORS = "floors"  # return the floors unchanged (sum exceeds max_tokens)
    SCALE = "scale"  # scale the floors down so the sum fits


class CategoryBounds(BaseModel):
    weight: float
    floor: int
    ceiling: int


DEFAULT_BOUNDS: dict[str, CategoryBounds] = {
    "messages": CategoryBounds(weight=0.50, floor=100, ceiling=4000),
    "memory": CategoryBounds(weight=0.35, floor=50, ceiling=3000),
    "plan": CategoryBounds(weight=0.15, floor=50, ceiling=2000),
}


class BudgetAllocation(BaseModel):
    """Per-category token sub-budgets."""

    messages: int
    memory: int
    plan: int
    degenerate: bool = False

    @property
    def total(self) -> int:
        return self.messages + self.memory + self.plan

    def for_part(self, part: str) -> int:
        return getattr(self, part)


class TokenBudgetAllocator:
    """Pure, deterministic ceiling -> sub-budget function.

    Usage:
        allocator = TokenBudgetAllocator()
        allocation = allocator.allocate(8000)
        # BudgetAllocation(messages=4000, memory=2800, plan=1200)
    """

    def __init__(
        self,
        bounds: dict[str, CategoryBounds] | None = None,
        degenerate_policy: DegeneratePolicy = DegeneratePolicy.FLOORS,
    ) -> None:
        bounds = bounds or DEFAULT_BOUNDS
        missing = set(CATEGORIES) - set(bounds)
        if missing:
            raise ValueError(f"Missing bounds for categories: {sorted(missing)}")
        for name, b in bounds.items():
            if b.weight <= 0 or b.floor < 0 or b.ceiling < b.floor:
                raise ValueError(f"Invalid bounds for category '{name}': {b}")

        self._bounds = {name: bounds[name] for name in CATEGORIES}
        self._policy = DegeneratePolicy(degenerate_policy)
        # Leftover tokens are handed out in this order
        self._weight_order = sorted(
            CATEGORIES, key=lambda c: (-self._bounds[c].weight, CATEGORIES.index(c))
        )

    @property
    def floor_total(self) -> int:
        return sum(b.floor for b in self._bounds.values())

    def allocate(self, max_tokens: int) -> BudgetAllocation:
        """Split ``max_tokens`` into sub-budgets. Never raises."""
        max_tokens = max(int(max_tokens), 0)

        if max_tokens < self.floor_total:
            return self._degenerate(max_tokens)

        values = {
            c: self._clamp(c, math.floor(self._bounds[c].weight * max_tokens))
            for c in CATEGORIES
        }

        for _ in range(MAX_REDISTRIBUTION_PASSES):
            delta = max_tokens - sum(values.values())
            if delta == 0:
                break
            free = self._free(values, delta)
            if not free:
                break
            free_weight = sum(self._bounds[c].weight for c in free)
            moved = False
            for c in free:
                share = int(delta * self._bounds[c].weight / free_weight)
                updated = self._clamp(c, values[c] + share)
                if updated != values[c]:
                    values[c] = updated
                    moved = True
            if not moved:
                break

        self._distribute_leftover(values, max_tokens)
        return BudgetAllocation(**values)

    # ── Internals ───────────────────────────────────────────────────────────

    def _clamp(self, category: str, value: int) -> int:
        b = self._bounds[category]
        return min(max(value, b.floor), b.ceiling)

    def _free(self, values: dict[str, int], delta: int) -> list[str]:
        if delta > 0:
            return [c for c in CATEGORIES if values[c] < self._bounds[c].ceiling]
        return [c for c in CATEGORIES if values[c] > self._bounds[c].floor]

    def _distribute_leftover(self, values: dict[str, int], max_tokens: int) -> None:
        delta = max_tokens - sum(values.values())
        step = 1 if delta > 0 else -1
        while delta != 0:
            free = [c for c in self._weight_order if c in self._free(values, delta)]
            if not free:
                return
            for c in free:
                if delta == 0:
                    break
                values[c] += step
                delta -= step

    def _degenerate(self, max_tokens: int) -> BudgetAllocation:
        floors = {c: self._bounds[c].floor for c in CATEGORIES}
        if self._policy == DegeneratePolicy.FLOORS:
            return BudgetAllocation(**floors, degenerate=True)

        floor_total = self.floor_total
        scaled = {c: floors[c] * max_tokens // floor_total for c in CATEGORIES}
        return BudgetAllocation(**scaled, degenerate=True)
