"""Diff-and-apply primitive shared by segments, endpoints and flows."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Hashable, Mapping, TypeVar

K = TypeVar("K", bound=Hashable)


@dataclass
class ReconcilePlan(Generic[K]):
    """Actions that move observed state to desired state."""

    create: list[K] = field(default_factory=list)
    update: list[K] = field(default_factory=list)
    delete: list[K] = field(default_factory=list)
    keep: list[K] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not (self.create or self.update or self.delete)


def reconcile(
    desired: Mapping[K, Any],
    observed: Mapping[K, Any],
    differs: Callable[[Any, Any], bool] | None = None,
) -> ReconcilePlan[K]:
    """Compare desired and observed resources keyed by identity.

    Keys only in ``desired`` are created, keys only in ``observed`` are
    deleted. Keys in both are kept unless ``differs(desired, observed)``
    says the live resource no longer matches, in which case they are
    updated. Each list is sorted so callers act in a stable order.
    """
    plan: ReconcilePlan[K] = ReconcilePlan()
    for key in sorted(desired.keys() | observed.keys()):
        if key not in observed:
            plan.create.append(key)
        elif key not in desired:
            plan.delete.append(key)
        elif differs is not None and differs(desired[key], observed[key]):
            plan.update.append(key)
        else:
            plan.keep.append(key)
    return plan
