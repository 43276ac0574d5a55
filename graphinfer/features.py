# graphinfer/features.py
# -*- coding: utf-8 -*-

"""
Feature keys used by the weight store.

Two kinds of keys:
- PairwiseFeature(a, b, type): a binary relation between a node labeled `a`
  and a node labeled `b`, through an arc of the given type.
- FactorFeature(labels): the sorted multiset of labels currently assigned to
  the members of a higher-order factor.

Both are frozen value types: structural equality, a hash over every field and
a total order, so they can be used as dict keys and sorted deterministically.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple


UNKNOWN_LABEL: int = -1


@dataclass(frozen=True, order=True)
class PairwiseFeature:
    a: int
    b: int
    type: int

    def is_known(self, unknown_label: int = UNKNOWN_LABEL) -> bool:
        return self.a != unknown_label and self.b != unknown_label


@dataclass(frozen=True, order=True)
class FactorFeature:
    labels: Tuple[int, ...]

    def __post_init__(self) -> None:
        if len(self.labels) == 0:
            raise ValueError("FactorFeature needs at least one label")
        if list(self.labels) != sorted(self.labels):
            object.__setattr__(self, "labels", tuple(sorted(self.labels)))

    @classmethod
    def of(cls, labels: Iterable[int]) -> "FactorFeature":
        return cls(tuple(sorted(int(x) for x in labels)))

    @property
    def size(self) -> int:
        return len(self.labels)

    def contains_all(self, labels: Iterable[int]) -> bool:
        """True if `labels` (as a multiset) is contained in this factor's labels."""
        rest = list(self.labels)
        for lab in labels:
            if lab in rest:
                rest.remove(lab)
            else:
                return False
        return True

    def without(self, labels: Iterable[int]) -> Tuple[int, ...]:
        """Multiset difference; caller must check `contains_all` first."""
        rest = list(self.labels)
        for lab in labels:
            rest.remove(lab)
        return tuple(rest)

    def is_known(self, unknown_label: int = UNKNOWN_LABEL) -> bool:
        return unknown_label not in self.labels


__all__ = ["UNKNOWN_LABEL", "PairwiseFeature", "FactorFeature"]
