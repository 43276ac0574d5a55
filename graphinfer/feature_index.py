# graphinfer/feature_index.py
# -*- coding: utf-8 -*-

"""
Best-feature index.

The factor graph can have very high fan-out, so the solvers never scan the
whole weight store to generate moves. Instead one offline pass over the store
builds ranked (weight desc) top-K tables, and a move like "what should node X
be, given its neighbour is labeled L through an arc of type T" becomes a
bounded lookup.

Everything is exposed through two "top-K consistent with a partial labeling"
queries:

  top_pairwise(a=None, b=None, type=None)
      a + type   -> best features with that left label and arc type
      b + type   -> best features with that right label and arc type
      type       -> best features of that arc type
      a / b      -> best features with that label on that side, any type
      a and b    -> ValueError (an exact pair is a WeightStore.get)

  top_factors(size, fixed_labels=())
      depth 0    -> best factor features of that size
      depth 1    -> ... containing fixed_labels[0]
      depth 2    -> ... containing both fixed labels (as a multiset)

Internally each depth/role is a separate dict of lists.

The index is a snapshot: rebuild() must run after training and before
inference, and must not overlap with writers to the store.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from itertools import combinations
from typing import Dict, Hashable, List, Optional, Sequence, Tuple

from .features import UNKNOWN_LABEL, FactorFeature, PairwiseFeature
from .weights import WeightStore


_logger = logging.getLogger(__name__)

PairEntry = Tuple[float, PairwiseFeature]
FactorEntry = Tuple[float, FactorFeature]


def _rank(table: Dict[Hashable, list], k: int) -> Dict[Hashable, list]:
    out: Dict[Hashable, list] = {}
    for key, entries in table.items():
        entries.sort(key=lambda e: (-e[0], e[1]))
        out[key] = entries[:k]
    return out


class FeatureIndex:
    def __init__(self, top_k: int = 32, unknown_label: int = UNKNOWN_LABEL):
        self.top_k = int(top_k)
        self.unknown_label = int(unknown_label)
        self.version = 0
        self._clear()

    def _clear(self) -> None:
        self._pair_by_a_type: Dict[Tuple[int, int], List[PairEntry]] = {}
        self._pair_by_b_type: Dict[Tuple[int, int], List[PairEntry]] = {}
        self._pair_by_type: Dict[int, List[PairEntry]] = {}
        self._pair_by_a: Dict[int, List[PairEntry]] = {}
        self._pair_by_b: Dict[int, List[PairEntry]] = {}
        self._factor_by_size: Dict[int, List[FactorEntry]] = {}
        self._factor_depth_one: Dict[Tuple[int, int], List[FactorEntry]] = {}
        self._factor_depth_two: Dict[Tuple[int, int, int], List[FactorEntry]] = {}

    def rebuild(self, store: WeightStore) -> None:
        by_a_type: Dict[Tuple[int, int], List[PairEntry]] = defaultdict(list)
        by_b_type: Dict[Tuple[int, int], List[PairEntry]] = defaultdict(list)
        by_type: Dict[int, List[PairEntry]] = defaultdict(list)
        by_a: Dict[int, List[PairEntry]] = defaultdict(list)
        by_b: Dict[int, List[PairEntry]] = defaultdict(list)
        f_size: Dict[int, List[FactorEntry]] = defaultdict(list)
        f_one: Dict[Tuple[int, int], List[FactorEntry]] = defaultdict(list)
        f_two: Dict[Tuple[int, int, int], List[FactorEntry]] = defaultdict(list)

        n_pair = 0
        n_factor = 0
        for key, w in store.items():
            if isinstance(key, PairwiseFeature):
                if not key.is_known(self.unknown_label):
                    continue
                e = (w, key)
                by_a_type[(key.a, key.type)].append(e)
                by_b_type[(key.b, key.type)].append(e)
                by_type[key.type].append(e)
                by_a[key.a].append(e)
                by_b[key.b].append(e)
                n_pair += 1
            elif isinstance(key, FactorFeature):
                if not key.is_known(self.unknown_label):
                    continue
                fe = (w, key)
                size = key.size
                f_size[size].append(fe)
                counts = Counter(key.labels)
                for lab in counts:
                    f_one[(size, lab)].append(fe)
                pairs = set(combinations(key.labels, 2))
                for l1, l2 in pairs:
                    f_two[(size, l1, l2)].append(fe)
                n_factor += 1

        k = self.top_k
        self._pair_by_a_type = _rank(by_a_type, k)
        self._pair_by_b_type = _rank(by_b_type, k)
        self._pair_by_type = _rank(by_type, k)
        self._pair_by_a = _rank(by_a, k)
        self._pair_by_b = _rank(by_b, k)
        self._factor_by_size = _rank(f_size, k)
        self._factor_depth_one = _rank(f_one, k)
        self._factor_depth_two = _rank(f_two, k)
        self.version += 1
        _logger.debug(
            "feature index v%d rebuilt: %d pairwise, %d factor features (top_k=%d)",
            self.version, n_pair, n_factor, k,
        )

    # -----------------------------
    # Queries
    # -----------------------------

    def top_pairwise(
        self,
        a: Optional[int] = None,
        b: Optional[int] = None,
        type: Optional[int] = None,
    ) -> List[PairEntry]:
        if a is not None and b is not None:
            raise ValueError("top_pairwise takes a or b, not both; read an exact pair with WeightStore.get")
        if a is not None:
            if type is not None:
                return self._pair_by_a_type.get((a, type), [])
            return self._pair_by_a.get(a, [])
        if b is not None:
            if type is not None:
                return self._pair_by_b_type.get((b, type), [])
            return self._pair_by_b.get(b, [])
        if type is not None:
            return self._pair_by_type.get(type, [])
        raise ValueError("top_pairwise needs at least one of a, b, type")

    def top_factors(self, size: int, fixed_labels: Sequence[int] = ()) -> List[FactorEntry]:
        depth = len(fixed_labels)
        if depth == 0:
            return self._factor_by_size.get(size, [])
        if depth == 1:
            return self._factor_depth_one.get((size, fixed_labels[0]), [])
        if depth == 2:
            l1, l2 = sorted(fixed_labels)
            return self._factor_depth_two.get((size, l1, l2), [])
        raise ValueError(f"top_factors supports at most two fixed labels, got {depth}")

    def __len__(self) -> int:
        return sum(len(v) for v in self._pair_by_type.values()) + sum(
            len(v) for v in self._factor_by_size.values()
        )


__all__ = ["FeatureIndex"]
