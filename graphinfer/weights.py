# graphinfer/weights.py
# -*- coding: utf-8 -*-

"""
Hash-keyed feature weight storage.

Keys are PairwiseFeature or FactorFeature. Each key owns one LockFreeWeight
cell. Writers never wait on a lock:

- add_delta() appends the delta to the cell's pending list. list.append is a
  single bytecode-level operation under the GIL, so concurrent SSVM workers
  can hit the same cell without losing a delta (Hogwild).
- Once a cell holds PENDING_LIMIT deltas, the writer that notices folds the
  oldest ones into the base. Only one compaction runs at a time (try-lock,
  never waited on); appends are never blocked, so the list stays bounded
  and reads stay cheap during an epoch.
- get() returns base + sum(pending). A reader racing a writer may or may not
  see the newest delta; it never sees a torn value.
- fold() / set() compact pending deltas into the base value. They are only
  legal while no concurrent writer is running (model load, index rebuild,
  pseudo-likelihood learning).

Missing keys read as 0.0 and are created lazily on the first write.
"""

from __future__ import annotations

import math
import threading
from typing import Dict, Iterator, List, Tuple, Union

from .features import FactorFeature, PairwiseFeature


FeatureKey = Union[PairwiseFeature, FactorFeature]

PENDING_LIMIT = 64

_compact_lock = threading.Lock()


class LockFreeWeight:
    __slots__ = ("_base", "_pending")

    def __init__(self, value: float = 0.0):
        self._base = float(value)
        self._pending: List[float] = []

    @property
    def value(self) -> float:
        pending = self._pending
        if not pending:
            return self._base
        return self._base + math.fsum(pending)

    def add(self, delta: float) -> None:
        self._pending.append(float(delta))
        if len(self._pending) >= PENDING_LIMIT:
            self._compact()

    def _compact(self) -> None:
        if not _compact_lock.acquire(blocking=False):
            return
        try:
            pending = self._pending
            n = len(pending)
            total = math.fsum(pending[:n])
            # readers racing this window may miss these deltas once
            del pending[:n]
            self._base += total
        finally:
            _compact_lock.release()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def set(self, value: float) -> None:
        self._base = float(value)
        self._pending = []

    def fold(self) -> None:
        if self._pending:
            self.set(self.value)

    def __repr__(self) -> str:
        return f"LockFreeWeight({self.value!r})"


class WeightStore:
    """
    Contract:
      get(key) -> float
      add_delta(key, delta)   (concurrency-safe)
      set(key, value)         (single-threaded)
      items()                 (enumeration for persistence / index building)
    """

    def __init__(self) -> None:
        self._cells: Dict[FeatureKey, LockFreeWeight] = {}

    def __len__(self) -> int:
        return len(self._cells)

    def __contains__(self, key: object) -> bool:
        return key in self._cells

    def _cell(self, key: FeatureKey) -> LockFreeWeight:
        cell = self._cells.get(key)
        if cell is None:
            # dict.setdefault is atomic in CPython: two racing creators end up
            # sharing whichever cell won.
            cell = self._cells.setdefault(key, LockFreeWeight())
        return cell

    def get(self, key: FeatureKey) -> float:
        cell = self._cells.get(key)
        if cell is None:
            return 0.0
        return cell.value

    def add_delta(self, key: FeatureKey, delta: float) -> None:
        self._cell(key).add(delta)

    def set(self, key: FeatureKey, value: float) -> None:
        self._cell(key).set(value)

    def register(self, key: FeatureKey) -> None:
        """Make `key` enumerable without changing its weight."""
        self._cell(key)

    def fold(self) -> None:
        for cell in list(self._cells.values()):
            cell.fold()

    def clear(self) -> None:
        self._cells = {}

    def items(self) -> Iterator[Tuple[FeatureKey, float]]:
        for key, cell in list(self._cells.items()):
            yield key, cell.value

    def pairwise_items(self) -> Iterator[Tuple[PairwiseFeature, float]]:
        for key, w in self.items():
            if isinstance(key, PairwiseFeature):
                yield key, w

    def factor_items(self) -> Iterator[Tuple[FactorFeature, float]]:
        for key, w in self.items():
            if isinstance(key, FactorFeature):
                yield key, w

    def pending_deltas(self) -> int:
        """Unfolded deltas across all cells."""
        return sum(cell.pending_count for cell in list(self._cells.values()))

    def all_finite(self) -> bool:
        return all(math.isfinite(w) for _, w in self.items())


__all__ = ["FeatureKey", "PENDING_LIMIT", "LockFreeWeight", "WeightStore"]
