"""Shared fixtures for graphinfer tests."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

import pytest

from graphinfer import GraphInference, InferenceConfig, Query


def build_chain(
    gi: GraphInference,
    n: int,
    candidates: Optional[Iterable[int]] = (1, 2),
    arc_type: int = 0,
) -> Query:
    """n nodes, arcs i -> i+1 of one type."""
    qb = gi.create_query()
    for _ in range(n):
        qb.add_node(candidates=candidates)
    for i in range(n - 1):
        qb.add_arc(i, i + 1, arc_type)
    return qb.build()


def gold_for(gi: GraphInference, query: Query, labels: Sequence[int], given: Sequence[int] = ()):
    a = gi.create_assignment(query)
    for n in given:
        a.set_given(n, labels[n])
    a.set_labels({n: lab for n, lab in enumerate(labels) if n not in given})
    return a


@pytest.fixture
def gi() -> GraphInference:
    return GraphInference(InferenceConfig())


@pytest.fixture
def chain():
    return build_chain


@pytest.fixture
def gold():
    return gold_for
