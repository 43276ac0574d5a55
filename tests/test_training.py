"""End-to-end epoch drivers on a small synthetic task.

Each query has a given node labeled 10 or 20 and an inferred neighbour that
must be labeled 11 or 21 respectively.
"""

import pytest

from graphinfer import GraphInference, InferenceConfig, evaluate, train_pl, train_ssvm


def _dataset(gi, n=20):
    examples = []
    for i in range(n):
        src = 10 if i % 2 == 0 else 20
        qb = gi.create_query()
        qb.add_node(type="given")
        qb.add_node(type="var", candidates=[11, 21])
        qb.add_arc(0, 1, 0)
        q = qb.build()
        g = gi.create_assignment(q)
        g.set_given(0, src)
        g.set_label(1, src + 1)
        gi.add_query_to_model(q, g)
        examples.append((q, g))
    return examples


@pytest.mark.parametrize("workers", [1, 4])
def test_train_ssvm_learns_the_task(workers):
    gi = GraphInference(InferenceConfig())
    examples = _dataset(gi)
    gi.initialize_feature_weights(0.0)
    gi.ssvm_init(0.5)

    history = train_ssvm(gi, examples, epochs=3, learning_rate=0.1, num_workers=workers)

    assert len(history) == 3
    assert history[-1].precision == 1.0
    assert history[0].precision <= history[-1].precision
    assert gi.store.all_finite()
    assert evaluate(gi, examples).precision == 1.0


def test_train_pl_learns_the_task():
    gi = GraphInference(InferenceConfig())
    examples = _dataset(gi)
    gi.initialize_feature_weights(0.01)
    gi.pl_init(4)

    history = train_pl(gi, examples, epochs=3, learning_rate=0.5)

    assert len(history) == 3
    assert history[-1] > history[0]
    assert evaluate(gi, examples).precision == 1.0


def test_evaluate_with_bp_solver():
    gi = GraphInference(InferenceConfig(solver="bp"))
    examples = _dataset(gi)
    gi.initialize_feature_weights(0.0)
    train_ssvm(gi, examples, epochs=2, learning_rate=0.1, num_workers=2)
    stats = evaluate(gi, examples)
    assert stats.precision == 1.0
    assert stats.num_known_predictions == len(examples)
