"""
Unit tests for the round-robin ensemble scheduler.
Run: python -m pytest tests/test_ensemble.py -v
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import numpy as np
import pytest

from ensemble import EnsembleScheduler


class FakeNetwork:
    def __init__(self, cfg, member_id, num_inputs, value=0.75):
        self.member_id = member_id
        self.num_inputs = num_inputs
        self.ready = False
        self.trained = 0
        self.value = value

    def train(self, features, labels, timetags=None):
        self.trained += 1
        self.ready = True

    def predict(self, features, timetags=None):
        return self.value


@pytest.fixture
def features():
    return np.zeros((50, 6)), np.zeros(50)


@pytest.fixture
def ensemble(make_cfg):
    cfg = make_cfg(num_networks=3, train_frequency=1)
    return EnsembleScheduler(cfg, network_factory=FakeNetwork)


class TestTrigger:
    def test_not_before_window(self, tiny_cfg):
        ens = EnsembleScheduler(tiny_cfg)
        assert not ens.should_train(55, 56)
        assert ens.should_train(56, 56)

    def test_frequency(self, tiny_cfg):
        ens = EnsembleScheduler(tiny_cfg)
        fired = [s for s in range(56, 80) if ens.should_train(s, 56)]
        assert fired == [56, 61, 66, 71, 76]


class TestRoundRobin:
    def test_cursor_order_and_wrap(self, ensemble, features):
        ids = [ensemble.maybe_train(100 + i, 100, *features) for i in range(7)]
        assert ids == [1, 2, 3, 1, 2, 3, 1]

    def test_fairness(self, ensemble, features):
        for i in range(9):
            ensemble.maybe_train(100 + i, 100, *features)
        assert [ensemble.members[k].trained for k in (1, 2, 3)] == [3, 3, 3]

    def test_lazy_construction(self, ensemble, features):
        assert ensemble.members == {}
        ensemble.maybe_train(100, 100, *features)
        assert list(ensemble.members) == [1]
        assert ensemble.members[1].num_inputs == 6

    def test_no_trigger_returns_none(self, ensemble, features):
        assert ensemble.maybe_train(99, 100, *features) is None
        assert ensemble.cursor == 0

    def test_reset(self, ensemble, features):
        ensemble.maybe_train(100, 100, *features)
        ensemble.reset()
        assert ensemble.members == {} and ensemble.cursor == 0


class TestPrediction:
    def test_zero_without_ready_members(self, ensemble, features):
        assert ensemble.get_prediction(features[0]) == 0.0

    def test_average_of_centered_ready_members(self, make_cfg, features):
        values = iter([0.75, 0.25, 1.0])
        cfg = make_cfg(num_networks=3, train_frequency=1)
        ens = EnsembleScheduler(cfg, lambda c, i, n: FakeNetwork(c, i, n, next(values)))
        ens.maybe_train(100, 100, *features)
        ens.maybe_train(101, 100, *features)
        # members 1 and 2 ready: (0.5 + -0.5) / 2
        assert ens.get_prediction(features[0]) == pytest.approx(0.0)
        ens.maybe_train(102, 100, *features)
        assert ens.get_prediction(features[0]) == pytest.approx((0.5 - 0.5 + 1.0) / 3)
        assert len(ens.ready_members()) == 3
