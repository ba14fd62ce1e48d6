"""
Shared fixtures: isolated log directory, logger singleton reset, tiny
configurations and synthetic raw price streams.
"""

import os
import sys
import tempfile

os.environ.setdefault("PREDICTOR_HOME", tempfile.mkdtemp(prefix="predictor_test_"))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import numpy as np
import pytest

import config
from predictor_logger import PredictorLogger


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path, monkeypatch):
    """Every test writes logs/events into its own tmp dir."""
    monkeypatch.setattr(config, "LOG_DIR", str(tmp_path))
    if PredictorLogger._instance is not None:
        PredictorLogger._instance.close()
    PredictorLogger._instance = None
    yield tmp_path
    if PredictorLogger._instance is not None:
        PredictorLogger._instance.close()
    PredictorLogger._instance = None


TINY_OPTIONS = {
    "num_networks": 2,
    "train_frequency": 5,
    "batch_size": 0,
    "seq_length": 5,
    "train_size": 50,
    "warmup_offset": 5,
    "eval_size": 5,
    "rnn_size": 8,
    "max_epochs": 1,
    "initial_max_epochs": 1,
    "print_every": 1000,
}


@pytest.fixture
def make_cfg():
    def _make(**overrides):
        options = dict(TINY_OPTIONS)
        options.update(overrides)
        return config.load_config(options)
    return _make


@pytest.fixture
def tiny_cfg(make_cfg):
    return make_cfg()


def make_raw_stream(n_rows, n_symbols=7, seed=7, start_minute=600):
    """(timetags, rows) with minute-of-week, minute-of-day and n_symbols close prices."""
    rng = np.random.default_rng(seed)
    minutes = start_minute + np.arange(n_rows)
    week = minutes % config.WEEK_MINUTES
    day = minutes % config.DAY_MINUTES
    prices = 100.0 * np.exp(np.cumsum(rng.normal(0.0, 0.002, size=(n_rows, n_symbols)), axis=0))
    rows = np.column_stack([week, day, prices])
    timetags = 1_700_000_000 + 60 * np.arange(n_rows)
    return timetags.astype(np.int64), rows


@pytest.fixture
def raw_stream():
    return make_raw_stream


@pytest.fixture
def read_events(isolated_logs):
    """Parsed events.jsonl of one run (default suffix)."""
    import json

    def _read(suffix=config.DEFAULTS["suffix"]):
        path = isolated_logs / suffix / "events.jsonl"
        return [json.loads(line) for line in path.read_text().splitlines()]
    return _read
