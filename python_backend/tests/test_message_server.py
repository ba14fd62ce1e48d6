"""
Integration tests for the online predictor state machine and message loop.
Run: python -m pytest tests/test_message_server.py -v
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from collections import deque

import numpy as np
import pytest

from errors import CapacityExceeded, DimensionMismatch, NotInitialized, ProtocolError
from message_server import MessageServer, OnlinePredictor, PredictorState
from protocol import Init, MultiInputs, SingleInput, encode_multi_inputs, encode_single_input


class FakeChannel:
    def __init__(self, frames=()):
        self.inbox = deque(frames)
        self.outbox = []

    def recv(self):
        return self.inbox.popleft() if self.inbox else None

    def send(self, text):
        self.outbox.append(text)


@pytest.fixture
def predictor(tiny_cfg):
    return OnlinePredictor(tiny_cfg)


def _feed(predictor, tags, rows):
    replies = []
    for tag, row in zip(tags, rows):
        replies.append(predictor.handle(SingleInput(int(tag), tuple(row))))
    return replies


class TestOnlinePredictor:
    def test_init_requests_train_size(self, predictor):
        assert predictor.handle(Init(9)) == "request_samples,50"
        assert predictor.state is PredictorState.READY
        assert predictor.buffer.capacity == predictor.cfg.required_window
        assert predictor.buffer.width == 9

    def test_samples_before_init(self, predictor):
        with pytest.raises(NotInitialized):
            predictor.handle(SingleInput(1, (1.0,) * 9))

    def test_width_must_match_init(self, predictor):
        predictor.handle(Init(9))
        with pytest.raises(ProtocolError):
            predictor.handle(SingleInput(1, (1.0,) * 8))

    def test_unusable_raw_width(self, make_cfg):
        p = OnlinePredictor(make_cfg(with_close_only=False))
        with pytest.raises(ProtocolError):
            p.handle(Init(9))   # 7 price columns is not a multiple of 4

    def test_zero_prediction_while_filling(self, predictor, raw_stream):
        predictor.handle(Init(9))
        tags, rows = raw_stream(10)
        replies = _feed(predictor, tags, rows)
        assert replies[-1] == f"prediction,{tags[-1]},0.5"
        assert predictor.ensemble.members == {}

    def test_first_prediction_after_window(self, predictor, raw_stream):
        cfg = predictor.cfg
        predictor.handle(Init(9))
        tags, rows = raw_stream(cfg.required_window)
        replies = _feed(predictor, tags, rows)

        cmd, tag, value = replies[-1].split(",")
        assert cmd == "prediction" and int(tag) == tags[-1]
        assert 0.0 <= float(value) <= 1.0
        assert list(predictor.ensemble.members) == [1]
        assert predictor.ensemble.members[1].ready
        # untrimmed features keep the newest, unlabelled row
        assert predictor.eval_features.shape[0] == cfg.train_size + cfg.label_offset
        assert predictor.eval_timetags[-1] == tags[-1]

    def test_training_schedule(self, predictor, raw_stream):
        cfg = predictor.cfg
        predictor.handle(Init(9))
        tags, rows = raw_stream(cfg.required_window + 2 * cfg.train_frequency)
        _feed(predictor, tags, rows)
        assert sorted(predictor.ensemble.members) == [1, 2]
        assert predictor.ensemble.cursor == 1
        assert predictor.ensemble.members[1].sessions == 2

    def test_multi_inputs_no_reply(self, predictor, raw_stream):
        predictor.handle(Init(9))
        tags, rows = raw_stream(predictor.cfg.required_window)
        assert predictor.handle(MultiInputs(tuple(tags), rows)) is None
        assert predictor.buffer.is_full
        assert 1 in predictor.ensemble.members

    def test_oversized_multi_inputs(self, predictor, raw_stream):
        predictor.handle(Init(9))
        tags, rows = raw_stream(predictor.cfg.required_window + 1)
        _feed(predictor, tags[:3], rows[:3])
        before_tags, before_rows = predictor.buffer.snapshot()

        with pytest.raises(CapacityExceeded):
            predictor.handle(MultiInputs(tuple(tags), rows))
        np.testing.assert_array_equal(predictor.buffer.timetags, before_tags)
        np.testing.assert_array_equal(predictor.buffer.rows, before_rows)
        assert predictor.buffer.total_appended == 3

    def test_reinit_discards_everything(self, predictor, raw_stream):
        predictor.handle(Init(9))
        tags, rows = raw_stream(predictor.cfg.required_window)
        predictor.handle(MultiInputs(tuple(tags), rows))
        assert len(predictor.pipeline.stats) > 0

        predictor.handle(Init(9))
        assert predictor.ensemble.members == {}
        assert len(predictor.pipeline.stats) == 0
        assert predictor.buffer.total_appended == 0
        assert predictor.eval_features is None

    def test_label_count_mismatch_propagates(self, predictor, raw_stream):
        predictor.handle(Init(9))
        tags, rows = raw_stream(predictor.cfg.required_window)
        predictor.handle(MultiInputs(tuple(tags), rows))
        predictor.cfg = predictor.cfg.model_copy(update={"train_size": 49})
        with pytest.raises(DimensionMismatch):
            predictor.update_features()


class TestMessageServer:
    def test_drains_all_frames_and_replies(self, predictor, raw_stream):
        tags, rows = raw_stream(3)
        frames = ["init,9"] + [encode_single_input(t, r) for t, r in zip(tags, rows)]
        channel = FakeChannel(frames)
        server = MessageServer(predictor, channel, idle_sleep=0)

        assert server.run_once() == 4
        assert channel.outbox[0] == "request_samples,50"
        assert [r.split(",")[0] for r in channel.outbox[1:]] == ["prediction"] * 3
        assert server.run_once() == 0

    def test_request_errors_are_logged_and_loop_continues(self, predictor, raw_stream, read_events):
        tags, rows = raw_stream(2)
        frames = [
            "single_input,1,1,1,1,1,1,1,1,1,1",   # before init
            "bogus,1",
            "init,9",
            encode_multi_inputs(np.arange(100), np.ones((100, 9))),   # over capacity
            encode_single_input(tags[0], rows[0]),
        ]
        channel = FakeChannel(frames)
        server = MessageServer(predictor, channel, idle_sleep=0)
        assert server.run_once() == 5
        assert channel.outbox[0] == "request_samples,50"
        assert channel.outbox[1].startswith(f"prediction,{tags[0]},")

        errors = [e for e in read_events() if e["kind"] == "error"]
        assert len(errors) == 3

    def test_run_stops(self, predictor):
        channel = FakeChannel(["init,9"])
        server = MessageServer(predictor, channel, idle_sleep=0)
        original = server.run_once

        def run_once_then_stop():
            n = original()
            if n == 0:
                server.stop()
            return n

        server.run_once = run_once_then_stop
        server.run()
        assert channel.outbox == ["request_samples,50"]
        assert server.frames_processed == 1
