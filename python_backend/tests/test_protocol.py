"""
Unit tests for frame decoding and reply encoding.
Run: python -m pytest tests/test_protocol.py -v
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import numpy as np
import pytest

from errors import ProtocolError, UnknownCommand
from protocol import (Init, MultiInputs, SingleInput, decode_message, encode_multi_inputs,
                      encode_prediction, encode_request_samples, encode_single_input)


class TestDecode:
    def test_init(self):
        assert decode_message("init,9") == Init(9)

    def test_bytes_frame(self):
        assert decode_message(b"init,3") == Init(3)

    def test_single_input(self):
        msg = decode_message("single_input,1700000000,600,600,101.5")
        assert msg == SingleInput(1700000000, (600.0, 600.0, 101.5))

    def test_trailing_separator_ignored(self):
        assert decode_message("single_input,5,1.0,2.0,\n") == SingleInput(5, (1.0, 2.0))

    def test_multi_inputs(self):
        msg = decode_message("multi_inputs,2,3,10,1.0,2.0,11,3.0,4.0")
        assert isinstance(msg, MultiInputs)
        assert msg.timetags == (10, 11)
        np.testing.assert_array_equal(msg.rows, [[1.0, 2.0], [3.0, 4.0]])
        assert msg.num_rows == 2

    def test_float_formatted_timetag(self):
        msg = decode_message("multi_inputs,1,2,1.7e9,5.0")
        assert msg.timetags == (1700000000,)

    @pytest.mark.parametrize("frame", [
        "",
        "init",
        "init,abc",
        "init,0",
        "single_input,5",
        "single_input,5,x",
        "single_input,5.5,1.0",
        "multi_inputs,2,3,1,1,1",
        "multi_inputs,0,3",
        "multi_inputs,1,1,5",
    ])
    def test_malformed(self, frame):
        with pytest.raises(ProtocolError):
            decode_message(frame)

    def test_unknown_command(self):
        with pytest.raises(UnknownCommand) as exc:
            decode_message("shutdown,now")
        assert exc.value.command == "shutdown"


class TestEncode:
    def test_replies(self):
        assert encode_request_samples(50) == "request_samples,50"
        assert encode_prediction(42, 0.25) == "prediction,42,0.25"

    def test_client_frames_decode_back(self):
        rows = np.array([[600.0, 600.0, 101.25], [601.0, 601.0, 101.5]])
        msg = decode_message(encode_multi_inputs([7, 8], rows))
        assert msg.timetags == (7, 8)
        np.testing.assert_allclose(msg.rows, rows)
        assert decode_message(encode_single_input(9, rows[0])) == SingleInput(9, tuple(rows[0]))

    def test_encode_multi_inputs_shape_check(self):
        with pytest.raises(ProtocolError):
            encode_multi_inputs([1, 2, 3], np.zeros((2, 2)))
