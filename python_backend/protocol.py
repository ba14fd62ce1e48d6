"""
Wire protocol — comma-separated text frames
============================================
Frames are decoded exactly once, at the channel boundary, into one of three
message types. Handlers dispatch on the type, never on raw strings.

    init,<numRawInputs>                                   → Init
    single_input,<timetag>,<f1>,...,<fn>                  → SingleInput
    multi_inputs,<nrows>,<ncols>,<tag>,<f1..fn>,...       → MultiInputs
                 (ncols counts the timetag column)

Replies:
    request_samples,<trainSize>
    prediction,<timetag>,<value>
"""

from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np

from errors import ProtocolError, UnknownCommand

CMD_INIT = "init"
CMD_SINGLE_INPUT = "single_input"
CMD_MULTI_INPUTS = "multi_inputs"
REPLY_REQUEST_SAMPLES = "request_samples"
REPLY_PREDICTION = "prediction"


@dataclass(frozen=True)
class Init:
    num_raw_inputs: int


@dataclass(frozen=True)
class SingleInput:
    timetag: int
    values: Tuple[float, ...]


@dataclass(frozen=True)
class MultiInputs:
    timetags: Tuple[int, ...]
    rows: np.ndarray  # (nrows, ncols - 1)

    @property
    def num_rows(self) -> int:
        return len(self.timetags)


Message = Union[Init, SingleInput, MultiInputs]


def _parse_int(field: str, what: str) -> int:
    try:
        return int(field)
    except ValueError:
        pass
    try:
        value = float(field)
    except ValueError:
        raise ProtocolError(f"Invalid {what}: '{field}'") from None
    if not value.is_integer():
        raise ProtocolError(f"Invalid {what}: '{field}'")
    return int(value)


def _parse_floats(fields, what: str) -> Tuple[float, ...]:
    try:
        return tuple(float(f) for f in fields)
    except ValueError:
        raise ProtocolError(f"Non-numeric {what} in frame") from None


def decode_message(frame) -> Message:
    """Decode one text frame. Raises UnknownCommand or ProtocolError."""
    if isinstance(frame, bytes):
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError:
            raise ProtocolError("Frame is not valid UTF-8") from None

    fields = [f.strip() for f in frame.strip().split(",")]
    fields = [f for f in fields if f]
    if not fields:
        raise ProtocolError("Empty frame")

    cmd, args = fields[0], fields[1:]

    if cmd == CMD_INIT:
        if len(args) != 1:
            raise ProtocolError(f"init expects 1 argument, got {len(args)}")
        num = _parse_int(args[0], "numRawInputs")
        if num < 1:
            raise ProtocolError(f"numRawInputs must be positive, got {num}")
        return Init(num)

    if cmd == CMD_SINGLE_INPUT:
        if len(args) < 2:
            raise ProtocolError("single_input expects a timetag and at least one value")
        return SingleInput(_parse_int(args[0], "timetag"), _parse_floats(args[1:], "value"))

    if cmd == CMD_MULTI_INPUTS:
        if len(args) < 2:
            raise ProtocolError("multi_inputs expects nrows and ncols")
        nrows = _parse_int(args[0], "nrows")
        ncols = _parse_int(args[1], "ncols")
        if nrows < 1 or ncols < 2:
            raise ProtocolError(f"Invalid multi_inputs geometry {nrows}x{ncols}")
        data = args[2:]
        if len(data) != nrows * ncols:
            raise ProtocolError(f"multi_inputs size mismatch: expected {nrows * ncols} fields, got {len(data)}")

        table = np.array(_parse_floats(data, "value"), dtype=np.float64).reshape(nrows, ncols)
        timetags = tuple(_parse_int(data[i * ncols], "timetag") for i in range(nrows))
        return MultiInputs(timetags, table[:, 1:].copy())

    raise UnknownCommand(cmd)


# ── Encoders ──

def _fmt(value: float) -> str:
    return f"{value:.8g}"


def encode_request_samples(train_size: int) -> str:
    return f"{REPLY_REQUEST_SAMPLES},{train_size}"


def encode_prediction(timetag: int, value: float) -> str:
    return f"{REPLY_PREDICTION},{timetag},{_fmt(value)}"


def encode_init(num_raw_inputs: int) -> str:
    return f"{CMD_INIT},{num_raw_inputs}"


def encode_single_input(timetag: int, values) -> str:
    return ",".join([CMD_SINGLE_INPUT, str(int(timetag))] + [_fmt(v) for v in values])


def encode_multi_inputs(timetags, rows) -> str:
    rows = np.asarray(rows, dtype=np.float64)
    if rows.ndim != 2 or rows.shape[0] != len(timetags):
        raise ProtocolError(f"Cannot encode {len(timetags)} timetags with rows of shape {rows.shape}")
    fields = [CMD_MULTI_INPUTS, str(rows.shape[0]), str(rows.shape[1] + 1)]
    for tag, row in zip(timetags, rows):
        fields.append(str(int(tag)))
        fields.extend(_fmt(v) for v in row)
    return ",".join(fields)
