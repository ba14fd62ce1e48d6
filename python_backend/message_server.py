"""
Message Server — online predictor state machine + ZeroMQ loop
==============================================================
OnlinePredictor owns the raw buffer, the feature pipeline and the ensemble,
and turns decoded messages into replies:

    UNINITIALIZED ──init──▶ READY ──init / single_input / multi_inputs──▶ READY

MessageServer drains every frame that is immediately available on the
channel, then sleeps idle_sleep seconds before polling again. Frames are
processed strictly in arrival order on a single thread.
"""

import logging
import time
from enum import Enum
from typing import Optional

import numpy as np
import zmq

from config import PredictorConfig
from ensemble import EnsembleScheduler
from errors import DimensionMismatch, NotInitialized, ProtocolError, REQUEST_ERRORS
from feature_pipeline import FeaturePipeline
from predictor_logger import PredictorLogger, get_logger
from protocol import (Init, Message, MultiInputs, SingleInput, decode_message,
                      encode_prediction, encode_request_samples)
from sliding_buffer import SlidingBuffer

log = logging.getLogger(__name__)


class PredictorState(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


class OnlinePredictor:
    def __init__(self, cfg: PredictorConfig, ensemble: Optional[EnsembleScheduler] = None):
        self.cfg = cfg
        self.pipeline = FeaturePipeline(cfg)
        self.ensemble = ensemble if ensemble is not None else EnsembleScheduler(cfg)
        self.logger = get_logger(cfg.suffix)

        self.state = PredictorState.UNINITIALIZED
        self.buffer: Optional[SlidingBuffer] = None
        self.num_raw_inputs: Optional[int] = None

        # untrimmed features (newest rows included) used for live predictions
        self.eval_features: Optional[np.ndarray] = None
        self.eval_timetags: Optional[np.ndarray] = None

        self._handlers = {
            Init: self._on_init,
            SingleInput: self._on_single_input,
            MultiInputs: self._on_multi_inputs,
        }

    def handle(self, message: Message) -> Optional[str]:
        return self._handlers[type(message)](message)

    def handle_frame(self, frame) -> Optional[str]:
        return self.handle(decode_message(frame))

    # ── Handlers ──

    def _on_init(self, msg: Init) -> str:
        try:
            n_symbols = self.pipeline.num_symbols(msg.num_raw_inputs)
        except DimensionMismatch as e:
            raise ProtocolError(f"Unusable numRawInputs={msg.num_raw_inputs}: {e}") from e

        self.num_raw_inputs = msg.num_raw_inputs
        self.buffer = SlidingBuffer(self.cfg.required_window, msg.num_raw_inputs)
        self.pipeline.reset()
        self.ensemble.reset()
        self.eval_features = None
        self.eval_timetags = None
        self.state = PredictorState.READY

        self.logger.log_system(
            f"Initialized: {msg.num_raw_inputs} raw inputs, {n_symbols} symbol(s), "
            f"{self.pipeline.feature_width(n_symbols)} features, window {self.cfg.required_window}"
        )
        return encode_request_samples(self.cfg.train_size)

    def _check_ready(self, width: int):
        if self.state is not PredictorState.READY:
            raise NotInitialized("Received samples before init")
        if width != self.num_raw_inputs:
            raise ProtocolError(f"Expected {self.num_raw_inputs} raw inputs, got {width}")

    def _on_single_input(self, msg: SingleInput) -> str:
        self._check_ready(len(msg.values))
        start = time.perf_counter()

        self.buffer.append(msg.timetag, msg.values)
        self.update_features()

        pred = self.get_prediction()
        value = 0.5 + pred / 2.0
        self.logger.log_prediction(msg.timetag, value, len(self.ensemble.ready_members()),
                                   (time.perf_counter() - start) * 1000)
        return encode_prediction(msg.timetag, value)

    def _on_multi_inputs(self, msg: MultiInputs) -> None:
        self._check_ready(msg.rows.shape[1])
        self.buffer.append_batch(msg.timetags, msg.rows)
        log.debug(f"Received {msg.num_rows} samples ({self.buffer.total_appended} total)")
        self.update_features()
        return None

    # ── Pipeline ──

    @PredictorLogger.timed("update_features")
    def update_features(self) -> bool:
        """
        Regenerate features and labels from the full buffer and give the
        ensemble a chance to train. Returns False while the buffer is filling.
        """
        if not self.buffer.is_full:
            return False

        timetags, rows = self.buffer.snapshot()
        features, ftags = self.pipeline.generate_features(rows, timetags)
        self.eval_features, self.eval_timetags = features, ftags

        labelled, labels, ltags = self.pipeline.generate_labels(features, ftags)
        if labelled.shape[0] != self.cfg.train_size:
            raise DimensionMismatch("labelled feature rows", self.cfg.train_size, labelled.shape[0])

        self.ensemble.maybe_train(self.buffer.total_appended, self.cfg.required_window,
                                  labelled, labels, ltags)
        return True

    def get_prediction(self) -> float:
        """Centered ensemble prediction in [-1, 1] for the newest row."""
        if self.eval_features is None:
            return 0.0
        return self.ensemble.get_prediction(self.eval_features, self.eval_timetags)


class ZmqChannel:
    """PAIR socket bound on all interfaces; non-blocking receive."""

    def __init__(self, port: int, context: Optional[zmq.Context] = None):
        self.context = context or zmq.Context.instance()
        self.socket = self.context.socket(zmq.PAIR)
        self.address = f"tcp://*:{port}"
        self.socket.bind(self.address)
        log.info(f"🔌 Listening on {self.address}")

    def recv(self) -> Optional[str]:
        try:
            return self.socket.recv_string(flags=zmq.NOBLOCK)
        except zmq.Again:
            return None

    def send(self, text: str) -> None:
        self.socket.send_string(text)

    def close(self) -> None:
        self.socket.close(linger=0)


class MessageServer:
    def __init__(self, predictor: OnlinePredictor, channel, idle_sleep: Optional[float] = None):
        self.predictor = predictor
        self.channel = channel
        self.idle_sleep = predictor.cfg.idle_sleep if idle_sleep is None else idle_sleep
        self.logger = predictor.logger
        self._running = False
        self.frames_processed = 0

    def process_frame(self, frame) -> Optional[str]:
        """Decode and dispatch one frame; request-scoped failures are logged and dropped."""
        try:
            return self.predictor.handle_frame(frame)
        except REQUEST_ERRORS as e:
            self.logger.log_error(f"Rejected frame '{str(frame)[:60]}'", e)
            return None

    def run_once(self) -> int:
        """Drain every available frame. Returns how many were processed."""
        count = 0
        while True:
            frame = self.channel.recv()
            if frame is None:
                break
            reply = self.process_frame(frame)
            if reply is not None:
                self.channel.send(reply)
            count += 1
        self.frames_processed += count
        return count

    def run(self) -> None:
        self._running = True
        self.logger.log_system("Message loop started")
        try:
            while self._running:
                if self.run_once() == 0:
                    time.sleep(self.idle_sleep)
        finally:
            self.logger.log_system(f"Message loop stopped after {self.frames_processed} frames")

    def stop(self) -> None:
        self._running = False
