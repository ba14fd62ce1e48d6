"""
Network — one ensemble member
==============================
Bundles a sequence model with the two recurrent carries it owns:

  - train_state: continued across BPTT iterations and training sessions
                 (one lane per minibatch lane)
  - eval_state:  single-lane state used only for inference, tagged with the
                 timetag of the row it enters next

A member becomes ready after its first session that applied at least one
parameter update; only ready members vote in the ensemble prediction.
"""

import logging
from typing import Optional

import numpy as np
import torch

from config import PredictorConfig
from errors import DimensionMismatch
from evaluator import Evaluator, catch_up, forward_window
from predictor_logger import get_logger
from sequence_model import LSTMSequenceModel
from trainer import SessionResult, Trainer

log = logging.getLogger(__name__)


class Network:
    def __init__(self, cfg: PredictorConfig, member_id: int, num_inputs: int):
        self.cfg = cfg
        self.member_id = member_id
        self.num_inputs = num_inputs

        self.model = LSTMSequenceModel(num_inputs, cfg.num_outputs, cfg.rnn_size,
                                       cfg.num_layers, cfg.dropout)
        self.trainer = Trainer(cfg, self.model)
        self.evaluator = Evaluator(cfg)

        lanes = cfg.batch_size if cfg.minibatch_enabled else 1
        self.train_state = self.model.init_state(lanes)
        self.eval_state = self.model.init_state(1)
        self.eval_tag: Optional[int] = None

        self.sessions = 0
        self.ready = False
        self.last_result: Optional[SessionResult] = None
        log.info(f"🧠 Created network {member_id} ({num_inputs} inputs, "
                 f"{self.model.num_parameters} params)")

    def _check_width(self, features: np.ndarray):
        if features.ndim != 2 or features.shape[1] != self.num_inputs:
            raise DimensionMismatch(f"network {self.member_id} input width",
                                    self.num_inputs, features.shape[-1])

    @property
    def epochs(self) -> int:
        return self.cfg.initial_max_epochs if self.sessions == 0 else self.cfg.max_epochs

    def train(self, features: np.ndarray, labels: np.ndarray, timetags=None) -> SessionResult:
        """One training session on the labelled window, followed by an evaluation run."""
        cfg = self.cfg
        self._check_width(features)
        if features.shape[0] != cfg.train_size or labels.shape[0] != cfg.train_size:
            raise DimensionMismatch("labelled rows", cfg.train_size, (features.shape[0], labels.shape[0]))

        rows = cfg.train_rows
        result = self.trainer.run_session(features[:rows], labels[:rows], self.train_state, self.epochs)
        self.train_state = result.carried_state
        self.sessions += 1
        self.last_result = result
        if result.updates > 0:
            self.ready = True

        logger = get_logger()
        logger.log_training(self.member_id, self.sessions, result.updates, result.final_loss,
                            result.duration_sec, diverged=result.diverged)

        if cfg.eval_size > 0:
            self.eval_state, self.eval_tag = self.evaluator.run(
                self.model, self.eval_state, self.eval_tag, features, labels, timetags
            )
            logger.log_evaluation(self.member_id, self.evaluator.current_loss,
                                  self.evaluator.current_sign, len(self.evaluator.predictions))
            table = self.evaluator.prediction_stats()
            for step in range(1, cfg.eval_size + 1):
                logger.log_stats(self.member_id, step, self.evaluator.stats_rows(step, table))

        return result

    def predict(self, features: np.ndarray, timetags=None) -> float:
        """
        Prediction in [0, 1] for the newest row, using the last seq_length rows
        of `features`. Advances the evaluation state by one row.
        """
        seq = self.cfg.seq_length
        self._check_width(features)
        if features.shape[0] < seq:
            raise DimensionMismatch("prediction rows", f">={seq}", features.shape[0])

        x = torch.as_tensor(features, dtype=torch.float32)
        start = features.shape[0] - seq
        state = catch_up(self.model, self.eval_state, self.eval_tag, x, timetags, start)
        self.eval_state, pred = forward_window(self.model, state, x[start:])
        if timetags is not None and start + 1 < len(timetags):
            self.eval_tag = int(timetags[start + 1])
        else:
            # the state already enters the row that has not arrived yet
            self.eval_tag = None
        return self.model.prediction_value(pred)

    def __repr__(self):
        return f"Network(id={self.member_id}, sessions={self.sessions}, ready={self.ready})"
