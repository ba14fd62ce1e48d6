"""
Evaluator — held-out walk and prediction statistics
=====================================================
After each training session the member is scored on the eval_size rows that
follow its training window. The walk uses the member's own evaluation state
(never the training carry), advanced exactly as it is advanced when serving
live predictions.

Per step:
  - loss on the last timestep of the window
  - sign agreement between prediction and label around the 0.5 midpoint
    (for classifiers both are rescaled so the class centre maps to 0.5)
  - EMAs of loss and sign accuracy (smoothing = ema_adaptation)

Statistics table: for thresholds 0.0 … 0.9 and each step position, over all
predictions recorded so far whose centered magnitude |p-0.5|*2 exceeds the
threshold: count, hit rate and Pearson correlation with the centered labels.
"""

import logging
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
import torch

import config
from config import PredictorConfig
from errors import DimensionMismatch
from sequence_model import LSTMSequenceModel, RecurrentState

log = logging.getLogger(__name__)


def correlation(a, b) -> float:
    """Pearson correlation; 0.0 below 3 samples or when either side is constant."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise DimensionMismatch("correlation inputs", a.shape, b.shape)
    n = a.shape[0]
    if n < 3:
        return 0.0
    ma, mb = a.mean(), b.mean()
    va = np.sum(a * a) - n * ma * ma
    vb = np.sum(b * b) - n * mb * mb
    if va <= 0.0 or vb <= 0.0:
        return 0.0
    rho = (np.sum(a * b) - n * ma * mb) / (np.sqrt(va) * np.sqrt(vb))
    return float(rho) if np.isfinite(rho) else 0.0


def catch_up(model: LSTMSequenceModel, state: RecurrentState, tag: Optional[int],
             features: torch.Tensor, timetags, start: int) -> RecurrentState:
    """
    Advance `state` from the row tagged `tag` up to row `start`.

    Used when rows arrived since the state was last stored (e.g. after a bulk
    ingest). Unknown tags leave the state as is.
    """
    if tag is None or timetags is None or start <= 0:
        return state
    hits = np.nonzero(np.asarray(timetags)[:start] == tag)[0]
    if hits.size == 0:
        return state
    model.eval()
    with torch.no_grad():
        for r in range(int(hits[-1]), start):
            state, _ = model.step(features[r:r + 1], state)
    return state


def forward_window(model: LSTMSequenceModel, state: RecurrentState,
                   window: torch.Tensor) -> Tuple[RecurrentState, torch.Tensor]:
    """
    Inference over one (seq_length, nf) window.

    Returns (state after the first timestep, last output).
    """
    model.eval()
    first = state
    pred = None
    with torch.no_grad():
        for t in range(window.shape[0]):
            state, pred = model.step(window[t:t + 1], state)
            if t == 0:
                first = state
    return first.clone(), pred


class Evaluator:
    def __init__(self, cfg: PredictorConfig):
        self.cfg = cfg
        self.alpha = cfg.ema_adaptation
        self.current_loss: Optional[float] = None
        self.current_sign = 0.5

        self.timetags: List[int] = []
        self.steps: List[int] = []
        self.predictions: List[float] = []
        self.labels: List[float] = []
        self.loss_emas: List[float] = []
        self.sign_emas: List[float] = []

    def run(self, model: LSTMSequenceModel, eval_state: RecurrentState, eval_tag: Optional[int],
            features: np.ndarray, labels: np.ndarray, timetags=None):
        """
        Walk the held-out rows. Returns (new eval state, timetag of the row it enters).
        """
        cfg = self.cfg
        seq = cfg.seq_length
        if features.shape[0] != cfg.train_size or labels.shape[0] != cfg.train_size:
            raise DimensionMismatch("evaluation rows", cfg.train_size, (features.shape[0], labels.shape[0]))

        x = torch.as_tensor(features, dtype=torch.float32)
        y = torch.as_tensor(labels, dtype=torch.float32)

        start = cfg.train_rows - seq + 1
        state = catch_up(model, eval_state, eval_tag, x, timetags, start)
        log.debug(f"Starting evaluation at offset position: {cfg.train_rows}")

        for n in range(1, cfg.eval_size + 1):
            r = cfg.train_rows + n - 1
            s = r - seq + 1
            state, pred = forward_window(model, state, x[s:r + 1])

            with torch.no_grad():
                loss = float(model.criterion(pred, y[r:r + 1]))
            pval = model.prediction_value(pred)
            yval = model.label_value(labels[r])
            tag = int(timetags[r]) if timetags is not None else r
            self.record(n, tag, pval, yval, loss)
            log.debug(f"Prediction: {pval:.6f}, real value: {yval:.6f}")

        last = cfg.train_rows + cfg.eval_size - seq + 1
        next_tag = int(timetags[last]) if timetags is not None and last < len(timetags) else None
        return state, next_tag

    def record(self, step: int, timetag: int, pred: float, label: float, loss: float) -> None:
        alpha = self.alpha
        good = 1.0 if (pred - 0.5) * (label - 0.5) > 0.0 else 0.0

        self.current_loss = loss if self.current_loss is None else \
            self.current_loss * (1.0 - alpha) + loss * alpha
        self.current_sign = self.current_sign * (1.0 - alpha) + good * alpha

        self.timetags.append(timetag)
        self.steps.append(step)
        self.predictions.append(pred)
        self.labels.append(label)
        self.loss_emas.append(self.current_loss)
        self.sign_emas.append(self.current_sign)

    # ── Statistics ──

    @property
    def thresholds(self) -> np.ndarray:
        return np.arange(config.NUM_CONFIDENCE_THRESHOLDS) / config.NUM_CONFIDENCE_THRESHOLDS

    def prediction_stats(self) -> np.ndarray:
        """(thresholds, eval_size, 3) table of [count, hit rate, correlation]."""
        table = np.zeros((config.NUM_CONFIDENCE_THRESHOLDS, self.cfg.eval_size, 3))
        if not self.predictions:
            return table

        p = (np.asarray(self.predictions) - 0.5) * 2.0
        b = (np.asarray(self.labels) - 0.5) * 2.0
        steps = np.asarray(self.steps)

        for i, thr in enumerate(self.thresholds):
            for n in range(1, self.cfg.eval_size + 1):
                mask = (np.abs(p) > thr) & (steps == n)
                count = int(mask.sum())
                hits = float(np.sum(p[mask] * b[mask] > 0.0))
                table[i, n - 1, 0] = count
                table[i, n - 1, 1] = hits / count if count > 0 else 0.0
                table[i, n - 1, 2] = correlation(p[mask], b[mask])
        return table

    def stats_rows(self, step: int, table: Optional[np.ndarray] = None):
        if table is None:
            table = self.prediction_stats()
        return [(float(thr), int(table[i, step - 1, 0]), table[i, step - 1, 1], table[i, step - 1, 2])
                for i, thr in enumerate(self.thresholds)]

    # ── History export ──

    def history_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            "timetag": self.timetags,
            "step": self.steps,
            "prediction": self.predictions,
            "label": self.labels,
            "loss_ema": self.loss_emas,
            "sign_ema": self.sign_emas,
        })

    def export_history(self, path: str) -> None:
        self.history_frame().to_csv(path, index=False)
        log.info(f"Saved evaluation history ({len(self.predictions)} rows) to {path}")
