"""
Trainer — truncated BPTT sessions
==================================
One session = `epochs * iterations_per_epoch` optimizer iterations over the
training window of one ensemble member.

Each iteration unrolls the model for seq_length steps starting from the
member's carried recurrent state, averages the per-step loss, backpropagates
from the last step to the first (no gradient enters from before the window)
and clips the flat gradient elementwise. The state after the first step of
the window becomes the carried state for the next iteration, so consecutive
iterations continue the recurrence instead of restarting it.

Divergence guard: a NaN loss, or a loss above DIVERGENCE_FACTOR times the
first loss of the session, stops the session before that iteration's update
is applied.
"""

import logging
import time
from typing import List, Optional, Tuple

import numpy as np
import torch
from scipy.optimize import minimize

import config
from config import PredictorConfig
from errors import DimensionMismatch, Diverged
from sequence_model import LSTMSequenceModel, RecurrentState

log = logging.getLogger(__name__)


def build_minibatches(features: np.ndarray, labels: np.ndarray, seq_length: int,
                      batch_size: int, batch_num_seqs: int):
    """
    Interleaved minibatches over the training window.

    Builds seq_length*batch_num_seqs batches of shape (seq_length, batch_size, nf).
    Batch b, lane i, timestep t reads row b + i*stride + t with
    stride = seq_length*batch_num_seqs, so lanes never overlap and batch b+1
    is batch b shifted by one row.
    """
    needed = config.minibatch_rows(batch_size, batch_num_seqs, seq_length)
    if features.shape[0] < needed:
        raise DimensionMismatch("training rows for minibatches", needed, features.shape[0])
    if labels.shape[0] != features.shape[0]:
        raise DimensionMismatch("features/labels rows", features.shape[0], labels.shape[0])

    stride = seq_length * batch_num_seqs
    lanes = np.arange(batch_size) * stride
    steps = np.arange(seq_length)

    x_batches, y_batches = [], []
    for b in range(stride):
        idx = b + steps[:, None] + lanes[None, :]          # (seq_length, batch_size)
        x_batches.append(torch.as_tensor(features[idx], dtype=torch.float32))
        y_batches.append(torch.as_tensor(labels[idx], dtype=torch.float32))
    return x_batches, y_batches


class SessionResult:
    def __init__(self, iterations_planned: int):
        self.iterations_planned = iterations_planned
        self.losses: List[float] = []
        self.updates = 0
        self.diverged = False
        self.diverged_at: Optional[int] = None
        self.carried_state: Optional[RecurrentState] = None
        self.duration_sec = 0.0

    @property
    def final_loss(self) -> float:
        return self.losses[-1] if self.losses else float("nan")

    def __repr__(self):
        return (f"SessionResult(updates={self.updates}/{self.iterations_planned}, "
                f"loss={self.final_loss:.6f}, diverged={self.diverged})")


class _EvalBudgetExhausted(Exception):
    pass


class Trainer:
    def __init__(self, cfg: PredictorConfig, model: LSTMSequenceModel):
        self.cfg = cfg
        self.model = model
        self._x_batches = None
        self._y_batches = None
        self._features = None
        self._labels = None

    # ── Session data ──

    def iterations_per_epoch(self, n_rows: int) -> int:
        if self.cfg.minibatch_enabled:
            return self.cfg.batch_num_seqs * self.cfg.seq_length
        return n_rows - self.cfg.seq_length + 1

    def prepare(self, features: np.ndarray, labels: np.ndarray) -> int:
        """Load one training window; returns the number of iterations per epoch."""
        cfg = self.cfg
        if features.shape[0] != labels.shape[0]:
            raise DimensionMismatch("features/labels rows", features.shape[0], labels.shape[0])
        if cfg.minibatch_enabled:
            self._x_batches, self._y_batches = build_minibatches(
                features, labels, cfg.seq_length, cfg.batch_size, cfg.batch_num_seqs
            )
        else:
            if features.shape[0] < cfg.seq_length:
                raise DimensionMismatch("training rows", f">={cfg.seq_length}", features.shape[0])
            self._features = torch.as_tensor(features, dtype=torch.float32)
            self._labels = torch.as_tensor(labels, dtype=torch.float32)
        return self.iterations_per_epoch(features.shape[0])

    def batch(self, k: int) -> Tuple[torch.Tensor, torch.Tensor]:
        """k-th batch of the epoch as (seq_length, lanes, nf) / (seq_length, lanes)."""
        if self.cfg.minibatch_enabled:
            return self._x_batches[k], self._y_batches[k]
        seq = self.cfg.seq_length
        x = self._features[k:k + seq].unsqueeze(1)
        y = self._labels[k:k + seq].unsqueeze(1)
        return x, y

    # ── Forward / backward ──

    def train_step(self, x: torch.Tensor, y: torch.Tensor,
                   state: RecurrentState) -> Tuple[float, RecurrentState]:
        """
        Forward-unroll + backward over one window, leaving clipped gradients in
        the model parameters. Returns (loss, state after the first timestep).
        """
        self.model.train()
        self.model.zero_grad()

        seq = x.shape[0]
        state = state.detached()
        carry = state
        loss = 0.0
        for t in range(seq):
            state, pred = self.model.step(x[t], state)
            if t == 0:
                carry = state
            loss = loss + self.model.criterion(pred, y[t])
        loss = loss / seq
        loss.backward()

        clip = self.cfg.grad_clip
        for p in self.model.parameters():
            if p.grad is not None:
                p.grad.clamp_(-clip, clip)

        return float(loss.detach()), carry.detached()

    # ── Session ──

    def _check_divergence(self, iteration: int, loss: float, loss0: Optional[float]):
        if loss != loss:
            raise Diverged(iteration, loss, "loss is NaN")
        if loss0 is not None and loss > loss0 * config.DIVERGENCE_FACTOR:
            raise Diverged(iteration, loss, "loss is exploding")

    def _rmsprop_iteration(self, optimizer, iteration, x, y, state, loss0):
        loss, carry = self.train_step(x, y, state)
        self._check_divergence(iteration, loss, loss0)
        optimizer.step()
        return loss, carry

    def _cg_iteration(self, iteration, x, y, state, loss0):
        """Conjugate-gradient on the flat parameter vector (maxIter / maxEval bounded)."""
        x0 = self.model.parameter_vector().double().numpy()
        evals = {"count": 0, "first": None, "best": None}

        def fun(w):
            if evals["count"] >= config.CG_MAX_EVAL:
                raise _EvalBudgetExhausted()
            evals["count"] += 1
            self.model.load_parameter_vector(torch.from_numpy(w))
            loss, carry = self.train_step(x, y, state)
            if evals["first"] is None:
                # the reported loss is the one at the starting point
                self._check_divergence(iteration, loss, loss0)
                evals["first"] = (loss, carry)
            if not np.isfinite(loss):
                return float(np.finfo(np.float64).max), np.zeros_like(w)
            if evals["best"] is None or loss < evals["best"][0]:
                evals["best"] = (loss, w.copy())
            return loss, self.model.gradient_vector().double().numpy()

        try:
            res = minimize(fun, x0, jac=True, method="CG",
                           options={"maxiter": config.CG_MAX_ITER})
            final = res.x if np.isfinite(res.fun) else None
        except _EvalBudgetExhausted:
            final = None
        except Diverged:
            self.model.load_parameter_vector(torch.from_numpy(x0))
            raise

        if final is None:
            final = evals["best"][1] if evals["best"] is not None else x0
        self.model.load_parameter_vector(torch.from_numpy(final))
        loss, carry = evals["first"]
        return loss, carry

    def run_session(self, features: np.ndarray, labels: np.ndarray,
                    carried_state: RecurrentState, epochs: int) -> SessionResult:
        """
        Train on one window. Never raises Diverged: a diverging session stops
        early and is reported through the result, keeping every update applied
        before the offending iteration.
        """
        cfg = self.cfg
        per_epoch = self.prepare(features, labels)
        iterations = epochs * per_epoch
        result = SessionResult(iterations)

        optimizer = None
        if cfg.optim == "rmsprop":
            optimizer = torch.optim.RMSprop(self.model.parameters(), lr=cfg.learning_rate,
                                            alpha=cfg.decay_rate, eps=1e-8)

        state = carried_state
        loss0 = None
        start = time.perf_counter()

        for i in range(1, iterations + 1):
            x, y = self.batch((i - 1) % per_epoch)
            t0 = time.perf_counter()
            try:
                if optimizer is not None:
                    loss, state_next = self._rmsprop_iteration(optimizer, i, x, y, state, loss0)
                else:
                    loss, state_next = self._cg_iteration(i, x, y, state, loss0)
            except Diverged as e:
                log.warning(f"⚠️ {e}, aborting session after {result.updates} updates")
                result.diverged = True
                result.diverged_at = i
                result.losses.append(e.loss)
                break

            state = state_next
            result.losses.append(loss)
            result.updates += 1
            if loss0 is None:
                loss0 = loss

            if i % cfg.print_every == 0:
                pnorm = float(self.model.parameter_vector().norm())
                gnorm = float(self.model.gradient_vector().norm())
                log.debug(
                    f"{i}/{iterations} (epoch {i / per_epoch:.3f}), train_loss = {loss:6.8f}, "
                    f"grad/param norm = {gnorm / max(pnorm, 1e-12):6.4e}, "
                    f"time/batch = {time.perf_counter() - t0:.4f}s"
                )

        result.carried_state = state
        result.duration_sec = time.perf_counter() - start
        return result
