"""
Sequence Model — stacked LSTM with explicit recurrent state
============================================================
Step-wise recurrent model used by every ensemble member.

The model is applied one timestep at a time: `step(x_t, state)` returns the
next state and the output. Unrolling `seq_length` steps reuses the same
module, so all timesteps share parameters while autograd keeps an
independent activation record per step.

Architecture:
  x_t → [LSTMCell × num_layers, dropout between layers] → Linear decoder
      → Sigmoid            (num_outputs == 1, MSE criterion)
      → LogSoftmax         (num_outputs > 1,  NLL criterion on 1-based classes)
"""

import logging
from typing import List, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F
from torch.nn.utils import parameters_to_vector, vector_to_parameters

import config

log = logging.getLogger(__name__)


class RecurrentState:
    """Fixed-size array of per-layer (h, c) slots."""

    def __init__(self, slots: List[Tuple[torch.Tensor, torch.Tensor]]):
        self.slots = list(slots)

    @classmethod
    def zeros(cls, num_layers: int, batch: int, rnn_size: int) -> "RecurrentState":
        return cls([(torch.zeros(batch, rnn_size), torch.zeros(batch, rnn_size))
                    for _ in range(num_layers)])

    @property
    def num_layers(self) -> int:
        return len(self.slots)

    @property
    def batch_size(self) -> int:
        return self.slots[0][0].shape[0]

    def detached(self) -> "RecurrentState":
        return RecurrentState([(h.detach(), c.detach()) for h, c in self.slots])

    def clone(self) -> "RecurrentState":
        return RecurrentState([(h.detach().clone(), c.detach().clone()) for h, c in self.slots])

    def select(self, index: int) -> "RecurrentState":
        """Single-lane copy of one batch row."""
        return RecurrentState([(h[index:index + 1].detach().clone(), c[index:index + 1].detach().clone())
                               for h, c in self.slots])


class LSTMSequenceModel(nn.Module):
    def __init__(self, num_inputs: int, num_outputs: int, rnn_size: int,
                 num_layers: int = 1, dropout: float = 0.0):
        super().__init__()
        self.num_inputs = num_inputs
        self.num_outputs = num_outputs
        self.rnn_size = rnn_size
        self.num_layers = num_layers

        self.cells = nn.ModuleList([
            nn.LSTMCell(num_inputs if L == 0 else rnn_size, rnn_size)
            for L in range(num_layers)
        ])
        self.dropout = nn.Dropout(dropout) if dropout > 0 else nn.Identity()
        self.decoder = nn.Linear(rnn_size, num_outputs)

        self.reset_parameters()
        log.debug(f"Created LSTM {num_inputs}→{num_layers}x{rnn_size}→{num_outputs} "
                  f"({self.num_parameters} params)")

    def reset_parameters(self):
        with torch.no_grad():
            for p in self.parameters():
                p.uniform_(-config.PARAM_INIT_RANGE, config.PARAM_INIT_RANGE)
            # gates are ordered i, f, g, o: start with the forget gate open
            for cell in self.cells:
                cell.bias_ih[self.rnn_size:2 * self.rnn_size].fill_(1.0)

    @property
    def num_parameters(self) -> int:
        return sum(p.numel() for p in self.parameters())

    def init_state(self, batch: int = 1) -> RecurrentState:
        return RecurrentState.zeros(self.num_layers, batch, self.rnn_size)

    def step(self, x_t: torch.Tensor, state: RecurrentState) -> Tuple[RecurrentState, torch.Tensor]:
        """One timestep: x_t is (batch, num_inputs)."""
        next_slots = []
        inp = x_t
        for L, cell in enumerate(self.cells):
            h, c = cell(inp, state.slots[L])
            next_slots.append((h, c))
            inp = self.dropout(h) if L < self.num_layers - 1 else h
        out = self.decoder(self.dropout(inp))
        if self.num_outputs == 1:
            out = torch.sigmoid(out).squeeze(-1)
        else:
            out = F.log_softmax(out, dim=-1)
        return RecurrentState(next_slots), out

    def criterion(self, prediction: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        if self.num_outputs == 1:
            return F.mse_loss(prediction, target)
        return F.nll_loss(prediction, target.long() - 1)

    def prediction_value(self, prediction: torch.Tensor) -> float:
        """Map the last-lane output to [0, 1]."""
        if self.num_outputs == 1:
            return float(prediction.reshape(-1)[-1])
        probs = prediction[-1].exp()
        classes = torch.arange(1, self.num_outputs + 1, dtype=probs.dtype)
        expected = float((probs * classes).sum())
        return (expected - 0.5) / self.num_outputs

    def label_value(self, label: float) -> float:
        """Map a label to the same [0, 1] scale as prediction_value."""
        if self.num_outputs == 1:
            return float(label)
        return (float(label) - 0.5) / self.num_outputs

    # ── Flat parameter views ──

    def parameter_vector(self) -> torch.Tensor:
        return parameters_to_vector(self.parameters()).detach().clone()

    def load_parameter_vector(self, vec: torch.Tensor) -> None:
        with torch.no_grad():
            vector_to_parameters(vec.to(dtype=torch.float32), self.parameters())

    def gradient_vector(self) -> torch.Tensor:
        grads = [p.grad.reshape(-1) if p.grad is not None else torch.zeros(p.numel())
                 for p in self.parameters()]
        return torch.cat(grads)
