"""
Ensemble Scheduler — round-robin training, averaged predictions
================================================================
Only one member is retrained per trigger. Members are created lazily on
their first turn, so the ensemble warms up one network at a time.

Trigger:   samples_received >= required_window
           and (samples_received - required_window) % train_frequency == 0
Cursor:    0 before the first trigger, then 1, 2, ..., num_networks, 1, ...
Prediction: mean of (p - 0.5) * 2 over ready members, 0.0 when none is ready.
"""

import logging
from typing import Callable, Dict, List, Optional

import numpy as np

from config import PredictorConfig
from network import Network

log = logging.getLogger(__name__)


class EnsembleScheduler:
    def __init__(self, cfg: PredictorConfig,
                 network_factory: Optional[Callable[[PredictorConfig, int, int], Network]] = None):
        self.cfg = cfg
        self.network_factory = network_factory or Network
        self.members: Dict[int, Network] = {}
        self.cursor = 0

    def reset(self) -> None:
        self.members.clear()
        self.cursor = 0

    @property
    def size(self) -> int:
        return self.cfg.num_networks

    def ready_members(self) -> List[Network]:
        return [net for _, net in sorted(self.members.items()) if net.ready]

    def should_train(self, samples_received: int, required_window: int) -> bool:
        if samples_received < required_window:
            return False
        return (samples_received - required_window) % self.cfg.train_frequency == 0

    def next_member(self) -> int:
        self.cursor = self.cursor % self.size + 1
        return self.cursor

    def maybe_train(self, samples_received: int, required_window: int,
                    features: np.ndarray, labels: np.ndarray, timetags=None) -> Optional[int]:
        """Train the next member if a trigger is due. Returns its id, or None."""
        if not self.should_train(samples_received, required_window):
            return None

        member_id = self.next_member()
        net = self.members.get(member_id)
        if net is None:
            net = self.network_factory(self.cfg, member_id, features.shape[1])
            self.members[member_id] = net

        log.debug(f"Training network {member_id} at sample {samples_received}")
        net.train(features, labels, timetags)
        return member_id

    def get_prediction(self, features: np.ndarray, timetags=None) -> float:
        ready = self.ready_members()
        if not ready:
            return 0.0
        preds = [(net.predict(features, timetags) - 0.5) * 2.0 for net in ready]
        return float(np.mean(preds))
