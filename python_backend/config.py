"""
Online RNN Predictor — Configuration
=====================================
Central configuration for all modules.

Paths and the default option table live at module level. Components never
read the option table directly: they receive a frozen ``PredictorConfig``
built once by ``load_config()``, which fails fast on missing or invalid
options.
"""

import os
import logging
from typing import Literal, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from errors import ConfigInvalid, ConfigMissing


# ── Paths ─────────────────────────────────────────────
DATA_ROOT = os.environ.get("PREDICTOR_HOME", os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = os.path.join(DATA_ROOT, "data")
LOG_DIR = os.path.join(DATA_ROOT, "logs")

for _d in [DATA_DIR, LOG_DIR]:
    os.makedirs(_d, exist_ok=True)

_env_path = os.path.join(DATA_ROOT, ".env")
if os.path.exists(_env_path):
    load_dotenv(_env_path)
else:
    load_dotenv()

# ── System Settings ───────────────────────────────────
VERSION = "v1.4.0"
ENV_PREFIX = "PREDICTOR_"

# ── Time normalization ────────────────────────────────
DAY_MINUTES = 24 * 60
WEEK_MINUTES = 5 * DAY_MINUTES     # trading week: Monday → Friday

# ── Training guards ───────────────────────────────────
DIVERGENCE_FACTOR = 300.0          # abort when loss > factor * first session loss
PARAM_INIT_RANGE = 0.08
CG_MAX_EVAL = 6
CG_MAX_ITER = 2

# ── Evaluation statistics ─────────────────────────────
NUM_CONFIDENCE_THRESHOLDS = 10     # 0.0, 0.1, ... 0.9

# ── Default options ───────────────────────────────────
# train_size=None means "derive from the minibatch geometry".
DEFAULTS = {
    # server
    "local_port": 7000,
    "suffix": "v1",
    "seed": 123,
    "idle_sleep": 0.002,
    # ensemble
    "num_networks": 4,
    "train_frequency": 5,
    # windows
    "batch_size": 40,
    "batch_num_seqs": 1,
    "seq_length": 10,
    "train_size": None,
    "warmup_offset": 20,
    "eval_size": 5,
    # features
    "with_close_only": True,
    "ema_base_period": 5,
    "num_emas": 0,
    "num_remas": 1,
    "rsi_period": 0,
    "log_return_offsets": (),
    "log_return_ema_period": 0,
    # labels
    "label_offset": 1,
    "forecast_index": 0,
    "num_classes": 1,
    # model
    "rnn_size": 64,
    "num_layers": 1,
    "dropout": 0.0,
    # optimization
    "optim": "rmsprop",
    "learning_rate": 2e-3,
    "decay_rate": 0.95,
    "grad_clip": 5.0,
    "max_epochs": 3,
    "initial_max_epochs": 100,
    "ema_adaptation": 0.1,
    "print_every": 50,
}


def minibatch_rows(batch_size: int, batch_num_seqs: int, seq_length: int) -> int:
    """Rows needed to build batch_num_seqs*seq_length interleaved minibatches."""
    return batch_size * batch_num_seqs * seq_length + (batch_num_seqs * seq_length - 1)


class PredictorConfig(BaseModel):
    """Immutable, validated option set shared by every component."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    local_port: int
    suffix: str
    seed: int
    idle_sleep: float

    num_networks: int
    train_frequency: int

    batch_size: int
    batch_num_seqs: int
    seq_length: int
    train_size: int
    warmup_offset: int
    eval_size: int

    with_close_only: bool
    ema_base_period: int
    num_emas: int
    num_remas: int
    rsi_period: int
    log_return_offsets: Tuple[int, ...]
    log_return_ema_period: int

    label_offset: int
    forecast_index: int
    num_classes: int

    rnn_size: int
    num_layers: int
    dropout: float

    optim: Literal["rmsprop", "cg"]
    learning_rate: float
    decay_rate: float
    grad_clip: float
    max_epochs: int
    initial_max_epochs: int
    ema_adaptation: float
    print_every: int

    @field_validator("log_return_offsets", mode="before")
    @classmethod
    def _split_offsets(cls, value):
        # "3,5" on the command line / in the environment
        if isinstance(value, str):
            return tuple(int(v) for v in value.split(",") if v.strip())
        return value

    @model_validator(mode="after")
    def _check_ranges(self):
        positive = ["num_networks", "train_frequency", "batch_num_seqs", "seq_length",
                    "label_offset", "num_classes", "rnn_size", "num_layers",
                    "ema_base_period", "print_every"]
        for name in positive:
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1 (got {getattr(self, name)})")
        non_negative = ["batch_size", "warmup_offset", "eval_size", "num_emas", "num_remas",
                        "rsi_period", "forecast_index", "max_epochs", "initial_max_epochs"]
        for name in non_negative:
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0 (got {getattr(self, name)})")
        if any(off < 1 for off in self.log_return_offsets):
            raise ValueError(f"log_return_offsets must all be >= 1 (got {self.log_return_offsets})")
        if not 0.0 < self.ema_adaptation <= 1.0:
            raise ValueError(f"ema_adaptation must be in (0, 1] (got {self.ema_adaptation})")
        if self.train_rows < self.seq_length:
            raise ValueError(
                f"train_size - eval_size must hold at least one sequence "
                f"({self.train_rows} < seq_length={self.seq_length})"
            )
        if self.batch_size > 0:
            needed = minibatch_rows(self.batch_size, self.batch_num_seqs, self.seq_length)
            if self.train_rows < needed:
                raise ValueError(
                    f"train_size - eval_size too small for minibatches ({self.train_rows} < {needed})"
                )
        return self

    # ── Derived sizes ──

    @property
    def required_window(self) -> int:
        """Raw rows needed: labelled rows + indicator warm-up + the unlabelled tail."""
        return self.train_size + self.warmup_offset + self.label_offset

    @property
    def train_rows(self) -> int:
        return self.train_size - self.eval_size

    @property
    def minibatch_enabled(self) -> bool:
        return self.batch_size > 0

    @property
    def num_outputs(self) -> int:
        return self.num_classes


def _env_overrides() -> dict:
    """Collect PREDICTOR_<OPTION> environment variables for known options."""
    overrides = {}
    for key in DEFAULTS:
        raw = os.getenv(ENV_PREFIX + key.upper())
        if raw is not None and raw != "":
            overrides[key] = raw
    return overrides


def load_config(options: Optional[dict] = None, use_defaults: bool = True) -> PredictorConfig:
    """
    Build the immutable configuration.

    Precedence: DEFAULTS < PREDICTOR_* environment < explicit options.
    Raises ConfigMissing listing every absent option, ConfigInvalid on any
    value that fails validation.
    """
    merged = dict(DEFAULTS) if use_defaults else {}
    merged.update(_env_overrides())
    merged.update(options or {})

    if merged.get("train_size") is None:
        try:
            if int(merged.get("batch_size") or 0) > 0:
                merged["train_size"] = minibatch_rows(
                    int(merged["batch_size"]), int(merged["batch_num_seqs"]), int(merged["seq_length"])
                ) + int(merged["eval_size"])
        except (KeyError, TypeError, ValueError):
            pass  # reported below as missing/invalid

    missing = [name for name in PredictorConfig.model_fields if merged.get(name) is None]
    if missing:
        raise ConfigMissing(missing)

    try:
        cfg = PredictorConfig(**merged)
    except ValidationError as e:
        raise ConfigInvalid(str(e)) from e

    logging.getLogger(__name__).debug(
        f"Config loaded: train_size={cfg.train_size} window={cfg.required_window} "
        f"networks={cfg.num_networks} optim={cfg.optim}"
    )
    return cfg
