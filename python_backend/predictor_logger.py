"""
Online RNN Predictor — Session Logger
======================================
One logger per process, writing under a run directory named after the
configured suffix:

    LOG_DIR/<suffix>/session.log     rotating text log (DEBUG and up)
    LOG_DIR/<suffix>/events.jsonl    one JSON object per event

Every record goes through `_emit`, which writes the text line and the event
together. Event kinds: training, evaluation, stats, prediction, system,
error, timing.

Usage:
    from predictor_logger import get_logger
    logger = get_logger("v1")
    logger.log_training(member=1, session=3, iterations=30, loss=0.21, duration_sec=0.4)
"""

import json
import logging
import logging.handlers
import os
import time
from datetime import datetime
from functools import wraps

import config

LOGGER_NAME = "predictor"
SESSION_LOG = "session.log"
EVENTS_LOG = "events.jsonl"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3


def run_dir(suffix: str) -> str:
    return os.path.join(config.LOG_DIR, suffix)


def _json_default(value):
    # numpy scalars expose .item()
    if hasattr(value, "item"):
        return value.item()
    return str(value)


def _build_handlers(log_path: str):
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    ))

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    return [file_handler, console]


class PredictorLogger:
    _instance = None

    def __new__(cls, suffix: str = None):
        if cls._instance is None:
            instance = super().__new__(cls)
            instance._setup(suffix or config.DEFAULTS["suffix"])
            cls._instance = instance
        return cls._instance

    def _setup(self, suffix: str):
        self.suffix = suffix
        self.run_dir = run_dir(suffix)
        os.makedirs(self.run_dir, exist_ok=True)
        self.log_path = os.path.join(self.run_dir, SESSION_LOG)
        self.events_path = os.path.join(self.run_dir, EVENTS_LOG)
        self.started = datetime.now()

        self.logger = logging.getLogger(LOGGER_NAME)
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False
        for handler in list(self.logger.handlers):
            handler.close()
            self.logger.removeHandler(handler)
        for handler in _build_handlers(self.log_path):
            self.logger.addHandler(handler)

        self._events = open(self.events_path, "a", encoding="utf-8")
        self.logger.info(f"Run '{suffix}' started {self.started:%Y-%m-%d %H:%M:%S} "
                         f"(version {config.VERSION}, logs in {self.run_dir})")

    def close(self):
        if not self._events.closed:
            self._events.close()
        for handler in list(self.logger.handlers):
            handler.close()
            self.logger.removeHandler(handler)

    def _emit(self, kind: str, message: str, level: int = logging.INFO, /, **fields):
        self.logger.log(level, f"{kind.upper():<10}| {message}")
        if self._events.closed:
            return
        record = {"ts": datetime.now().isoformat(), "run": self.suffix, "kind": kind, **fields}
        self._events.write(json.dumps(record, default=_json_default) + "\n")
        self._events.flush()

    # ── Training / evaluation ──

    def log_training(self, member: int, session: int, iterations: int, loss: float,
                     duration_sec: float, diverged: bool = False):
        status = "diverged" if diverged else "ok"
        self._emit(
            "training",
            f"net {member} session {session} {status}: {iterations} iterations, "
            f"loss {loss:.6f} in {duration_sec:.2f}s",
            logging.WARNING if diverged else logging.INFO,
            member=member, session=session, iterations=iterations, loss=loss,
            duration_sec=duration_sec, diverged=diverged,
        )

    def log_evaluation(self, member: int, loss_ema: float, sign_ema: float, steps: int):
        self._emit(
            "evaluation",
            f"net {member}: loss EMA {loss_ema:.6f}, sign EMA {sign_ema:.1%} over {steps} predictions",
            member=member, loss_ema=loss_ema, sign_ema=sign_ema, steps=steps,
        )

    def log_stats(self, member: int, step: int, rows: list):
        """rows: (threshold, count, hit rate, correlation) per threshold."""
        table = "\n".join(f"    >{thr:.1f}  n={count:<6} hit={hit:.3f} corr={corr:+.3f}"
                          for thr, count, hit, corr in rows)
        self.logger.debug(f"STATS     | net {member} step {step}\n{table}")

    # ── Serving ──

    def log_prediction(self, timetag: int, value: float, ready: int, duration_ms: float = 0.0):
        self._emit(
            "prediction",
            f"tag {timetag} -> {value:.4f} ({ready} ready, {duration_ms:.1f}ms)",
            logging.DEBUG,
            timetag=timetag, value=value, ready=ready, duration_ms=duration_ms,
        )

    def log_system(self, message: str, level: str = "INFO"):
        self._emit("system", message, logging.getLevelName(level.upper()), message=message)

    def log_error(self, message: str, exception: Exception = None):
        detail = f"{type(exception).__name__}: {exception}" if exception else None
        self._emit("error", f"{message} ({detail})" if detail else message, logging.ERROR,
                   message=message, exception=detail)

    def log_timing(self, label: str, duration_ms: float):
        self._emit("timing", f"{label} {duration_ms:.1f}ms", logging.DEBUG,
                   label=label, duration_ms=duration_ms)

    @staticmethod
    def timed(label: str):
        """Decorator recording the wrapped call's latency as a timing event."""
        def decorator(func):
            @wraps(func)
            def wrapper(*args, **kwargs):
                start = time.perf_counter()
                try:
                    return func(*args, **kwargs)
                finally:
                    get_logger().log_timing(label, (time.perf_counter() - start) * 1000)
            return wrapper
        return decorator


def get_logger(suffix: str = None) -> PredictorLogger:
    return PredictorLogger(suffix)
