"""
Feature Pipeline — stationary indicator features from raw prices
=================================================================
Turns the raw sample window into a normalized feature matrix and the matching
label vector.

Feature layout (one row per timetag):
    [week_time, day_time,
     symbol_1: log_return, extra log returns..., EMAs..., REMAs..., RSI,
     symbol_2: ...]

Every indicator column except RSI is standardized with statistics latched on
the first generation pass, then squashed into (0, 1) with a logistic. RSI is
already bounded and is emitted as is.

All transforms return new arrays; the only state they touch is the
NormalizationStats latch owned by the pipeline.
"""

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

import config
from config import PredictorConfig
from errors import DimensionMismatch

log = logging.getLogger(__name__)

NUM_TIME_FIELDS = 2
RSI_SEED = 0.001
CLASS_EPS = 1e-6


def sigmoid(values: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-values))


def ema_coefficient(period: float) -> float:
    return 2.0 / (period + 1.0)


def _smooth(values: np.ndarray, mult: float, seed: float) -> np.ndarray:
    out = np.empty_like(values)
    ema = seed
    for i, x in enumerate(values):
        ema = (x - ema) * mult + ema
        out[i] = ema
    return out


class NormalizationStats:
    """Write-once (mean, std) per feature column."""

    def __init__(self):
        self._stats: Dict[int, Tuple[float, float]] = {}

    def __contains__(self, column: int) -> bool:
        return column in self._stats

    def __len__(self) -> int:
        return len(self._stats)

    def get(self, column: int) -> Optional[Tuple[float, float]]:
        return self._stats.get(column)

    def reset(self) -> None:
        self._stats.clear()

    def normalize(self, column: int, values: np.ndarray) -> np.ndarray:
        stats = self._stats.get(column)
        if stats is None:
            finite = values[np.isfinite(values)]
            mean = float(np.mean(finite)) if finite.size else 0.0
            std = float(np.std(finite, ddof=1)) if finite.size > 1 else 0.0
            if not np.isfinite(std) or std == 0.0:
                std = 1.0
            stats = (mean, std)
            self._stats[column] = stats
            log.debug(f"Normalizing feature {column}: mean={mean}, dev={std}")
        mean, std = stats
        return (values - mean) / std

    def denormalize(self, column: int, values: np.ndarray) -> np.ndarray:
        mean, std = self._stats[column]
        return np.asarray(values) * std + mean


class FeaturePipeline:
    def __init__(self, cfg: PredictorConfig, stats: Optional[NormalizationStats] = None):
        self.cfg = cfg
        self.stats = stats if stats is not None else NormalizationStats()

    def reset(self) -> None:
        self.stats.reset()

    # ── Geometry ──

    @property
    def symbol_stride(self) -> int:
        return 1 if self.cfg.with_close_only else 4

    def num_symbols(self, raw_width: int) -> int:
        n_prices = raw_width - NUM_TIME_FIELDS
        if n_prices <= 0 or n_prices % self.symbol_stride != 0:
            raise DimensionMismatch(
                f"price columns (multiple of {self.symbol_stride})",
                f"k*{self.symbol_stride}", n_prices
            )
        return n_prices // self.symbol_stride

    @property
    def block_width(self) -> int:
        cfg = self.cfg
        return (1 + len(cfg.log_return_offsets) + cfg.num_emas + cfg.num_remas
                + (1 if cfg.rsi_period > 0 else 0))

    def feature_width(self, n_symbols: int) -> int:
        return NUM_TIME_FIELDS + n_symbols * self.block_width

    # ── Single-series transforms ──

    def _compress(self, raw: np.ndarray, column: int) -> np.ndarray:
        return sigmoid(self.stats.normalize(column, raw))

    def compute_log_return(self, series, offset: int, column: int,
                           ema_period: Optional[int] = None) -> np.ndarray:
        series = np.asarray(series, dtype=np.float64)
        ratios = np.ones_like(series)
        if offset > 0:
            ratios[offset:] = series[offset:] / series[:-offset]
        rets = np.log(ratios)
        if ema_period and ema_period > 1:
            rets = _smooth(rets, ema_coefficient(ema_period), rets[0])
        return self._compress(rets, column)

    def compute_ema(self, series, period: float, column: int) -> np.ndarray:
        series = np.asarray(series, dtype=np.float64)
        ema = _smooth(series, ema_coefficient(period), series[0])
        return self._compress(ema, column)

    def compute_rema(self, series, period: float, column: int) -> np.ndarray:
        series = np.asarray(series, dtype=np.float64)
        lrets = np.empty_like(series)
        lrets[0] = 0.0
        lrets[1:] = np.log(series[1:] / series[:-1])
        rema = _smooth(lrets, ema_coefficient(period), 0.0)
        return self._compress(rema, column)

    def compute_rsi(self, series, period: float, column: int) -> np.ndarray:
        series = np.asarray(series, dtype=np.float64)
        mult = ema_coefficient(period)
        up = RSI_SEED
        down = RSI_SEED
        prev = series[0]
        out = np.empty_like(series)
        # Only the side that moved decays this step.
        for i, x in enumerate(series):
            if x > prev:
                up = (x - prev) * mult + up * (1.0 - mult)
            elif x < prev:
                down = (prev - x) * mult + down * (1.0 - mult)
            prev = x
            out[i] = up / (up + down)
        log.debug(f"Feature {column}: RSI with period {period}")
        return out

    # ── Matrix builders ──

    def _symbol_block(self, prices: np.ndarray, column: int) -> Tuple[List[np.ndarray], int]:
        """Build one symbol's columns starting at `column`; returns (columns, next column)."""
        cfg = self.cfg
        cols = [self.compute_log_return(prices, 1, column)]
        column += 1

        for offset in cfg.log_return_offsets:
            cols.append(self.compute_log_return(prices, offset, column, cfg.log_return_ema_period))
            column += 1

        for j in range(cfg.num_emas):
            cols.append(self.compute_ema(prices, cfg.ema_base_period * 2 ** j, column))
            column += 1

        for j in range(cfg.num_remas):
            cols.append(self.compute_rema(prices, cfg.ema_base_period * 2 ** j, column))
            column += 1

        if cfg.rsi_period > 0:
            cols.append(self.compute_rsi(prices, cfg.rsi_period, column))
            column += 1

        return cols, column

    def generate_features(self, raw_rows, timetags=None):
        """
        Build the feature matrix from the raw window.

        Returns (features, timetags) with the first warmup_offset rows removed.
        """
        raw = np.asarray(raw_rows, dtype=np.float64)
        n_rows, raw_width = raw.shape
        warmup = self.cfg.warmup_offset
        if n_rows <= warmup:
            raise DimensionMismatch("raw rows (more than warmup_offset)", f">{warmup}", n_rows)

        n_symbols = self.num_symbols(raw_width)
        stride = self.symbol_stride
        width = self.feature_width(n_symbols)

        columns = [raw[:, 0], raw[:, 1]]
        column = NUM_TIME_FIELDS
        for i in range(n_symbols):
            # close is the last column of each symbol group
            prices = raw[:, NUM_TIME_FIELDS + stride * (i + 1) - 1]
            block, column = self._symbol_block(prices, column)
            columns.extend(block)

        if column != width:
            raise DimensionMismatch("feature width", width, column)

        features = np.column_stack(columns)[warmup:]
        features[:, 0] = features[:, 0] / config.WEEK_MINUTES
        features[:, 1] = features[:, 1] / config.DAY_MINUTES

        if timetags is not None:
            timetags = np.asarray(timetags)[warmup:]
            if timetags.shape[0] != features.shape[0]:
                raise DimensionMismatch("timetags size", features.shape[0], timetags.shape[0])

        return features, timetags

    def generate_labels(self, features, timetags=None):
        """
        Returns (features, labels, timetags): labels read the forecast column
        label_offset rows ahead, and features/timetags lose their last
        label_offset rows so all three stay aligned.
        """
        cfg = self.cfg
        features = np.asarray(features)
        idx = NUM_TIME_FIELDS + cfg.forecast_index
        if idx >= features.shape[1]:
            raise DimensionMismatch("forecast column (< feature width)", f"<{features.shape[1]}", idx)

        off = cfg.label_offset
        labels = features[off:, idx].copy()
        features = features[:-off]
        if timetags is not None:
            timetags = np.asarray(timetags)[:-off]
            if timetags.shape[0] != features.shape[0]:
                raise DimensionMismatch("timetags size", features.shape[0], timetags.shape[0])

        if cfg.num_classes > 1:
            labels = generate_classes(labels, 0.0, 1.0, cfg.num_classes)

        return features, labels, timetags


def generate_classes(values, rmin: float, rmax: float, num_classes: int) -> np.ndarray:
    """Clamp into [rmin, rmax) and bin into num_classes equal-width classes (1-based)."""
    values = np.clip(np.asarray(values, dtype=np.float64), rmin, rmax - CLASS_EPS)
    class_size = (rmax - rmin) / num_classes
    return np.floor((values - rmin) / class_size) + 1.0
