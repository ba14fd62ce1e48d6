"""
Replay — offline run of a raw-input CSV through the online predictor
=====================================================================
CSV layout: first column is the integer timetag, the remaining columns are
the raw inputs (minute-of-week, minute-of-day, prices...).

The first required_window rows are sent as one multi_inputs frame, the rest
one single_input frame at a time, exactly as a live client would. Returns a
DataFrame of the replies; each member's evaluation history can be exported
as CSV.
"""

import logging
import os
from typing import Optional

import pandas as pd

from config import PredictorConfig
from message_server import OnlinePredictor
from protocol import encode_init, encode_multi_inputs, encode_single_input

log = logging.getLogger(__name__)


def load_raw_csv(path: str, max_rows: Optional[int] = None) -> pd.DataFrame:
    df = pd.read_csv(path, nrows=max_rows)
    if df.shape[1] < 2:
        raise ValueError(f"{path}: expected a timetag column and at least one raw input")
    return df.dropna().reset_index(drop=True)


def replay_frame(cfg: PredictorConfig, df: pd.DataFrame,
                 predictor: Optional[OnlinePredictor] = None) -> pd.DataFrame:
    predictor = predictor or OnlinePredictor(cfg)
    timetags = df.iloc[:, 0].astype("int64").to_numpy()
    raw = df.iloc[:, 1:].astype("float64").to_numpy()

    reply = predictor.handle_frame(encode_init(raw.shape[1]))
    log.info(f"init → {reply}")

    head = min(cfg.required_window, len(df))
    if head > 0:
        predictor.handle_frame(encode_multi_inputs(timetags[:head], raw[:head]))

    records = []
    for i in range(head, len(df)):
        reply = predictor.handle_frame(encode_single_input(timetags[i], raw[i]))
        _, tag, value = reply.split(",")
        records.append({
            "timetag": int(tag),
            "prediction": float(value),
            "ready_members": len(predictor.ensemble.ready_members()),
        })
        if (i - head + 1) % 500 == 0:
            log.info(f"Replayed {i + 1}/{len(df)} rows")

    return pd.DataFrame(records, columns=["timetag", "prediction", "ready_members"])


def export_histories(predictor: OnlinePredictor, export_dir: str) -> list:
    os.makedirs(export_dir, exist_ok=True)
    paths = []
    for member_id, net in sorted(predictor.ensemble.members.items()):
        path = os.path.join(export_dir, f"eval_history_net{member_id}_{predictor.cfg.suffix}.csv")
        net.evaluator.export_history(path)
        paths.append(path)
    return paths


def run_replay(cfg: PredictorConfig, csv_path: str, max_rows: Optional[int] = None,
               export_dir: Optional[str] = None) -> pd.DataFrame:
    df = load_raw_csv(csv_path, max_rows)
    log.info(f"📂 Loaded {len(df)} rows x {df.shape[1] - 1} raw inputs from {csv_path}")

    predictor = OnlinePredictor(cfg)
    results = replay_frame(cfg, df, predictor)

    if export_dir:
        paths = export_histories(predictor, export_dir)
        results.to_csv(os.path.join(export_dir, f"predictions_{cfg.suffix}.csv"), index=False)
        log.info(f"💾 Exported predictions and {len(paths)} evaluation histories to {export_dir}")
    return results
