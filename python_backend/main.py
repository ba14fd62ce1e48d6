"""
Online RNN Predictor — entry point
===================================
    python main.py serve  [--port 7000] [--suffix v1] [--set key=value ...]
    python main.py replay data.csv [--max-rows N] [--export-dir out/] [--set key=value ...]
"""

import argparse
import logging
import random
import sys

import numpy as np
import torch

import config
from errors import PredictorError
from message_server import MessageServer, OnlinePredictor, ZmqChannel
from predictor_logger import get_logger
from replay import run_replay

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')


def parse_overrides(pairs):
    """['rnn_size=32', 'optim=cg'] → {'rnn_size': '32', 'optim': 'cg'}"""
    options = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"Expected key=value, got '{pair}'")
        options[key.strip()] = value.strip()
    return options


def seed_everything(seed: int):
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Online ensemble RNN predictor")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Serve predictions over a ZeroMQ PAIR socket")
    serve.add_argument('--port', type=int, default=None, help='Local port (default: local_port option)')
    serve.add_argument('--suffix', type=str, default=None, help='Log file suffix')
    serve.add_argument('--set', dest='overrides', action='append', default=[], metavar='KEY=VALUE',
                       help='Override any option (repeatable)')

    replay = sub.add_parser("replay", help="Replay a raw-input CSV offline")
    replay.add_argument('csv', type=str, help='CSV with the timetag column first')
    replay.add_argument('--max-rows', type=int, default=None, help='Only read the first N rows')
    replay.add_argument('--export-dir', type=str, default=None, help='Directory for prediction/evaluation CSVs')
    replay.add_argument('--set', dest='overrides', action='append', default=[], metavar='KEY=VALUE',
                        help='Override any option (repeatable)')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    options = parse_overrides(args.overrides)
    if getattr(args, "port", None) is not None:
        options["local_port"] = args.port
    if getattr(args, "suffix", None):
        options["suffix"] = args.suffix

    cfg = config.load_config(options)
    seed_everything(cfg.seed)
    logger = get_logger(cfg.suffix)
    logger.log_system(f"Online predictor {config.VERSION} | command={args.command} | "
                      f"train_size={cfg.train_size} window={cfg.required_window}")

    if args.command == "replay":
        results = run_replay(cfg, args.csv, args.max_rows, args.export_dir)
        logging.info(f"Replay done: {len(results)} predictions")
        return 0

    channel = ZmqChannel(cfg.local_port)
    server = MessageServer(OnlinePredictor(cfg), channel)
    try:
        server.run()
    except KeyboardInterrupt:
        logging.info("Interrupted, shutting down")
    finally:
        channel.close()
        logger.close()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except PredictorError as e:
        logging.error(f"❌ {type(e).__name__}: {e}")
        sys.exit(1)
