#!/usr/bin/env python3
"""Run the routine reminder scheduler in the foreground.

Usage:
    python3 scripts/run_scheduler.py                      # Run until Ctrl+C
    python3 scripts/run_scheduler.py --config my.yaml     # Use another config
    python3 scripts/run_scheduler.py --once               # One resync, then exit
"""

import argparse
import signal
import sys
import threading
from pathlib import Path

# Ensure project root is on sys.path so rhythm imports work
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rhythm.config import load_config
from rhythm.logger import get_logger
from rhythm.scheduler import get_scheduler


def main():
    parser = argparse.ArgumentParser(description="Routine reminder scheduler")
    parser.add_argument("--config", help="Path to config.yaml (default: $RHYTHM_CONFIG or ./config.yaml)")
    parser.add_argument("--once", action="store_true",
                        help="Run a single resync and promotion sweep, then exit")
    args = parser.parse_args()

    config = load_config(args.config)
    logger = get_logger("run_scheduler", config)
    scheduler = get_scheduler(config)

    if args.once:
        result = scheduler.resync("one-shot")
        scheduler.promote()
        if result is None or not result.ok:
            logger.error("Resync finished with failures")
            sys.exit(1)
        print(f"Scheduled {result.scheduled} alarm(s)")
        return

    stop = threading.Event()

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    scheduler.start()
    stop.wait()
    scheduler.stop()


if __name__ == "__main__":
    main()
