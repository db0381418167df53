"""
Stand-in for the sound level meter reader.

Prints one JSON sample per line on stdout, every --interval-ms (default 50):
    {"measured": 72.4, "timestamp": "2024-05-01 20:15:03 UTC",
     "mode": "fast", "freqMode": "dBA", "range": "30-130"}

`measured` is a smoothed random walk kept inside 30..130 dB. Exits with
status 0 on SIGTERM/SIGINT.

Usage:
    python -m magicq_bridge.tools.mock_measurement [--interval-ms 50] [--count N]
"""

import argparse
import json
import random
import signal
import sys
import time
from datetime import datetime, timezone

LOW, HIGH = 30.0, 130.0

_running = True


def _stop(signum, frame):
    global _running
    _running = False


def next_level(level: float, drift: float, rng: random.Random) -> tuple:
    drift = drift * 0.8 + rng.uniform(-1.5, 1.5)
    level = min(HIGH, max(LOW, level + drift))
    return level, drift


def make_sample(level: float, now: datetime) -> dict:
    return {
        "measured": round(level, 1),
        "timestamp": now.strftime("%Y-%m-%d %H:%M:%S UTC"),
        "mode": "fast",
        "freqMode": "dBA",
        "range": "30-130",
    }


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Emit fake SPL samples as JSON lines")
    ap.add_argument("--interval-ms", type=int, default=50)
    ap.add_argument("--count", type=int, default=0, help="stop after N samples (0 = forever)")
    ap.add_argument("--seed", type=int, default=None)
    # splread-compatible flags are accepted and ignored
    ap.add_argument("-i", dest="splread_interval", default=None)
    ap.add_argument("-f", dest="splread_follow", action="store_true")
    args = ap.parse_args(argv)

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    rng = random.Random(args.seed)
    level, drift = 65.0, 0.0
    emitted = 0
    while _running:
        level, drift = next_level(level, drift, rng)
        sys.stdout.write(json.dumps(make_sample(level, datetime.now(timezone.utc))) + "\n")
        sys.stdout.flush()
        emitted += 1
        if args.count and emitted >= args.count:
            break
        time.sleep(args.interval_ms / 1000.0)
    return 0


if __name__ == "__main__":
    sys.exit(main())
