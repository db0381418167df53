"""
One-shot executor command.

    python tools/send_exec.py <executor> <value> [host] [port]

Goes through OscTransport, so the logical -> physical mapping and the 0..1
clamp are the same as the running bridge.
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from magicq_bridge.magicq_osc import OscConfig, OscTransport, exec_address  # noqa: E402
from magicq_bridge.executor_index import to_physical  # noqa: E402


def main():
    if len(sys.argv) < 3:
        print(__doc__.strip())
        return 2
    number = int(sys.argv[1])
    value = float(sys.argv[2])
    host = sys.argv[3] if len(sys.argv) > 3 else "127.0.0.1"
    port = int(sys.argv[4]) if len(sys.argv) > 4 else 9000

    # receive port 0: we never listen, but start() binds one
    osc = OscTransport(OscConfig(receive_host="127.0.0.1", receive_port=0, send_host=host, send_port=port,
                                 feedback_interval_s=3600))
    osc.start()
    try:
        sent = osc.send_executor_command(number, value)
    finally:
        osc.stop()
    print(f"sent {exec_address(to_physical(number))} {sent} -> {host}:{port}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
