"""
Dump MagicQ executor feedback.

    python tools/osc_listen.py [host] [port]

/exec/1/<n> messages are printed with their logical executor number,
everything else raw.
"""
import re
import sys
from pathlib import Path

from pythonosc.dispatcher import Dispatcher
from pythonosc.osc_server import BlockingOSCUDPServer

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from magicq_bridge.executor_index import to_logical  # noqa: E402

EXEC = re.compile(r"^/exec/1/(\d+)$")


def dump(addr, *args):
    m = EXEC.match(addr)
    if m:
        print(f"{addr} -> executor {to_logical(int(m.group(1)))} {args}")
    else:
        print(f"{addr} {args}")


host = sys.argv[1] if len(sys.argv) > 1 else "0.0.0.0"
port = int(sys.argv[2]) if len(sys.argv) > 2 else 8000

disp = Dispatcher()
disp.set_default_handler(dump)

# same port MagicQ sends feedback to (osc.receive_port)
server = BlockingOSCUDPServer((host, port), disp)
print(f"listening on {host}:{port} ...")
server.serve_forever()
