# ============================================================================
# MagicQ Bridge - OSC Transport
# ============================================================================
# Purpose:
#   Bidirectional executor value exchange with MagicQ over OSC/UDP.
#
# Architecture:
#   - Inbound: ThreadingOSCUDPServer in a daemon thread; every message goes
#     through the default handler, which decodes /exec/1/<slot> feedback
#   - Outbound: SimpleUDPClient (fire-and-forget) to the console
#   - Feedback refresh: daemon thread sending /feedback/exec once on start
#     and then every feedback_interval_s
#
# OSC Message Format:
#   /exec/1/<physical>  <float 0..1>   executor level (both directions)
#   /feedback/exec                      ask MagicQ to resend all levels
#
#   <physical> is the console-native slot index; logical executor numbers
#   are mapped through executor_index in both directions.
#
# Dependencies:
#   - pythonosc: OSC protocol implementation
#
# ============================================================================

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from pythonosc.dispatcher import Dispatcher
from pythonosc.osc_server import ThreadingOSCUDPServer
from pythonosc.udp_client import SimpleUDPClient

from .executor_index import to_logical, to_physical

log = logging.getLogger("mqb.osc")

EXEC_ADDRESS = re.compile(r"^/exec/1/(\d+)$")
FEEDBACK_ADDRESS = "/feedback/exec"


def exec_address(physical: int) -> str:
    return f"/exec/1/{int(physical)}"


def clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class OscSendError(Exception):
    """Raised when an executor command could not be handed to the socket."""


@dataclass
class OscConfig:
    """
    Configuration for the OSC transport.

    Attributes:
        receive_host: IP to bind to (0.0.0.0 = all interfaces)
        receive_port: UDP port MagicQ sends feedback to
        send_host: MagicQ address
        send_port: UDP port MagicQ listens on
        feedback_interval_s: period of the /feedback/exec refresh request
    """
    receive_host: str = "0.0.0.0"
    receive_port: int = 8000
    send_host: str = "localhost"
    send_port: int = 9000
    feedback_interval_s: float = 60.0

    @classmethod
    def from_cfg(cls, osc: dict) -> "OscConfig":
        osc = osc or {}
        return cls(
            receive_host=str(osc.get("receive_host", "0.0.0.0")),
            receive_port=int(osc.get("receive_port", 8000)),
            send_host=str(osc.get("send_host", "localhost")),
            send_port=int(osc.get("send_port", 9000)),
            feedback_interval_s=float(osc.get("feedback_interval_s", 60.0)),
        )


class OscTransport:
    """
    OSC endpoint for MagicQ executor levels.

    Callbacks:
        on_value(number: int, value: float): executor feedback from the console,
            already mapped to the logical executor number. Invoked from the OSC
            receiver thread; keep it lightweight (the hub just enqueues).
    """

    def __init__(self, cfg: OscConfig, on_value: Optional[Callable[[int, float], None]] = None):
        self.cfg = cfg
        self.on_value = on_value

        # Server lifecycle management
        self._server: Optional[ThreadingOSCUDPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._client: Optional[SimpleUDPClient] = None

        # Feedback refresh loop
        self._feedback_thread: Optional[threading.Thread] = None
        self._feedback_stop = threading.Event()

        self.received_total = 0
        self.sent_total = 0

    # -------------------------------------------------------------------------
    # Lifecycle Management
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """
        Bind the receive socket, open the send client and start the feedback
        refresh loop. Idempotent.
        """
        if self._server:
            return

        disp = Dispatcher()
        disp.set_default_handler(self._handle_default)

        self._server = ThreadingOSCUDPServer((self.cfg.receive_host, self.cfg.receive_port), disp)
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="osc_inbound",
            daemon=True,
        )
        self._thread.start()

        self._client = SimpleUDPClient(self.cfg.send_host, self.cfg.send_port)

        self._feedback_stop.clear()
        self._feedback_thread = threading.Thread(
            target=self._feedback_loop,
            name="osc_feedback",
            daemon=True,
        )
        self._feedback_thread.start()
        log.info(
            "OSC listening on %s:%s, sending to %s:%s",
            self.cfg.receive_host, self.cfg.receive_port, self.cfg.send_host, self.cfg.send_port,
        )

    def stop(self) -> None:
        """
        Cancel the feedback loop and close the socket. Safe to call even if
        the transport isn't running.
        """
        self._feedback_stop.set()
        if not self._server:
            self._client = None
            return

        try:
            self._server.shutdown()
            self._server.server_close()
        finally:
            self._server = None
            self._thread = None
            self._client = None
            self._feedback_thread = None
        log.info("OSC transport stopped")

    @property
    def bound_port(self) -> Optional[int]:
        if not self._server:
            return None
        return self._server.server_address[1]

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def send_executor_command(self, number: int, value: float) -> float:
        """
        Set logical executor `number` to `value` (clamped to 0..1).
        Returns the value actually sent.
        """
        return self.send_physical_command(to_physical(int(number)), value)

    def send_physical_command(self, physical: int, value: float) -> float:
        """Same as send_executor_command() for an already console-native slot index."""
        level = clamp_unit(value)
        self._send(exec_address(physical), level)
        return level

    def request_feedback(self) -> None:
        self._send(FEEDBACK_ADDRESS, [])

    def _send(self, path: str, value) -> None:
        client = self._client
        if client is None:
            raise OscSendError("OSC transport not started")
        try:
            client.send_message(path, value)
        except OSError as e:
            raise OscSendError(f"send {path} failed: {e}") from e
        self.sent_total += 1
        log.debug("osc_out", extra={"path": path, "value": value})

    def _feedback_loop(self) -> None:
        while True:
            try:
                self.request_feedback()
            except OscSendError as e:
                log.warning("feedback_request_failed", extra={"err": str(e)})
            if self._feedback_stop.wait(self.cfg.feedback_interval_s):
                return

    # -------------------------------------------------------------------------
    # Message Handlers
    # -------------------------------------------------------------------------

    def _handle_default(self, addr: str, *args):
        """
        Handler for every inbound OSC message.

        Executor feedback:
            Address: /exec/1/<physical>
            Value: float (0.0 .. 1.0)

        Anything else (including /exec messages without an argument) is ignored.
        """
        m = EXEC_ADDRESS.match(addr)
        if not m or not args:
            log.debug("osc_ignored", extra={"path": addr})
            return

        try:
            value = float(args[0])
        except (TypeError, ValueError):
            log.debug("osc_bad_arg", extra={"path": addr})
            return

        number = to_logical(int(m.group(1)))
        self.received_total += 1
        if self.on_value is None:
            return
        try:
            self.on_value(number, value)
        except Exception:
            log.exception("on_value callback failed for %s", addr)
