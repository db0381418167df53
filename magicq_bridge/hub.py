# ============================================================================
# MagicQ Bridge - Realtime Hub
# ============================================================================
# Purpose:
#   Owns the executor runtime state and the set of connected websocket
#   clients; reconciles OSC feedback, MIDI buttons, console scrapes and
#   measurement samples into push events.
#
# Architecture:
#   - Every source posts an event into one asyncio.Queue (the inbox).
#     Thread-based sources (OSC server thread, mido callback thread) go
#     through loop.call_soon_threadsafe.
#   - A single task drains the inbox and applies events one at a time, so
#     the executor map and the client set have exactly one writer.
#   - Slow work (HTTP scrape) runs in its own task and posts its result
#     back as another event.
#   - Outbound traffic never runs on the inbox task: every client owns a
#     bounded queue drained by its own writer task. A full queue or a send
#     that exceeds send_timeout_s drops (and closes) that client only.
#
# Lifecycle:
#   IDLE -> LISTENING -> SHUTTING_DOWN -> STOPPED  (no way back)
#
# ============================================================================

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Set, Union

from . import messages
from .console_http import ConsoleScraper, ScrapeFailure, ShowSnapshot
from .magicq_osc import OscSendError, OscTransport
from .midi_input import FADER_FLOOR, MidiInput, default_type, derive_value
from .spl_process import ProcessSupervisor, SplConfig

log = logging.getLogger("mqb.hub")

MOCK_COMMAND = "mock"


class HubState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class Client(Protocol):
    """What the hub needs from a connected client socket."""

    label: str

    async def send_text(self, text: str) -> None: ...

    async def close(self) -> None: ...


@dataclass
class ExecutorState:
    type: str
    value: float = 0.0


# ----------------------------- inbox events -----------------------------

@dataclass
class ClientJoined:
    client: Client


@dataclass
class ClientLeft:
    client: Client


@dataclass
class ClientDropped:
    client: Client


@dataclass
class ClientFrame:
    client: Client
    raw: Union[str, bytes]


@dataclass
class OscFeedback:
    number: int
    value: float


@dataclass
class MidiNote:
    number: int
    velocity: int


@dataclass
class SplSample:
    sample: Any


@dataclass
class ShowFetched:
    requester: Optional[Client]
    result: Union[ShowSnapshot, ScrapeFailure]


_STOP = object()

HubEvent = Union[
    ClientJoined, ClientLeft, ClientDropped, ClientFrame, OscFeedback, MidiNote, SplSample, ShowFetched
]


class _Outbox:
    """Per-client send queue plus the task writing it to the socket."""

    def __init__(self, maxsize: int):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.task: Optional[asyncio.Task] = None


class RealtimeHub:
    """
    Single-writer state machine behind the websocket endpoint.

    Collaborators are owned by the hub once passed in: start() starts them,
    stop() tears them down. supervisor/midi are optional (None = not used).
    """

    def __init__(
        self,
        osc: OscTransport,
        scraper: ConsoleScraper,
        *,
        supervisor: Optional[ProcessSupervisor] = None,
        midi: Optional[MidiInput] = None,
        spl_argv: Optional[list] = None,
        shutdown_timeout_s: float = 5.0,
        send_timeout_s: float = 5.0,
        client_queue_size: int = 256,
    ):
        self.osc = osc
        self.scraper = scraper
        self.supervisor = supervisor
        self.midi = midi
        self.spl_argv = list(spl_argv or [])
        self.shutdown_timeout_s = float(shutdown_timeout_s)
        self.send_timeout_s = float(send_timeout_s)
        self.client_queue_size = int(client_queue_size)

        self.executors: Dict[int, ExecutorState] = {}
        self.clients: Set[Client] = set()
        self._outboxes: Dict[Client, _Outbox] = {}
        self.state = HubState.IDLE

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._inbox: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._jobs: Set[asyncio.Task] = set()

        # Wire collaborator callbacks straight into the inbox.
        self.osc.on_value = lambda number, value: self.post(OscFeedback(number, value))
        if self.midi is not None:
            self.midi.on_note = lambda number, velocity: self.post(MidiNote(number, velocity))
        if self.supervisor is not None:
            self.supervisor.on_sample = lambda sample: self.post(SplSample(sample))

    # -------------------------------------------------------------------------
    # Lifecycle Management
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the inbox task and every collaborator. Collaborator failures are logged, not raised."""
        if self.state is not HubState.IDLE:
            return
        self._loop = asyncio.get_running_loop()
        self._inbox = asyncio.Queue()
        self._task = asyncio.create_task(self._run(), name="hub_inbox")
        self.state = HubState.LISTENING

        try:
            self.osc.start()
        except Exception:
            log.exception("OSC transport failed to start")

        if self.midi is not None:
            try:
                self.midi.start()
            except Exception:
                log.exception("MIDI input failed to start")

        if self.supervisor is not None and self.spl_argv:
            try:
                await self.supervisor.start(self.spl_argv[0], self.spl_argv[1:])
            except Exception:
                log.exception("Measurement supervisor failed to start")

        log.info("Hub listening")

    async def stop(self) -> None:
        """
        Close every client, stop supervisor and OSC in parallel (bounded by
        shutdown_timeout_s), then stop the inbox. Only the first call does work.
        """
        if self.state in (HubState.SHUTTING_DOWN, HubState.STOPPED):
            return
        self.state = HubState.SHUTTING_DOWN
        log.info("Shutting down hub...")

        clients, self.clients = list(self.clients), set()
        boxes, self._outboxes = list(self._outboxes.values()), {}
        for box in boxes:
            if box.task is not None:
                box.task.cancel()
        await asyncio.gather(*(self._close(c) for c in clients))

        stoppers = [asyncio.create_task(asyncio.to_thread(self.osc.stop), name="osc_stop")]
        if self.supervisor is not None:
            stoppers.append(asyncio.create_task(self.supervisor.stop(), name="spl_stop"))
        done, pending = await asyncio.wait(stoppers, timeout=self.shutdown_timeout_s)
        for t in pending:
            log.warning("%s did not finish within %.1fs", t.get_name(), self.shutdown_timeout_s)
            t.cancel()
        for t in done:
            if not t.cancelled() and t.exception() is not None:
                log.error("%s failed: %r", t.get_name(), t.exception())

        if self.midi is not None:
            self.midi.stop()

        for job in list(self._jobs):
            job.cancel()

        if self._task is not None and self._inbox is not None:
            self._inbox.put_nowait(_STOP)
            try:
                await asyncio.wait_for(self._task, timeout=1.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                self._task.cancel()
            except Exception:
                log.exception("Hub inbox task failed")
        self._task = None
        self.state = HubState.STOPPED
        log.info("Hub shutdown complete")

    @property
    def accepting(self) -> bool:
        return self.state is HubState.LISTENING

    # -------------------------------------------------------------------------
    # Inbox
    # -------------------------------------------------------------------------

    def post(self, event: HubEvent) -> None:
        """Enqueue an event. Safe from any thread; dropped once the hub is stopping."""
        loop, inbox = self._loop, self._inbox
        if loop is None or inbox is None or not self.accepting:
            return
        try:
            loop.call_soon_threadsafe(inbox.put_nowait, event)
        except RuntimeError:
            # loop already closed
            pass

    def attach(self, client: Client) -> None:
        self.post(ClientJoined(client))

    def detach(self, client: Client) -> None:
        self.post(ClientLeft(client))

    def receive(self, client: Client, raw: Union[str, bytes]) -> None:
        self.post(ClientFrame(client, raw))

    async def _run(self) -> None:
        assert self._inbox is not None
        while True:
            event = await self._inbox.get()
            if event is _STOP:
                return
            try:
                await self.apply(event)
            except Exception:
                log.exception("Failed to apply %s", type(event).__name__)

    async def apply(self, event: HubEvent) -> None:
        """Apply one event. Only ever called from the inbox task (or tests)."""
        if isinstance(event, ClientJoined):
            self._on_join(event.client)
        elif isinstance(event, ClientLeft):
            self._drop(event.client, close=False)
        elif isinstance(event, ClientDropped):
            if event.client in self._outboxes:
                log.info("Dropped client %s after failed send", event.client.label)
                self._drop(event.client, close=True)
        elif isinstance(event, ClientFrame):
            self._on_frame(event.client, event.raw)
        elif isinstance(event, OscFeedback):
            self._on_osc(event.number, event.value)
        elif isinstance(event, MidiNote):
            self._on_midi(event.number, event.velocity)
        elif isinstance(event, SplSample):
            if self.accepting:
                self.broadcast(messages.sample_event(event.sample))
        elif isinstance(event, ShowFetched):
            self._on_show(event.requester, event.result)
        else:
            log.warning("Unknown hub event %r", event)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _on_join(self, client: Client) -> None:
        if not self.accepting:
            log.info("Refusing client %s: hub is %s", client.label, self.state.value)
            self._spawn(self._close(client), name="close_client")
            return
        if client in self._outboxes:
            return
        box = _Outbox(self.client_queue_size)
        box.queue.put_nowait(messages.connection_event())
        box.task = asyncio.create_task(self._writer(client, box.queue), name=f"ws_writer:{client.label}")
        self._outboxes[client] = box
        self.clients.add(client)
        log.info("Client connected: %s (%d total)", client.label, len(self.clients))

    def _on_frame(self, client: Client, raw: Union[str, bytes]) -> None:
        try:
            cmd = messages.decode_client_message(raw)
        except messages.ClientMessageError as e:
            if e.kind == "invalid":
                log.warning("Invalid %s message from %s: %s", e.msg_type, client.label, e.detail)
                self._enqueue(client, messages.error_event(f"Invalid {e.msg_type} message"))
            elif e.kind == "unknown":
                log.warning("Unknown message type: %s", e.msg_type)
            else:
                log.warning("Error processing message from %s: %s", client.label, e.detail)
            return

        if isinstance(cmd, messages.ReloadExecutors):
            self._spawn(self._fetch_show(client), name="reload_executors")
        elif isinstance(cmd, messages.ExecCommand):
            kind, target = cmd.target()
            try:
                if kind == "physical":
                    self.osc.send_physical_command(target, cmd.value)
                else:
                    self.osc.send_executor_command(target, cmd.value)
            except OscSendError as e:
                log.error("Error sending OSC message: %s", e)
                self._enqueue(client, messages.error_event("Failed to send OSC message"))

    async def _fetch_show(self, requester: Optional[Client]) -> None:
        result = await self.scraper.fetch_data()
        self.post(ShowFetched(requester, result))

    def _on_show(self, requester: Optional[Client], result: Union[ShowSnapshot, ScrapeFailure]) -> None:
        if isinstance(result, ScrapeFailure):
            if requester is not None:
                self._enqueue(requester, messages.error_event(result.error))
            return

        self.reconcile(result)
        self.broadcast(messages.show_setup_event(result.as_payload()))

    def reconcile(self, snapshot: ShowSnapshot) -> None:
        """Force types from the snapshot (wing faders stay faders), keep known values."""
        for number, ex in snapshot.executors.items():
            kind = "fader" if number > FADER_FLOOR else ex.type
            prev = self.executors.get(number)
            self.executors[number] = ExecutorState(type=kind, value=prev.value if prev else 0.0)
        log.info("Executor state reconciled: %d executors", len(snapshot.executors))

    def _state_for(self, number: int) -> ExecutorState:
        st = self.executors.get(number)
        if st is None:
            st = self.executors[number] = ExecutorState(type=default_type(number))
        return st

    def _on_osc(self, number: int, value: float) -> None:
        self._state_for(number).value = value
        if self.accepting:
            self.broadcast(messages.value_event(number, value))

    def _on_midi(self, number: int, velocity: int) -> None:
        st = self._state_for(number)
        value = derive_value(st.type, velocity, st.value)
        if value is None:
            return
        st.value = value
        try:
            self.osc.send_executor_command(number, value)
        except OscSendError as e:
            log.error("Error forwarding MIDI executor %s: %s", number, e)
        if self.accepting:
            self.broadcast(messages.value_event(number, value))

    # -------------------------------------------------------------------------
    # Fan-out
    # -------------------------------------------------------------------------

    def broadcast(self, text: str) -> None:
        """Queue `text` for every client. Never waits on a socket."""
        for client in list(self.clients):
            self._enqueue(client, text)

    def _enqueue(self, client: Client, text: str) -> bool:
        box = self._outboxes.get(client)
        if box is None:
            return False
        try:
            box.queue.put_nowait(text)
        except asyncio.QueueFull:
            log.warning("client_queue_full", extra={"client": client.label, "queued": box.queue.qsize()})
            self._drop(client, close=True)
            return False
        return True

    async def _writer(self, client: Client, queue: asyncio.Queue) -> None:
        """Drain one client's queue; a failed or stalled send ends it and reports the client."""
        while True:
            text = await queue.get()
            try:
                await asyncio.wait_for(client.send_text(text), timeout=self.send_timeout_s)
            except asyncio.TimeoutError:
                log.warning("client_send_timeout", extra={"client": client.label, "timeout_s": self.send_timeout_s})
                break
            except Exception:
                log.exception("Error sending message to client %s", client.label)
                break
        self.post(ClientDropped(client))

    def _drop(self, client: Client, *, close: bool) -> None:
        self.clients.discard(client)
        box = self._outboxes.pop(client, None)
        if box is not None and box.task is not None:
            box.task.cancel()
        if close:
            self._spawn(self._close(client), name="close_client")

    async def _close(self, client: Client) -> None:
        try:
            await asyncio.wait_for(client.close(), timeout=1.0)
        except Exception:
            log.warning("Error closing client %s", getattr(client, "label", client))

    def _spawn(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "clients": len(self.clients),
            "executors": {
                str(n): {"type": st.type, "value": st.value} for n, st in sorted(self.executors.items())
            },
            "midi": bool(self.midi is not None and self.midi.connected),
            "spl": self.supervisor.status() if self.supervisor is not None else None,
        }


# ----------------------------- construction -----------------------------

def resolve_spl_argv(cfg: SplConfig) -> Optional[list]:
    """argv for the measurement process, or None when it should not run."""
    if not cfg.enabled or not cfg.command:
        return None
    if cfg.command == MOCK_COMMAND:
        return [sys.executable, "-m", "magicq_bridge.tools.mock_measurement", *cfg.args]
    if os.path.sep in cfg.command:
        if not os.path.exists(cfg.command):
            return None
    elif shutil.which(cfg.command) is None:
        return None
    return [cfg.command, *cfg.args]


def build_hub() -> RealtimeHub:
    """Wire a hub and its collaborators from config_loader.CONFIG."""
    from .config_loader import get_console_base_url, get_console_cfg, get_hub_cfg, get_midi_cfg, get_osc_cfg, get_spl_cfg
    from .magicq_osc import OscConfig
    from .midi_input import MidiConfig
    from .spl_process import RestartPolicy

    osc = OscTransport(OscConfig.from_cfg(get_osc_cfg()))
    scraper = ConsoleScraper.from_cfg(get_console_base_url(), get_console_cfg())

    midi_cfg = MidiConfig.from_cfg(get_midi_cfg())
    midi = MidiInput(midi_cfg) if midi_cfg.enabled else None

    spl_cfg = SplConfig.from_cfg(get_spl_cfg())
    spl_argv = resolve_spl_argv(spl_cfg)
    supervisor = None
    if spl_argv:
        supervisor = ProcessSupervisor(RestartPolicy.from_config(spl_cfg), kill_timeout_s=spl_cfg.kill_timeout_s)
    elif spl_cfg.enabled:
        log.warning("Measurement command %r not found; SPL stream disabled", spl_cfg.command)

    hub_cfg = get_hub_cfg()
    return RealtimeHub(
        osc,
        scraper,
        supervisor=supervisor,
        midi=midi,
        spl_argv=spl_argv,
        shutdown_timeout_s=float(hub_cfg.get("shutdown_timeout_s", 5.0)),
        send_timeout_s=float(hub_cfg.get("client_send_timeout_s", 5.0)),
        client_queue_size=int(hub_cfg.get("client_queue_size", 256)),
    )
