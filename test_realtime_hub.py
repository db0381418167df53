"""
Realtime hub behavior with fake collaborators.

Tests verify:
1. connection ack on join, fan-out survives a broken client
2. a stalled client (slow send or full queue) never holds up the hub
3. reload-executors reconciles runtime state and broadcasts show-setup
4. scrape failures and OSC send failures go to the requesting client only
5. MIDI notes update state, forward to OSC and broadcast
6. shutdown closes clients, is idempotent and silences the sample stream
"""

import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from magicq_bridge.console_http import Executor, ScrapeFailure, ShowSnapshot
from magicq_bridge.hub import (
    ClientJoined,
    ExecutorState,
    HubState,
    MidiNote,
    OscFeedback,
    RealtimeHub,
    SplSample,
    resolve_spl_argv,
)
from magicq_bridge.magicq_osc import OscSendError
from magicq_bridge.spl_process import SplConfig


class FakeOsc:
    def __init__(self):
        self.on_value = None
        self.commands = []
        self.fail = False
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def send_executor_command(self, number, value):
        if self.fail:
            raise OscSendError("send failed")
        self.commands.append(("logical", number, value))
        return value

    def send_physical_command(self, physical, value):
        if self.fail:
            raise OscSendError("send failed")
        self.commands.append(("physical", physical, value))
        return value


class FakeScraper:
    def __init__(self, result):
        self.result = result
        self.calls = 0

    async def fetch_data(self):
        self.calls += 1
        return self.result


class FakeClient:
    def __init__(self, label, fail_after=None):
        self.label = label
        self.sent = []
        self.closed = False
        self.fail_after = fail_after

    async def send_text(self, text):
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            raise ConnectionResetError("socket gone")
        self.sent.append(json.loads(text))

    async def close(self):
        self.closed = True

    def types(self):
        return [m["type"] for m in self.sent]


class StalledClient(FakeClient):
    """Accepts the connection ack, then every later send blocks forever."""

    async def send_text(self, text):
        if self.sent:
            await asyncio.Event().wait()
        self.sent.append(json.loads(text))


SNAPSHOT = ShowSnapshot(
    showName="Festival.shw",
    executors={
        1: Executor(number=1, name="Washers RED", type="flash", color="FF0000"),
        45: Executor(number=45, name="Dimmer", type="toggle"),
        7: Executor(number=7, name="Smoke", type="other"),
    },
)


async def settle():
    for _ in range(5):
        await asyncio.sleep(0.01)


def _hub(result=SNAPSHOT, **kw):
    return RealtimeHub(FakeOsc(), FakeScraper(result), **kw)


def test_join_ack_and_broken_client_is_dropped():
    async def run():
        hub = _hub()
        await hub.start()
        a, b, c = FakeClient("a"), FakeClient("b"), FakeClient("c", fail_after=1)
        for client in (a, b, c):
            hub.attach(client)
        await settle()
        assert hub.clients == {a, b, c}

        hub.osc.on_value(11, 0.5)
        await settle()
        remaining = set(hub.clients)
        await hub.stop()
        return hub, a, b, c, remaining

    hub, a, b, c, remaining = asyncio.run(run())
    for client in (a, b):
        assert client.sent[0] == {"type": "connection", "data": {"status": "connected"}}
        assert client.sent[1] == {"type": "val", "data": {"number": 11, "value": 0.5}}
    assert c.types() == ["connection"]
    assert c.closed
    assert remaining == {a, b}
    assert hub.executors[11] == ExecutorState(type="toggle", value=0.5)
    print("[OK] broadcast survives a broken client")


def test_stalled_client_does_not_block_the_hub():
    async def run():
        hub = _hub(send_timeout_s=0.2)
        await hub.start()
        good, stalled = FakeClient("good"), StalledClient("stalled")
        hub.attach(good)
        hub.attach(stalled)
        await settle()

        hub.osc.on_value(1, 0.5)
        hub.post(MidiNote(2, 100))
        hub.osc.on_value(3, 0.7)
        await settle()
        delivered = list(good.sent)
        commands = list(hub.osc.commands)

        await asyncio.sleep(0.3)
        remaining = set(hub.clients)
        await hub.stop()
        return delivered, commands, remaining, good, stalled

    delivered, commands, remaining, good, stalled = asyncio.run(run())
    assert [m["type"] for m in delivered] == ["connection", "val", "val", "val"]
    assert [m["data"]["number"] for m in delivered[1:]] == [1, 2, 3]
    assert commands == [("logical", 2, 1.0)]
    # the stalled send timed out: client dropped and closed, the other kept
    assert remaining == {good}
    assert stalled.closed
    print("[OK] stalled client dropped without holding up the hub")


def test_full_queue_drops_only_that_client():
    async def run():
        hub = _hub(send_timeout_s=60, client_queue_size=2)
        await hub.start()
        good, stalled = FakeClient("good"), StalledClient("stalled")
        await hub.apply(ClientJoined(good))
        await hub.apply(ClientJoined(stalled))
        await settle()

        for number in (1, 2, 3, 4):
            await hub.apply(OscFeedback(number, 1.0))
            await settle()
        remaining = set(hub.clients)
        await hub.stop()
        return remaining, good, stalled

    remaining, good, stalled = asyncio.run(run())
    assert remaining == {good}
    assert stalled.closed
    assert [m["data"]["number"] for m in good.sent[1:]] == [1, 2, 3, 4]


def test_reload_broadcasts_and_reconciles():
    async def run():
        hub = _hub()
        await hub.start()
        hub.executors[1] = ExecutorState(type="toggle", value=0.75)
        hub.executors[99] = ExecutorState(type="fader", value=0.3)
        requester, other = FakeClient("req"), FakeClient("other")
        hub.attach(requester)
        hub.attach(other)
        await settle()

        hub.receive(requester, json.dumps({"type": "reload-executors"}))
        await settle()
        await hub.stop()
        return hub, requester, other

    hub, requester, other = asyncio.run(run())
    for client in (requester, other):
        setup = client.sent[1]
        assert setup["type"] == "show-setup"
        assert setup["data"]["showName"] == "Festival.shw"
        assert setup["data"]["executors"]["1"]["name"] == "Washers RED"

    assert hub.executors[1] == ExecutorState(type="flash", value=0.75)
    assert hub.executors[45] == ExecutorState(type="fader", value=0.0)
    assert hub.executors[7] == ExecutorState(type="other", value=0.0)
    # known-but-unnamed executors survive a reload
    assert hub.executors[99] == ExecutorState(type="fader", value=0.3)


def test_state_is_reconciled_before_show_setup_goes_out():
    seen = {}

    class Watcher(FakeClient):
        async def send_text(self, text):
            if json.loads(text)["type"] == "show-setup":
                seen["45"] = hub.executors.get(45)
            await super().send_text(text)

    hub = _hub()

    async def run():
        await hub.start()
        await hub.apply(ClientJoined(Watcher("ui")))
        hub.receive(next(iter(hub.clients)), '{"type": "reload-executors"}')
        await settle()
        await hub.stop()

    asyncio.run(run())
    assert seen["45"] == ExecutorState(type="fader", value=0.0)


def test_scrape_failure_only_reaches_requester():
    async def run():
        hub = _hub(ScrapeFailure("Failed to fetch MagicQ data"))
        await hub.start()
        hub.executors[1] = ExecutorState(type="toggle", value=1.0)
        requester, other = FakeClient("req"), FakeClient("other")
        hub.attach(requester)
        hub.attach(other)
        await settle()
        hub.receive(requester, '{"type": "reload-executors"}')
        await settle()
        await hub.stop()
        return hub, requester, other

    hub, requester, other = asyncio.run(run())
    assert requester.sent[-1] == {"type": "error", "data": {"error": "Failed to fetch MagicQ data"}}
    assert other.types() == ["connection"]
    assert hub.executors == {1: ExecutorState(type="toggle", value=1.0)}


def test_exec_commands():
    async def run():
        hub = _hub()
        await hub.start()
        sender, other = FakeClient("sender"), FakeClient("other")
        hub.attach(sender)
        hub.attach(other)
        await settle()

        hub.receive(sender, '{"type": "exec", "number": 5, "value": 0.5}')
        hub.receive(sender, '{"type": "exec", "address": "12", "value": 1}')
        hub.receive(sender, '{"type": "exec", "address": "/exec/1/45", "value": 0.2}')
        hub.receive(sender, '{"type": "exec", "value": 0.2}')
        hub.receive(sender, '{"type": "exec", "number": -1, "value": 0.2}')
        hub.receive(sender, '{"type": "exec", "address": -3, "value": 0.2}')
        hub.receive(sender, "{not json")
        hub.receive(sender, '{"type": "dance"}')
        await settle()

        hub.osc.fail = True
        hub.receive(sender, '{"type": "exec", "number": 5, "value": 0.5}')
        await settle()
        await hub.stop()
        return hub, sender, other

    hub, sender, other = asyncio.run(run())
    assert hub.osc.commands == [("logical", 5, 0.5), ("logical", 12, 1.0), ("physical", 45, 0.2)]
    invalid = {"type": "error", "data": {"error": "Invalid exec message"}}
    assert sender.sent[1:] == [
        invalid,
        invalid,
        invalid,
        {"type": "error", "data": {"error": "Failed to send OSC message"}},
    ]
    assert other.types() == ["connection"]


def test_midi_toggle_forwards_and_broadcasts():
    async def run():
        hub = _hub()
        await hub.start()
        client = FakeClient("ui")
        await hub.apply(ClientJoined(client))

        await hub.apply(MidiNote(3, 100))
        await hub.apply(MidiNote(3, 0))
        await hub.apply(MidiNote(3, 100))
        await hub.apply(MidiNote(41, 127))
        await settle()
        await hub.stop()
        return hub, client

    hub, client = asyncio.run(run())
    assert hub.osc.commands == [("logical", 3, 1.0), ("logical", 3, 0.0), ("logical", 41, 0.9999)]
    assert [m["data"] for m in client.sent[1:]] == [
        {"number": 3, "value": 1.0},
        {"number": 3, "value": 0.0},
        {"number": 41, "value": 0.9999},
    ]
    assert hub.executors[3] == ExecutorState(type="toggle", value=0.0)
    assert hub.executors[41].type == "fader"


def test_midi_uses_scraped_type():
    async def run():
        hub = _hub()
        await hub.start()
        hub.reconcile(SNAPSHOT)
        await hub.apply(MidiNote(1, 100))
        await hub.apply(MidiNote(1, 0))
        await hub.stop()
        return hub

    hub = asyncio.run(run())
    # executor 1 is a flash: follows the key
    assert hub.osc.commands == [("logical", 1, 1.0), ("logical", 1, 0.0)]


def test_stop_closes_clients_and_silences_samples():
    async def run():
        hub = _hub()
        await hub.start()
        client = FakeClient("ui")
        await hub.apply(ClientJoined(client))
        await hub.apply(SplSample({"measured": 70.1}))
        await settle()

        await hub.stop()
        await hub.stop()
        await hub.apply(SplSample({"measured": 71.0}))
        await hub.apply(OscFeedback(2, 1.0))
        hub.post(SplSample({"measured": 72.0}))
        await settle()
        return hub, client

    hub, client = asyncio.run(run())
    assert hub.state is HubState.STOPPED
    assert client.closed
    assert hub.clients == set()
    assert hub.osc.stopped
    assert client.types() == ["connection", "spl"]
    assert client.sent[1]["data"] == {"measured": 70.1}


def test_join_after_stop_is_refused_and_closed():
    async def run():
        hub = _hub()
        await hub.start()
        await hub.stop()
        client = FakeClient("late")
        await hub.apply(ClientJoined(client))
        await settle()
        return hub, client

    hub, client = asyncio.run(run())
    assert client.sent == []
    assert client.closed
    assert hub.clients == set()


def test_resolve_spl_argv(tmp_path):
    assert resolve_spl_argv(SplConfig(enabled=False, command="mock")) is None
    assert resolve_spl_argv(SplConfig(command=None)) is None
    assert resolve_spl_argv(SplConfig(command=str(tmp_path / "missing"))) is None

    mock = resolve_spl_argv(SplConfig(command="mock", args=["-i", "50"]))
    assert mock == [sys.executable, "-m", "magicq_bridge.tools.mock_measurement", "-i", "50"]

    binary = tmp_path / "splread"
    binary.write_text("#!/bin/sh\n")
    assert resolve_spl_argv(SplConfig(command=str(binary), args=["-f"])) == [str(binary), "-f"]
