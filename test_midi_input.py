"""
MIDI button box mapping and value derivation.

Covers:
1. note -> executor bands (48 -> 1, 68 -> 6, 88 -> 41)
2. toggle / flash / fader semantics
3. MidiInput message handling without a real port
"""

import sys
from pathlib import Path
from types import SimpleNamespace

sys.path.insert(0, str(Path(__file__).parent))

from magicq_bridge.midi_input import (
    FADER_MAX,
    MidiConfig,
    MidiInput,
    default_type,
    derive_value,
    note_to_executor,
)


def test_note_bands():
    assert note_to_executor(48) == 1
    assert note_to_executor(52) == 5
    assert note_to_executor(53) == 11
    assert note_to_executor(67) == 35
    assert note_to_executor(68) == 6
    assert note_to_executor(73) == 16
    assert note_to_executor(87) == 40
    assert note_to_executor(88) == 41
    assert note_to_executor(100) == 53
    print("[OK] note bands")


def test_notes_below_range_are_dropped():
    assert note_to_executor(47) is None
    assert note_to_executor(0) is None


def test_default_type():
    assert default_type(40) == "toggle"
    assert default_type(41) == "fader"
    assert default_type(1) == "toggle"


def test_toggle_sequence():
    value = 0.0
    seen = []
    for velocity in (100, 0, 100, 0, 90):
        v = derive_value("toggle", velocity, value)
        if v is not None:
            value = v
        seen.append(value)
    assert seen == [1.0, 1.0, 0.0, 0.0, 1.0]
    assert derive_value("toggle", 0, 1.0) is None
    # any non-zero level counts as "on"
    assert derive_value("toggle", 64, 0.4) == 0.0


def test_flash_and_other_follow_the_key():
    for kind in ("flash", "other"):
        assert derive_value(kind, 127, 0.0) == 1.0
        assert derive_value(kind, 0, 1.0) == 0.0


def test_fader_scaling():
    assert derive_value("fader", 0, 0.5) == 0.0
    assert abs(derive_value("fader", 64, 0.0) - 64 / 127.0) < 1e-9
    assert derive_value("fader", 127, 0.0) == FADER_MAX
    assert FADER_MAX < 1.0


def test_handle_message_translates_notes():
    got = []
    midi = MidiInput(MidiConfig(input_name="Leonardo"), on_note=lambda n, v: got.append((n, v)))

    midi._handle_message(SimpleNamespace(type="note_on", note=48, velocity=100))
    midi._handle_message(SimpleNamespace(type="note_off", note=68, velocity=64))
    midi._handle_message(SimpleNamespace(type="note_on", note=30, velocity=100))
    midi._handle_message(SimpleNamespace(type="control_change", control=7, value=10))

    assert got == [(1, 100), (6, 0)]


def test_start_without_matching_port(monkeypatch):
    import magicq_bridge.midi_input as mi

    monkeypatch.setattr(mi.mido, "get_input_names", lambda: ["Some Keyboard"])
    midi = MidiInput(MidiConfig(input_name="Arduino Leonardo"))
    assert midi.start() is False
    assert not midi.connected
    midi.stop()
