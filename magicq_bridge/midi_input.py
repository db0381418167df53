# magicq_bridge/midi_input.py
# -----------------------------------------------------------------------------
# Hardware executor buttons (USB MIDI) -> executor numbers.
#
# The button box sends notes starting at 48. The first 40 notes are wired as
# two blocks of 5x4 buttons that sit under MagicQ executor columns 1-5 and
# 6-10; everything from note 88 upwards maps straight onto executors 41+
# (the fader wing).
#
# mido delivers messages on its own callback thread; we only translate and
# hand (executor, velocity) to on_note. Value derivation happens in the hub,
# which owns the current executor state.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import mido

log = logging.getLogger("mqb.midi")

NOTE_BASE = 48
FADER_FLOOR = 40          # executors above this number are faders on the wing
FADER_MAX = 0.9999        # fader levels from MIDI never reach 1.0

EXECUTOR_TYPES = ("toggle", "flash", "fader", "other")


def note_to_executor(note: int) -> Optional[int]:
    """Map a MIDI note number onto an executor number; None below the button range."""
    raw = int(note) - NOTE_BASE
    if raw < 0:
        return None
    if raw < 20:
        return raw % 5 + (raw // 5) * 10 + 1
    if raw < 40:
        return raw % 5 + ((raw - 20) // 5) * 10 + 6
    return raw + 1


def default_type(number: int) -> str:
    return "fader" if number > FADER_FLOOR else "toggle"


def derive_value(kind: str, velocity: int, last_value: float) -> Optional[float]:
    """
    Executor level for a note event, or None when the event must be ignored.

    fader:         velocity scaled to 0..FADER_MAX on every note
    toggle:        note-on flips 0 <-> 1, note-off does nothing
    flash / other: follows the key (1 while held, 0 on release)
    """
    if kind == "fader":
        return min(velocity / 127.0, FADER_MAX)
    if kind == "toggle":
        if velocity <= 0:
            return None
        return 1.0 if last_value == 0 else 0.0
    return 1.0 if velocity > 0 else 0.0


@dataclass
class MidiConfig:
    enabled: bool = True
    input_name: str = "Arduino Leonardo"

    @classmethod
    def from_cfg(cls, midi: dict) -> "MidiConfig":
        midi = midi or {}
        return cls(
            enabled=bool(midi.get("enabled", True)),
            input_name=str(midi.get("input_name", "Arduino Leonardo")),
        )


class MidiInput:
    """
    Listens on the first MIDI input whose name contains cfg.input_name.

    Callbacks:
        on_note(number: int, velocity: int): note-on with its velocity, or
            note-off as velocity 0. Invoked from the mido callback thread.
    """

    def __init__(self, cfg: MidiConfig, on_note: Optional[Callable[[int, int], None]] = None):
        self.cfg = cfg
        self.on_note = on_note
        self._port = None
        self.port_name: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self._port is not None

    def start(self) -> bool:
        """Open the matching input. Returns False (and stays inactive) when none matches."""
        if self._port is not None:
            return True
        try:
            names = mido.get_input_names()
        except Exception as e:
            # No backend (python-rtmidi missing, no ALSA, ...)
            log.warning("MIDI backend unavailable: %s", e)
            return False

        log.info("Available MIDI inputs: %s", ", ".join(names) if names else "(none)")
        selected = next((n for n in names if self.cfg.input_name in n), None)
        if selected is None:
            log.warning('MIDI input "%s" not found', self.cfg.input_name)
            return False

        try:
            self._port = mido.open_input(selected, callback=self._handle_message)
        except Exception:
            log.exception("Failed to open MIDI port %s", selected)
            return False
        self.port_name = selected
        log.info("Connected to MIDI input: %s", selected)
        return True

    def stop(self) -> None:
        port, self._port = self._port, None
        if port is None:
            return
        try:
            port.close()
        except Exception:
            log.exception("Error closing MIDI port %s", self.port_name)

    def _handle_message(self, msg) -> None:
        if msg.type == "note_on":
            velocity = int(msg.velocity)
        elif msg.type == "note_off":
            velocity = 0
        else:
            # control_change and friends: no executor mapping defined
            log.debug("midi_ignored", extra={"midi_type": msg.type})
            return

        number = note_to_executor(msg.note)
        if number is None:
            log.debug("midi_note_out_of_range", extra={"note": msg.note})
            return
        if self.on_note is None:
            return
        try:
            self.on_note(number, velocity)
        except Exception:
            log.exception("on_note callback failed for note %s", msg.note)
