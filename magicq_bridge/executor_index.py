# magicq_bridge/executor_index.py
# -----------------------------------------------------------------------------
# Physical slot index <-> logical executor number.
#
# MagicQ lays each executor button out over two rows of ten on its execute
# page (name row + config row), so one page spans 20 physical slots:
#
#     index  1..9   -> executor 1..9    (name row)
#     index 11..19  -> executor 1..9    (config row)
#     index 21..29  -> executor 11..19  (name row, next page)
#
# Indexes 10, 20, 30, ... keep their arithmetic result (10, 10, 20, ...).
#
# The OSC/MIDI direction uses its own packing (ten per row, twenty per page)
# and is NOT the inverse of to_logical(). Never round-trip through both.
# -----------------------------------------------------------------------------

from __future__ import annotations

SLOTS_PER_PAGE = 20
EXECUTORS_PER_ROW = 10


def to_logical(index: int) -> int:
    """Fold a physical slot index (exec page field / inbound OSC) into an executor number."""
    slot = index % SLOTS_PER_PAGE
    col = slot - EXECUTORS_PER_ROW if slot > EXECUTORS_PER_ROW else slot
    row = index // SLOTS_PER_PAGE
    return col + row * EXECUTORS_PER_ROW


def to_physical(number: int) -> int:
    """Spread an executor number out to the physical address used for outbound OSC."""
    col = number % EXECUTORS_PER_ROW
    row = number // EXECUTORS_PER_ROW
    return col + row * SLOTS_PER_PAGE


def is_name_slot(index: int) -> bool:
    """First row of each 20-slot page carries the display name; the second row carries config."""
    return index % SLOTS_PER_PAGE < EXECUTORS_PER_ROW
