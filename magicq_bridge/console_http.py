# magicq_bridge/console_http.py
# -----------------------------------------------------------------------------
# MagicQ web server scrape -> show name + executor table.
#
# Two pages, fetched fresh on every call (no session, no cache):
#   /           status table, one row carries  <td>Show</td><td>path/to/show</td>
#   /exec.html  one <input name="<slot>" value="..."> per physical slot.
#               name row  -> value is the executor's display name
#               config row -> value is "color,typeCode,dotColor"
# -----------------------------------------------------------------------------

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from html.parser import HTMLParser
from typing import Dict, List, Optional, Sequence, Tuple, Union

import httpx

from .executor_index import is_name_slot, to_logical

log = logging.getLogger("mqb.console")

TYPE_CODES = {"t": "toggle", "f": "flash", "v": "fader"}
NO_COLOR = "x"
DEFAULT_SHOW_MARKERS: Tuple[str, ...] = ("MagicQ/show/", "~/")


@dataclass
class Executor:
    number: int
    name: Optional[str] = None
    type: str = "other"
    color: Optional[str] = None
    dotColor: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "number": self.number,
            "name": self.name,
            "type": self.type,
            "color": self.color,
            "dotColor": self.dotColor,
        }


@dataclass
class ShowSnapshot:
    showName: Optional[str]
    executors: Dict[int, Executor] = field(default_factory=dict)

    def as_payload(self) -> dict:
        return {
            "showName": self.showName,
            "executors": {str(n): ex.as_dict() for n, ex in sorted(self.executors.items())},
        }


@dataclass
class ScrapeFailure:
    error: str


class ConsoleUnavailable(Exception):
    """The console web server did not answer with a usable page."""


# ----------------------------- HTML parsing -----------------------------

class _TableRowParser(HTMLParser):
    """Collects the text of every <td> grouped per <tr>."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.rows: List[List[str]] = []
        self._row: Optional[List[str]] = None
        self._cell: Optional[List[str]] = None

    def handle_starttag(self, tag, attrs):
        if tag == "tr":
            self._close_row()
            self._row = []
        elif tag == "td":
            self._close_cell()
            if self._row is None:
                self._row = []
            self._cell = []

    def handle_endtag(self, tag):
        if tag == "td":
            self._close_cell()
        elif tag in ("tr", "table"):
            self._close_row()

    def handle_data(self, data):
        if self._cell is not None:
            self._cell.append(data)

    def close(self):
        super().close()
        self._close_row()

    def _close_cell(self):
        if self._cell is not None and self._row is not None:
            self._row.append("".join(self._cell))
        self._cell = None

    def _close_row(self):
        self._close_cell()
        if self._row is not None:
            self.rows.append(self._row)
        self._row = None


class _InputFieldParser(HTMLParser):
    """Collects (name, value) of every <input> element in document order."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.fields: List[Tuple[str, str]] = []

    def handle_starttag(self, tag, attrs):
        if tag != "input":
            return
        attr = dict(attrs)
        self.fields.append((attr.get("name") or "", attr.get("value") or ""))


def strip_show_path(text: str, markers: Sequence[str] = DEFAULT_SHOW_MARKERS) -> str:
    """Drop everything up to the last occurrence of the first marker found in `text`."""
    for marker in markers:
        marker = os.path.expanduser(marker) if marker.startswith("~") else marker
        if marker and marker in text:
            tail = text.rsplit(marker, 1)[1]
            if tail:
                return tail
    return text


def parse_show_name(html: str, markers: Sequence[str] = DEFAULT_SHOW_MARKERS) -> Optional[str]:
    parser = _TableRowParser()
    parser.feed(html)
    parser.close()
    for cells in parser.rows:
        for i in range(len(cells) - 1):
            if cells[i].strip() == "Show":
                raw = cells[i + 1].strip()
                return strip_show_path(raw, markers) if raw else None
    return None


def parse_type_code(code: Optional[str]) -> str:
    # Older firmware sends T/F/V, newer pages lowercase; accept both.
    return TYPE_CODES.get((code or "").strip().lower(), "other")


def parse_executors(html: str) -> Dict[int, Executor]:
    parser = _InputFieldParser()
    parser.feed(html)
    parser.close()

    executors: Dict[int, Executor] = {}
    for name, value in parser.fields:
        try:
            index = int(name.strip())
        except ValueError:
            if name.strip():
                log.warning("invalid_exec_field", extra={"field": name})
            continue
        if index < 0:
            log.debug("Skipping exec field with negative index %r", name)
            continue

        number = to_logical(index)
        ex = executors.get(number)
        if ex is None:
            ex = executors[number] = Executor(number=number)

        if is_name_slot(index):
            ex.name = value
        else:
            parts = value.split(",")
            ex.color = parts[0].strip() or None
            ex.type = parse_type_code(parts[1] if len(parts) > 1 else None)
            dot = parts[2].strip() if len(parts) > 2 else ""
            ex.dotColor = None if (not dot or dot.lower() == NO_COLOR) else dot
    return executors


# ----------------------------- HTTP client -----------------------------

class ConsoleScraper:
    """
    Stateless scraper for the MagicQ embedded web server.

    Each call opens its own httpx.AsyncClient. `transport` exists so tests can
    hand in an httpx.MockTransport.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 5.0,
        show_markers: Sequence[str] = DEFAULT_SHOW_MARKERS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.show_markers = tuple(show_markers)
        self._transport = transport

    @classmethod
    def from_cfg(cls, base_url: str, console: dict) -> "ConsoleScraper":
        console = console or {}
        return cls(
            base_url,
            timeout_s=float(console.get("http_timeout_s", 5.0)),
            show_markers=tuple(console.get("show_path_markers") or DEFAULT_SHOW_MARKERS),
        )

    async def _get(self, path: str) -> str:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout_s, transport=self._transport
            ) as client:
                resp = await client.get(path)
        except httpx.HTTPError as e:
            raise ConsoleUnavailable(f"GET {self.base_url}{path} failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise ConsoleUnavailable(f"GET {self.base_url}{path} -> HTTP {resp.status_code}")
        return resp.text

    async def fetch_show_name(self) -> Optional[str]:
        """Show name from the status page, or None when missing/unreachable."""
        log.info("Fetching show name from %s", self.base_url)
        try:
            html = await self._get("/")
        except ConsoleUnavailable as e:
            log.warning("show_name_fetch_failed", extra={"err": str(e)})
            return None
        return parse_show_name(html, self.show_markers)

    async def fetch_executors(self) -> Dict[int, Executor]:
        """Executor table from exec.html. Raises ConsoleUnavailable on HTTP failure."""
        log.info("Fetching executors from %s", self.base_url)
        html = await self._get("/exec.html")
        return parse_executors(html)

    async def fetch_data(self) -> Union[ShowSnapshot, ScrapeFailure]:
        """Both pages in parallel, combined into one snapshot."""
        try:
            show_name, executors = await asyncio.gather(
                self.fetch_show_name(),
                self.fetch_executors(),
            )
        except Exception as e:
            log.error("Error fetching MagicQ data: %s", e)
            return ScrapeFailure(error="Failed to fetch MagicQ data")
        return ShowSnapshot(showName=show_name, executors=executors)
