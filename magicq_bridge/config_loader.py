# magicq_bridge/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for the MagicQ bridge.

Single source of truth:
    config/config.yaml      (override with env MQB_CONFIG)

Design notes
------------
- If the default file is missing we run on built-in defaults; every section
  below has one. An explicitly requested file that is missing or broken raises
  a friendly RuntimeError with absolute paths.
- Unknown keys are fine; we pass the full dict through untouched.
- The historic environment variables (WS_PORT, MAGICQ_IP, ...) still win over
  the YAML so existing launch scripts keep working.

Public API
----------
- CONFIG: dict                              # eager-loaded contents of config/config.yaml
- load_config(path: str|Path|None = None)   # explicit reload (mainly for tests/tools)
- get_log_level(default: str = "INFO") -> str
- get_server_bind() -> tuple[str, int]
- get_console_cfg() -> dict
- get_console_base_url() -> str
- get_osc_cfg() -> dict
- get_midi_cfg() -> dict
- get_spl_cfg() -> dict
- get_hub_cfg() -> dict
"""

import os
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"

DEFAULT_WS_PORT = 3001
DEFAULT_CONSOLE_HOST = "localhost"
DEFAULT_CONSOLE_HTTP_PORT = 8080
DEFAULT_OSC_RECEIVE_PORT = 8000
DEFAULT_OSC_SEND_PORT = 9000


# ---------- I/O helpers ----------
def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping from `path`. Human-friendly errors, strict root type."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise RuntimeError(
            f"Missing configuration file: {path}\n"
            f"Repo root: {PROJECT_ROOT}"
        )
    except Exception as ex:
        raise RuntimeError(f"Failed to read {path}: {type(ex).__name__}: {ex}")

    try:
        data = yaml.safe_load(text) or {}
    except Exception as ex:
        raise RuntimeError(f"Failed to parse YAML {path}: {type(ex).__name__}: {ex}")

    if not isinstance(data, dict):
        raise RuntimeError(f"Root of {path} must be a mapping/object, not {type(data).__name__}")
    return data


def _resolve_path(p: str | os.PathLike[str]) -> Path:
    """Return absolute path; resolve relative to repo root."""
    pth = Path(p)
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


def _env_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}")


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Fold WS_PORT / MAGICQ_* / MQB_LOG_LEVEL into the matching sections."""
    server = cfg.setdefault("server", {}) or {}
    console = cfg.setdefault("console", {}) or {}
    osc = cfg.setdefault("osc", {}) or {}
    cfg["server"], cfg["console"], cfg["osc"] = server, console, osc

    ws_port = _env_int("WS_PORT")
    if ws_port is not None:
        server["port"] = ws_port

    host = os.getenv("MAGICQ_IP", "").strip()
    if host:
        console["host"] = host

    http_port = _env_int("MAGICQ_HTTP_PORT")
    if http_port is not None:
        console["http_port"] = http_port

    recv_port = _env_int("MAGICQ_OSC_RECEIVE_PORT")
    if recv_port is not None:
        osc["receive_port"] = recv_port

    send_port = _env_int("MAGICQ_OSC_SEND_PORT")
    if send_port is not None:
        osc["send_port"] = send_port

    level = os.getenv("MQB_LOG_LEVEL", "").strip()
    if level:
        cfg["log"] = dict(cfg.get("log") or {}, level=level)
    return cfg


# ---------- Loader ----------
def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Load a single YAML file (default: config/config.yaml or $MQB_CONFIG),
    apply environment overrides and return the dict.
    """
    explicit = path or os.getenv("MQB_CONFIG") or None
    if explicit:
        cfg = _load_yaml(_resolve_path(explicit))
    elif DEFAULT_CFG.exists():
        cfg = _load_yaml(DEFAULT_CFG)
    else:
        cfg = {}
    return _apply_env_overrides(cfg)


# Eagerly load once for the app
CONFIG: Dict[str, Any] = load_config()


# ---------- Accessors ----------
def get_log_level(default: str = "INFO") -> str:
    """Return log level as 'INFO'/'DEBUG', etc."""
    lvl = (CONFIG.get("log", {}) or {}).get("level", default)
    return str(lvl).upper()


def get_server_bind() -> Tuple[str, int]:
    """Return (host, port) for the client-facing websocket server."""
    server = CONFIG.get("server", {}) or {}
    host = str(server.get("host") or "0.0.0.0")
    try:
        port = int(server.get("port", DEFAULT_WS_PORT))
    except (TypeError, ValueError):
        port = DEFAULT_WS_PORT
    return host, port


def get_console_cfg() -> Dict[str, Any]:
    """Return console (MagicQ web server) block or {}."""
    return CONFIG.get("console", {}) or {}


def get_console_base_url() -> str:
    """http://<MAGICQ_IP>:<MAGICQ_HTTP_PORT> built from the console block."""
    console = get_console_cfg()
    base = console.get("base_url")
    if base:
        return str(base).rstrip("/")
    host = console.get("host", DEFAULT_CONSOLE_HOST)
    port = int(console.get("http_port", DEFAULT_CONSOLE_HTTP_PORT))
    return f"http://{host}:{port}"


def get_osc_cfg() -> Dict[str, Any]:
    """Return OSC block with the console host folded in as the send target."""
    osc = dict(CONFIG.get("osc", {}) or {})
    osc.setdefault("send_host", get_console_cfg().get("host", DEFAULT_CONSOLE_HOST))
    return osc


def get_midi_cfg() -> Dict[str, Any]:
    """Return MIDI input block or {}."""
    return CONFIG.get("midi", {}) or {}


def get_spl_cfg() -> Dict[str, Any]:
    """Return measurement process (sound level meter) block or {}."""
    return CONFIG.get("spl", {}) or {}


def get_hub_cfg() -> Dict[str, Any]:
    """Return hub block or {}."""
    return CONFIG.get("hub", {}) or {}
# ---------- End of config_loader.py ----------
