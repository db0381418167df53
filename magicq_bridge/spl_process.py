# ============================================================================
# MagicQ Bridge - Measurement Process Supervisor
# ============================================================================
# Purpose:
#   Keeps the sound level meter reader (splread or the bundled mock) alive
#   and forwards every JSON line it prints on stdout as one sample.
#
# Architecture:
#   - asyncio subprocess, stdout read in chunks into a line buffer
#   - one supervising task: spawn -> read until EOF -> wait -> restart
#   - RestartPolicy decides the delay before the next spawn
#
# Restart policy:
#   - every exit/spawn failure schedules a restart after restart_delay_s
#   - restarts are tracked in a sliding window (restart_window_s); once
#     max_restarts have happened inside the window the next failure parks
#     the supervisor for backoff_s with no spawn attempts
#   - when the backoff expires the window is cleared and spawning resumes
#
# Shutdown:
#   stop() is final. SIGTERM first, SIGKILL after kill_timeout_s.
#
# ============================================================================

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, List, Optional, Sequence

log = logging.getLogger("mqb.spl")


@dataclass
class SplConfig:
    """
    Configuration for the measurement process.

    Attributes:
        enabled: start the supervisor at all
        command: executable path, or "mock" for the bundled generator
        args: extra argv passed to the command
        restart_delay_s: pause between an exit and the next spawn
        restart_window_s: sliding window for counting restarts
        max_restarts: restarts allowed inside the window before backing off
        backoff_s: how long to stay parked once the limit is hit
        kill_timeout_s: grace period between SIGTERM and SIGKILL
    """
    enabled: bool = True
    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    restart_delay_s: float = 10.0
    restart_window_s: float = 60.0
    max_restarts: int = 5
    backoff_s: float = 300.0
    kill_timeout_s: float = 2.0

    @classmethod
    def from_cfg(cls, spl: dict) -> "SplConfig":
        spl = spl or {}
        return cls(
            enabled=bool(spl.get("enabled", True)),
            command=str(spl["command"]) if spl.get("command") else None,
            args=[str(a) for a in (spl.get("args") or [])],
            restart_delay_s=float(spl.get("restart_delay_s", 10.0)),
            restart_window_s=float(spl.get("restart_window_s", 60.0)),
            max_restarts=int(spl.get("max_restarts", 5)),
            backoff_s=float(spl.get("backoff_s", 300.0)),
            kill_timeout_s=float(spl.get("kill_timeout_s", 2.0)),
        )


class RestartPolicy:
    """
    Sliding-window restart limiter.

    on_failure() is called once per exit and returns the seconds to wait
    before the next spawn. While in backoff, spawn_allowed() is False until
    the backoff deadline passes; end_backoff() then clears the window.
    """

    def __init__(
        self,
        restart_delay_s: float = 10.0,
        window_s: float = 60.0,
        max_restarts: int = 5,
        backoff_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.restart_delay_s = float(restart_delay_s)
        self.window_s = float(window_s)
        self.max_restarts = int(max_restarts)
        self.backoff_s = float(backoff_s)
        self._clock = clock
        self.restarts: Deque[float] = deque()
        self.backoff_until: Optional[float] = None

    @classmethod
    def from_config(cls, cfg: SplConfig) -> "RestartPolicy":
        return cls(cfg.restart_delay_s, cfg.restart_window_s, cfg.max_restarts, cfg.backoff_s)

    @property
    def in_backoff(self) -> bool:
        return self.backoff_until is not None

    def on_failure(self) -> float:
        now = self._clock()
        if self.backoff_until is not None:
            return max(0.0, self.backoff_until - now)

        while self.restarts and now - self.restarts[0] >= self.window_s:
            self.restarts.popleft()

        if len(self.restarts) >= self.max_restarts:
            self.backoff_until = now + self.backoff_s
            return self.backoff_s

        self.restarts.append(now)
        return self.restart_delay_s

    def spawn_allowed(self) -> bool:
        return self.backoff_until is None or self._clock() >= self.backoff_until

    def end_backoff(self) -> None:
        self.backoff_until = None
        self.restarts.clear()


class ProcessSupervisor:
    """
    Spawns a line-oriented JSON producer and restarts it on failure.

    Callbacks:
        on_sample(sample: Any): one parsed JSON value per stdout line. Invoked
            on the event loop thread.
    """

    READ_CHUNK = 4096

    def __init__(
        self,
        policy: Optional[RestartPolicy] = None,
        *,
        kill_timeout_s: float = 2.0,
        on_sample: Optional[Callable[[Any], None]] = None,
    ):
        self.policy = policy or RestartPolicy()
        self.kill_timeout_s = float(kill_timeout_s)
        self.on_sample = on_sample

        self._argv: List[str] = []
        self._buffer = b""
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

        # counters surfaced in /healthz
        self.spawn_count = 0
        self.samples_total = 0
        self.invalid_total = 0

    # -------------------------------------------------------------------------
    # Lifecycle Management
    # -------------------------------------------------------------------------

    async def start(self, command: str, args: Sequence[str] = ()) -> None:
        """Begin supervising `command args...`. Repeated calls are ignored."""
        if self._task is not None or self._stopped:
            return
        self._argv = [command, *args]
        self._task = asyncio.create_task(self._supervise(), name="spl_supervisor")

    async def stop(self) -> None:
        """
        Stop supervision for good. SIGTERM the child, SIGKILL it if it is still
        alive after kill_timeout_s, and cancel any pending restart sleep.
        """
        if self._stopped:
            return
        self._stopped = True

        proc = self._proc
        if proc is not None and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.kill_timeout_s)
            except asyncio.TimeoutError:
                log.warning("kill_escalation", extra={"pid": proc.pid, "timeout_s": self.kill_timeout_s})
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                with contextlib.suppress(Exception):
                    await proc.wait()

        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        log.info("spl_stopped", extra={"spawns": self.spawn_count, "samples": self.samples_total})

    def status(self) -> dict:
        return {
            "running": bool(self._proc is not None and self._proc.returncode is None),
            "stopped": self._stopped,
            "spawns": self.spawn_count,
            "samples": self.samples_total,
            "invalid_lines": self.invalid_total,
            "backoff": self.policy.in_backoff,
        }

    # -------------------------------------------------------------------------
    # Supervision loop
    # -------------------------------------------------------------------------

    async def _supervise(self) -> None:
        while not self._stopped:
            if self.policy.spawn_allowed():
                if self.policy.in_backoff:
                    self.policy.end_backoff()
                    log.info("restart_backoff_expired")
                try:
                    await self._run_once()
                except asyncio.CancelledError:
                    raise
                except OSError as e:
                    log.warning("spawn_error", extra={"argv": self._argv, "err": str(e)})

            if self._stopped:
                break

            delay = self.policy.on_failure()
            if self.policy.in_backoff:
                log.warning(
                    "restart_backoff",
                    extra={"backoff_s": round(delay, 1), "max_restarts": self.policy.max_restarts},
                )
            else:
                log.info("restart_scheduled", extra={"delay_s": delay})
            await asyncio.sleep(delay)

    async def _run_once(self) -> None:
        self.spawn_count += 1
        self._buffer = b""
        proc = await asyncio.create_subprocess_exec(
            *self._argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._proc = proc
        log.info("spawned", extra={"pid": proc.pid, "argv": self._argv})

        stderr_task = asyncio.create_task(self._drain_stderr(proc))
        try:
            assert proc.stdout is not None
            while True:
                chunk = await proc.stdout.read(self.READ_CHUNK)
                if not chunk:
                    break
                self.feed(chunk)
            rc = await proc.wait()
            if not self._stopped:
                log.warning("process_exited", extra={"pid": proc.pid, "returncode": rc})
        finally:
            stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stderr_task
            self._proc = None

    async def _drain_stderr(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        while True:
            raw = await proc.stderr.readline()
            if not raw:
                return
            log.warning("stderr", extra={"line": raw.decode(errors="replace").rstrip()})

    # -------------------------------------------------------------------------
    # Line buffering
    # -------------------------------------------------------------------------

    def feed(self, chunk: bytes) -> List[Any]:
        """
        Append a stdout chunk, emit every complete line and keep the partial
        tail for the next call. Returns the samples emitted by this chunk.
        """
        self._buffer += chunk
        lines = self._buffer.split(b"\n")
        self._buffer = lines.pop()

        emitted: List[Any] = []
        for raw in lines:
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                sample = json.loads(text)
            except ValueError:
                self.invalid_total += 1
                log.warning("invalid_line", extra={"line": text[:200]})
                continue
            self.samples_total += 1
            emitted.append(sample)
            if self.on_sample is not None:
                try:
                    self.on_sample(sample)
                except Exception:
                    log.exception("on_sample callback failed")
        return emitted
