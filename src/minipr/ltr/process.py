"""
Blocking external process calls with a timeout and cooperative cancellation.

stdout and stderr are drained by reader threads. Each stdout line can be handed
to a callback as it arrives; only a bounded tail of both streams is kept.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from minipr.errors import ExternalToolError

logger = logging.getLogger(__name__)

DEFAULT_TAIL_LINES = 200


@dataclass
class ProcessResult:
    command: list[str]
    returncode: int
    stdout_tail: list[str] = field(default_factory=list)
    stderr_tail: list[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def stderr(self) -> str:
        return "\n".join(self.stderr_tail)

    @property
    def stdout(self) -> str:
        return "\n".join(self.stdout_tail)


def _drain(stream, tail: deque, on_line: Optional[Callable[[str], None]], errors: list) -> None:
    try:
        for raw in stream:
            line = raw.rstrip("\r\n")
            tail.append(line)
            if on_line is not None:
                on_line(line)
    except Exception as e:  # surfaced by run_process after the reader is joined
        errors.append(e)
    finally:
        stream.close()


def _stop(proc: subprocess.Popen) -> None:
    proc.kill()
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        logger.error(f"Process {proc.pid} did not exit after kill")


def run_process(
    command: Sequence[str],
    *,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    on_stdout_line: Optional[Callable[[str], None]] = None,
    on_stderr_line: Optional[Callable[[str], None]] = None,
    cwd: Optional[str | Path] = None,
    check: bool = True,
    max_tail_lines: int = DEFAULT_TAIL_LINES,
    poll_interval: float = 0.1,
) -> ProcessResult:
    """
    Runs `command` to completion.

    Raises ExternalToolError when the process cannot be launched, exceeds
    `timeout` seconds, is cancelled through `cancel_event`, or (with `check`)
    exits with a non-zero return code.
    """
    cmd = [str(c) for c in command]
    logger.debug(f"Running: {' '.join(cmd)}")
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            cwd=str(cwd) if cwd is not None else None,
        )
    except OSError as e:
        raise ExternalToolError(f"Could not launch {cmd[0]}: {e}", command=cmd) from e

    stdout_tail: deque = deque(maxlen=max_tail_lines)
    stderr_tail: deque = deque(maxlen=max_tail_lines)
    reader_errors: list = []
    readers = [
        threading.Thread(target=_drain, args=(proc.stdout, stdout_tail, on_stdout_line, reader_errors), daemon=True),
        threading.Thread(target=_drain, args=(proc.stderr, stderr_tail, on_stderr_line, reader_errors), daemon=True),
    ]
    for reader in readers:
        reader.start()

    deadline = started + timeout if timeout else None
    reason = None
    while True:
        try:
            proc.wait(timeout=poll_interval)
            break
        except subprocess.TimeoutExpired:
            pass
        if cancel_event is not None and cancel_event.is_set():
            reason = "cancelled"
        elif deadline is not None and time.monotonic() > deadline:
            reason = f"timed out after {timeout}s"
        if reason:
            _stop(proc)
            break

    for reader in readers:
        reader.join(timeout=5)

    result = ProcessResult(
        command=cmd,
        returncode=proc.returncode,
        stdout_tail=list(stdout_tail),
        stderr_tail=list(stderr_tail),
        duration=time.monotonic() - started,
    )
    if reason:
        raise ExternalToolError(f"{cmd[0]} {reason}", command=cmd, returncode=proc.returncode, stderr=result.stderr)
    if reader_errors:
        raise ExternalToolError(
            f"Failed while reading output of {cmd[0]}: {reader_errors[0]}",
            command=cmd,
            returncode=proc.returncode,
            stderr=result.stderr,
        ) from reader_errors[0]
    if check and proc.returncode != 0:
        raise ExternalToolError(
            f"{cmd[0]} exited with code {proc.returncode}: {result.stderr[-500:]}",
            command=cmd,
            returncode=proc.returncode,
            stderr=result.stderr,
        )
    logger.debug(f"{cmd[0]} finished in {result.duration:.2f}s")
    return result
