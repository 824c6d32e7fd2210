"""Host and local command execution primitives.

Design notes
- ``run_on_host`` drives one ``HostContext`` through connect, one command and
  close. It always returns a ``HostResult``; transport failures are recorded
  on the result instead of propagating, so one host never aborts its siblings.
- Dial failures are retried up to ``ExecOptions.retry_attempts`` with
  exponential backoff. Auth, agent and session failures are not retried.
- An optional shared ``asyncio.Semaphore`` caps concurrent sessions; without
  it every host runs at once.
- ``run_local`` runs hook commands through ``/bin/sh`` with stderr folded into
  stdout.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .context import DEFAULT_KEY_FILE, HostContext, PassphraseProvider, no_passphrase
from .errors import DialFailure, HostFailure


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HostResult:
    """Outcome of one (job, host) task.

    Attributes
    - task_id: identifier assigned when the task was spawned
    - host: fully qualified target host
    - exit_status: remote exit status (``None`` on transport failures)
    - output: combined stdout+stderr
    - check_passed: the job's check string is empty or found in ``output``
    - started/stopped: wall-clock timestamps; ``elapsed`` is measured with
      ``time.perf_counter()``
    - error: ``"<ErrorType>: <message>"`` on failures
    """
    task_id: int
    host: str
    command: str
    job: str = ""
    user: str = ""
    exit_status: Optional[int] = None
    output: str = ""
    check_passed: bool = False
    started: datetime = field(default_factory=_now)
    stopped: datetime = field(default_factory=_now)
    elapsed: float = 0.0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None or not self.check_passed

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "job": self.job,
            "host": self.host,
            "user": self.user,
            "command": self.command,
            "ok": self.ok,
            "exit_status": self.exit_status,
            "check_passed": self.check_passed,
            "started": self.started.isoformat(),
            "stopped": self.stopped.isoformat(),
            "duration_sec": self.elapsed,
            "error": self.error,
            "output": self.output,
        }


@dataclass
class ExecOptions:
    """Execution options shared by every task of a run.

    ``limit`` of 0 means unbounded fan-out. ``insecure`` allows hosts with no
    known_hosts entry to be contacted without host key verification.
    """
    limit: int = 0
    connect_timeout: Optional[float] = 10.0
    command_timeout: Optional[float] = None
    retry_attempts: int = 1
    lock_timeout: float = 0.5
    insecure: bool = True
    key_file: Path = Path(DEFAULT_KEY_FILE)
    passphrase_provider: PassphraseProvider = no_passphrase
    save_dir: Optional[Path] = None


async def _connect(context: HostContext, options: ExecOptions) -> None:
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max(1, options.retry_attempts)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type(DialFailure),
        reraise=True,
    ):
        with attempt:
            await context.connect()


async def run_on_host(
    context: HostContext,
    command: str,
    check: str = "",
    options: Optional[ExecOptions] = None,
    semaphore: Optional[asyncio.Semaphore] = None,
    job: str = "",
) -> HostResult:
    """Run ``command`` through ``context`` and describe what happened."""
    options = options or ExecOptions()
    result = HostResult(task_id=context.id, host=context.host, command=command, job=job, user=context.user)
    started = time.perf_counter()

    async with semaphore if semaphore is not None else contextlib.nullcontext():
        result.started = _now()
        try:
            await _connect(context, options)
            output, exit_status = await context.execute(command, timeout=options.command_timeout)
            result.output = output
            result.exit_status = exit_status
            result.check_passed = not check or check in output
        except HostFailure as exc:
            result.error = f"{exc.error_type}: {exc}"
        finally:
            await context.close()

    result.stopped = _now()
    result.elapsed = time.perf_counter() - started
    return result


async def run_local(command: str) -> Tuple[Optional[int], str]:
    """Run ``command`` via the local shell; returns ``(exit_status, output)``."""
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    out, _ = await proc.communicate()
    return proc.returncode, out.decode("utf-8", errors="replace")


def sanitize(name: str) -> str:
    return "".join(c if c.isalnum() or c in ("-", "_", ".") else "_" for c in name)


def write_capture(save_dir: Path, result: HostResult) -> Path:
    """Write ``result`` to ``<save_dir>/<host>.out``, replacing older runs."""
    save_dir.mkdir(parents=True, exist_ok=True)
    path = save_dir / f"{sanitize(result.host)}.out"
    header = [
        f"# host: {result.host}",
        f"# command: {result.command}",
        f"# user: {result.user}",
        f"# start: {result.started.isoformat()}",
        f"# stop: {result.stopped.isoformat()}",
        f"# elapsed: {result.elapsed:.3f}s",
    ]
    if result.error:
        header.append(f"# error: {result.error}")
    path.write_text("\n".join(header) + "\n\n" + result.output, encoding="utf-8")
    return path
