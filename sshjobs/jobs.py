"""Job orchestration.

Each job goes through ``lock -> before hook -> host fan-out -> after hook``:

- the job file's advisory lock (``<job file>.lock``) is taken with a bounded
  wait before anything runs and released once the after hook is done;
- a failing before hook ends the job: no host is contacted and the after hook
  is skipped;
- every listed host gets its own ``HostContext`` and asyncio task; the tasks
  are gathered before the after hook runs, whatever their outcome;
- the after hook always runs after fan-out and its failure is reported as the
  job's error.

Jobs themselves run concurrently. Host results are collected under a single
``asyncio.Lock`` keyed by the task id assigned at spawn time, so callers can
correlate results without relying on completion order.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from filelock import FileLock, Timeout

from .config import JobDescriptor
from .context import build_host_context, load_file_keys
from .errors import HookFailure, JobFailure, LockTimeout, SSHJobsError
from .known_hosts import KnownHostsIndex
from .sshconfig import ConfigStack
from .ssh import ExecOptions, HostResult, run_local, run_on_host, write_capture

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = 0.5

ResultCallback = Callable[[HostResult], None]


class JobLock:
    """Cross-process advisory lock for one job file.

    A single bounded attempt: ``acquire`` raises ``LockTimeout`` rather than
    retrying.
    """

    def __init__(self, path: Path | str, timeout: float = LOCK_TIMEOUT) -> None:
        self.path = Path(path)
        self.timeout = timeout
        # thread_local=False: acquired in a worker thread, released on the loop
        self._lock = FileLock(str(self.path), timeout=timeout, thread_local=False)

    @property
    def is_locked(self) -> bool:
        return self._lock.is_locked

    def acquire(self) -> None:
        try:
            self._lock.acquire(timeout=self.timeout)
        except Timeout as exc:
            raise LockTimeout(str(self.path), self.timeout) from exc
        logger.debug("Locked %s", self.path)

    async def acquire_async(self) -> None:
        await asyncio.to_thread(self.acquire)

    def release(self) -> None:
        if self._lock.is_locked:
            self._lock.release()
            logger.debug("Unlocked %s", self.path)

    def __enter__(self) -> "JobLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class ResultCollector:
    """Mutex-guarded host results indexed by task id."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._results: Dict[int, HostResult] = {}

    async def add(self, result: HostResult) -> None:
        async with self._lock:
            self._results[result.task_id] = result

    def results(self) -> List[HostResult]:
        return [self._results[k] for k in sorted(self._results)]

    def __len__(self) -> int:
        return len(self._results)


@dataclass
class JobResult:
    job: JobDescriptor
    hosts: List[HostResult] = field(default_factory=list)
    error: Optional[JobFailure] = None
    before_output: str = ""
    after_output: str = ""
    elapsed: float = 0.0

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.hosts if r.failed)

    @property
    def ok(self) -> bool:
        return self.error is None and self.failed_count == 0


@dataclass
class RunReport:
    """Aggregate of a whole run.

    ``total_elapsed`` sums per-host durations; against ``wall_time`` it gives
    the concurrency ``speedup``.
    """
    jobs: List[JobResult]
    hosts: List[HostResult]
    wall_time: float

    @property
    def total(self) -> int:
        return len(self.hosts)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.hosts if r.failed)

    @property
    def failed_percent(self) -> float:
        return 100.0 * self.failed / self.total if self.total else 0.0

    @property
    def total_elapsed(self) -> float:
        return sum(r.elapsed for r in self.hosts)

    @property
    def speedup(self) -> float:
        return self.total_elapsed / self.wall_time if self.wall_time > 0 else 0.0

    @property
    def failed_jobs(self) -> List[JobResult]:
        return [j for j in self.jobs if j.error is not None]

    @property
    def ok(self) -> bool:
        return self.failed == 0 and not self.failed_jobs


async def run_hook(stage: str, command: str, job: JobDescriptor) -> str:
    """Run a before/after hook locally; raise ``HookFailure`` unless it exits 0."""
    logger.info("Job %r: %s %r", job.name, stage, command)
    try:
        exit_status, output = await run_local(command)
    except OSError as exc:
        raise HookFailure(stage, command, None, str(exc), job=job.name) from exc
    if exit_status != 0:
        raise HookFailure(stage, command, exit_status, output, job=job.name)
    return output


async def _run_host(
    task_id: int,
    job: JobDescriptor,
    host: str,
    stack: ConfigStack,
    known_hosts: Optional[KnownHostsIndex],
    options: ExecOptions,
    collector: ResultCollector,
    semaphore: Optional[asyncio.Semaphore],
    on_result: Optional[ResultCallback],
    file_keys: List[Any],
) -> HostResult:
    fqdn = job.fqdn(host)
    logger.info("[%d] @%r: %r", task_id, fqdn, job.command)
    try:
        context = await build_host_context(
            task_id,
            job,
            host,
            stack,
            known_hosts,
            key_file=options.key_file,
            passphrase_provider=options.passphrase_provider,
            file_keys=file_keys,
            insecure=options.insecure,
            connect_timeout=options.connect_timeout,
        )
    except SSHJobsError as exc:
        result = HostResult(task_id=task_id, host=fqdn, command=job.command, job=job.name, error=f"{exc.error_type}: {exc}")
    else:
        result = await run_on_host(context, job.command, job.check, options, semaphore, job=job.name)

    await collector.add(result)
    if result.ok:
        logger.info("[%d] @%r: ok (%.3fs)", task_id, fqdn, result.elapsed)
    else:
        reason = result.error or f"check {job.check!r} not found in output"
        logger.warning("[%d] @%r: %s (%.3fs)", task_id, fqdn, reason, result.elapsed)

    # Captures and callbacks are side effects: they never fail the task.
    if options.save_dir is not None:
        try:
            write_capture(options.save_dir, result)
        except OSError as exc:
            logger.warning("[%d] @%r: cannot save output in %s: %s", task_id, fqdn, options.save_dir, exc)
    if on_result is not None:
        try:
            on_result(result)
        except Exception:
            logger.exception("[%d] @%r: result callback failed", task_id, fqdn)
    return result


async def run_job(
    job: JobDescriptor,
    stack: ConfigStack,
    known_hosts: Optional[KnownHostsIndex],
    options: Optional[ExecOptions] = None,
    ids: Optional[Iterator[int]] = None,
    collector: Optional[ResultCollector] = None,
    semaphore: Optional[asyncio.Semaphore] = None,
    on_result: Optional[ResultCallback] = None,
    file_keys: Optional[List[Any]] = None,
) -> JobResult:
    """Run one job to completion. Job-level failures end up in ``error``.

    ``file_keys`` are the keys loaded from ``options.key_file``; when not
    given the file is loaded once here and shared by every host.
    """
    options = options or ExecOptions()
    ids = ids if ids is not None else itertools.count()
    collector = collector if collector is not None else ResultCollector()
    result = JobResult(job=job)
    started = time.perf_counter()

    lock = JobLock(job.lock_path, options.lock_timeout)
    try:
        await lock.acquire_async()
    except LockTimeout as exc:
        exc.job = exc.context["job"] = job.name
        logger.error("Job %r: %s", job.name, exc)
        result.error = exc
        result.elapsed = time.perf_counter() - started
        return result

    try:
        if job.before:
            result.before_output = await run_hook("before", job.before, job)

        if file_keys is None and job.hosts:
            file_keys = await load_file_keys(options.key_file, options.passphrase_provider)
        tasks = [
            asyncio.create_task(
                _run_host(
                    next(ids), job, host, stack, known_hosts, options, collector, semaphore, on_result, file_keys or []
                )
            )
            for host in job.hosts
        ]
        logger.debug("Job %r: %d tasks started", job.name, len(tasks))
        result.hosts = list(await asyncio.gather(*tasks))

        if job.after:
            result.after_output = await run_hook("after", job.after, job)
    except HookFailure as exc:
        logger.error("Job %r: %s", job.name, exc)
        result.error = exc
    finally:
        lock.release()
        result.elapsed = time.perf_counter() - started
    return result


async def run_jobs(
    jobs: Iterable[JobDescriptor],
    stack: ConfigStack,
    known_hosts: Optional[KnownHostsIndex],
    options: Optional[ExecOptions] = None,
    on_result: Optional[ResultCallback] = None,
) -> RunReport:
    """Run every job concurrently and aggregate the outcome."""
    options = options or ExecOptions()
    ids = itertools.count()
    collector = ResultCollector()
    semaphore = asyncio.Semaphore(options.limit) if options.limit > 0 else None

    started = time.perf_counter()
    file_keys = await load_file_keys(options.key_file, options.passphrase_provider)
    job_results = await asyncio.gather(
        *(run_job(job, stack, known_hosts, options, ids, collector, semaphore, on_result, file_keys) for job in jobs)
    )
    report = RunReport(jobs=list(job_results), hosts=collector.results(), wall_time=time.perf_counter() - started)

    logger.info(
        "Total run time %.3fs for %d tasks in %.3fs (%.1fx speedup)",
        report.total_elapsed, report.total, report.wall_time, report.speedup,
    )
    if report.failed:
        logger.warning(
            "There were %d failed tasks out of %d, %.0f%%",
            report.failed, report.total, report.failed_percent,
        )
    return report
