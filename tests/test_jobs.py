from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, List, Optional, Tuple

import pytest

from sshjobs.config import JobDescriptor
from sshjobs.context import HostContext
from sshjobs.errors import HookFailure, LockTimeout
from sshjobs.jobs import JobLock, ResultCollector, RunReport, run_job, run_jobs
from sshjobs.ssh import ExecOptions, HostResult
from sshjobs.sshconfig import ConfigStack


def make_job(tmp_path: Path, hosts: List[str], name: str = "job.yaml", **kwargs: Any) -> JobDescriptor:
    path = tmp_path / name
    path.write_text("command: true\n", encoding="utf-8")
    return JobDescriptor(filename=str(path), command="do-it", hosts=hosts, **kwargs)


@pytest.fixture()
def events() -> List[str]:
    return []


@pytest.fixture()
def fake_hosts(monkeypatch: pytest.MonkeyPatch, events: List[str]):
    """Replace context building and remote execution; hosts starting with 'bad' fail."""

    async def fake_build(task_id: int, job: JobDescriptor, host: str, stack, known_hosts, **kwargs: Any) -> HostContext:
        return HostContext(id=task_id, host=job.fqdn(host), user="u")

    async def fake_run(context: HostContext, command: str, check: str = "", options=None, semaphore=None, job: str = "") -> HostResult:
        events.append(f"start {context.host}")
        await asyncio.sleep(0.01 * (context.id % 3))
        events.append(f"end {context.host}")
        failed = context.host.startswith("bad")
        return HostResult(
            task_id=context.id,
            host=context.host,
            command=command,
            job=job,
            exit_status=None if failed else 0,
            output="" if failed else "ok\n",
            check_passed=not failed,
            elapsed=0.05,
            error="DialFailure: refused" if failed else None,
        )

    monkeypatch.setattr("sshjobs.jobs.build_host_context", fake_build)
    monkeypatch.setattr("sshjobs.jobs.run_on_host", fake_run)


@pytest.fixture()
def fake_hooks(monkeypatch: pytest.MonkeyPatch, events: List[str]):
    """Local hooks succeed unless their command contains 'fail'."""

    async def fake_local(command: str) -> Tuple[Optional[int], str]:
        events.append(f"hook {command}")
        if "fail" in command:
            return 1, "hook said no\n"
        return 0, f"{command} done\n"

    monkeypatch.setattr("sshjobs.jobs.run_local", fake_local)


def run(job: JobDescriptor, options: Optional[ExecOptions] = None):
    return asyncio.run(run_job(job, ConfigStack(), None, options or ExecOptions()))


def test_after_hook_runs_once_after_all_hosts(tmp_path: Path, events: List[str], fake_hosts, fake_hooks) -> None:
    hosts = ["h1", "bad1", "h2", "h3", "bad2"]
    job = make_job(tmp_path, hosts, before="pre", after="post")

    result = run(job)

    assert result.error is None
    assert result.failed_count == 2
    assert len(result.hosts) == len(hosts)
    assert events[0] == "hook pre"
    assert events[-1] == "hook post"
    assert events.count("hook post") == 1
    assert sum(e.startswith("end ") for e in events) == len(hosts)
    assert result.before_output == "pre done\n"
    assert result.after_output == "post done\n"


def test_failing_before_hook_skips_hosts_and_after(tmp_path: Path, events: List[str], fake_hosts, fake_hooks) -> None:
    job = make_job(tmp_path, ["h1", "h2"], before="fail-pre", after="post")

    result = run(job)

    assert isinstance(result.error, HookFailure)
    assert result.error.stage == "before"
    assert result.error.exit_status == 1
    assert result.error.output == "hook said no\n"
    assert result.hosts == []
    assert events == ["hook fail-pre"]


def test_failing_after_hook_is_reported(tmp_path: Path, events: List[str], fake_hosts, fake_hooks) -> None:
    job = make_job(tmp_path, ["h1", "h2"], after="fail-post")

    result = run(job)

    assert isinstance(result.error, HookFailure)
    assert result.error.stage == "after"
    assert len(result.hosts) == 2
    assert result.failed_count == 0
    assert not result.ok


def test_lock_released_after_job(tmp_path: Path, fake_hosts, fake_hooks) -> None:
    job = make_job(tmp_path, ["h1"])
    run(job)
    with JobLock(job.lock_path, timeout=0.1) as lock:
        assert lock.is_locked


def test_job_lock_excludes_second_holder(tmp_path: Path) -> None:
    path = tmp_path / "job.yaml.lock"
    first = JobLock(path, timeout=0.05)
    second = JobLock(path, timeout=0.05)

    first.acquire()
    with pytest.raises(LockTimeout):
        second.acquire()
    first.release()

    second.acquire()
    assert second.is_locked
    second.release()


def test_job_lock_waits_for_release(tmp_path: Path) -> None:
    path = tmp_path / "job.yaml.lock"
    first = JobLock(path, timeout=0.05)
    second = JobLock(path, timeout=2.0)

    first.acquire()
    timer = threading.Timer(0.1, first.release)
    timer.start()
    try:
        second.acquire()
        assert second.is_locked
    finally:
        timer.join()
        second.release()


def test_concurrent_runs_of_same_job_conflict(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_hooks) -> None:
    async def fake_build(task_id: int, job: JobDescriptor, host: str, stack, known_hosts, **kwargs: Any) -> HostContext:
        return HostContext(id=task_id, host=host, user="u")

    async def slow_run(context: HostContext, command: str, check: str = "", options=None, semaphore=None, job: str = "") -> HostResult:
        await asyncio.sleep(0.3)
        return HostResult(task_id=context.id, host=context.host, command=command, exit_status=0, check_passed=True)

    monkeypatch.setattr("sshjobs.jobs.build_host_context", fake_build)
    monkeypatch.setattr("sshjobs.jobs.run_on_host", slow_run)

    job = make_job(tmp_path, ["h1"])
    options = ExecOptions(lock_timeout=0.05)

    async def go():
        first = asyncio.create_task(run_job(job, ConfigStack(), None, options))
        await asyncio.sleep(0.1)
        second = await run_job(job, ConfigStack(), None, options)
        return await first, second

    first, second = asyncio.run(go())
    assert first.error is None and len(first.hosts) == 1
    assert isinstance(second.error, LockTimeout)
    assert second.error.job == job.name
    assert second.hosts == []


def test_run_jobs_assigns_unique_ids(tmp_path: Path, fake_hosts, fake_hooks) -> None:
    jobs = [
        make_job(tmp_path, ["a1", "a2", "bad3"], name="a.yaml"),
        make_job(tmp_path, ["b1", "b2"], name="b.yaml", domain="example.com"),
    ]
    seen: List[int] = []

    report = asyncio.run(run_jobs(jobs, ConfigStack(), None, ExecOptions(limit=2), on_result=lambda r: seen.append(r.task_id)))

    assert isinstance(report, RunReport)
    assert [r.task_id for r in report.hosts] == [0, 1, 2, 3, 4]
    assert sorted(seen) == [0, 1, 2, 3, 4]
    assert report.total == 5
    assert report.failed == 1
    assert report.failed_percent == pytest.approx(20.0)
    assert report.total_elapsed == pytest.approx(0.25)
    assert report.speedup > 0
    assert not report.ok
    assert {r.host for r in report.hosts} >= {"b1.example.com", "b2.example.com"}


def test_context_errors_become_host_results(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_hooks) -> None:
    job = make_job(tmp_path, ["h1"])
    options = ExecOptions(insecure=False, key_file=tmp_path / "no_key")
    monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)

    result = run(job, options)

    assert result.error is None
    assert result.failed_count == 1
    assert result.hosts[0].error.startswith("TrustLookupFailure:")


def test_save_dir_captures(tmp_path: Path, fake_hosts, fake_hooks) -> None:
    job = make_job(tmp_path, ["h1", "bad1"])
    out = tmp_path / "out"
    run(job, ExecOptions(save_dir=out))
    assert (out / "h1.out").read_text(encoding="utf-8").endswith("\n\nok\n")
    assert "# error: DialFailure: refused" in (out / "bad1.out").read_text(encoding="utf-8")


def test_collector_orders_by_task_id() -> None:
    collector = ResultCollector()

    async def go() -> None:
        for task_id in (3, 1, 2):
            await collector.add(HostResult(task_id=task_id, host=f"h{task_id}", command="c"))

    asyncio.run(go())
    assert [r.task_id for r in collector.results()] == [1, 2, 3]
    assert len(collector) == 3


def test_unwritable_save_dir_keeps_hosts_and_after_hook(
    tmp_path: Path, events: List[str], fake_hosts, fake_hooks, caplog: pytest.LogCaptureFixture
) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    jobs = [
        make_job(tmp_path, ["h1", "bad1"], name="a.yaml", after="post-a"),
        make_job(tmp_path, ["h2"], name="b.yaml", after="post-b"),
    ]
    caplog.set_level(logging.WARNING, logger="sshjobs")

    report = asyncio.run(run_jobs(jobs, ConfigStack(), None, ExecOptions(save_dir=blocker / "sub")))

    assert report.total == 3
    assert report.failed == 1
    assert all(j.error is None for j in report.jobs)
    assert "hook post-a" in events and "hook post-b" in events
    assert sum("cannot save output" in r.getMessage() for r in caplog.records) == 3


def test_failing_result_callback_does_not_fail_job(tmp_path: Path, events: List[str], fake_hosts, fake_hooks) -> None:
    job = make_job(tmp_path, ["h1", "h2"], after="post")

    def broken(result: HostResult) -> None:
        raise RuntimeError("display went away")

    result = asyncio.run(run_job(job, ConfigStack(), None, ExecOptions(), on_result=broken))

    assert result.error is None
    assert len(result.hosts) == 2
    assert events[-1] == "hook post"


def test_private_key_loaded_once_per_run(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_hooks) -> None:
    loads: List[Path] = []
    seen_keys: List[Any] = []

    async def fake_load(key_file, passphrase_provider=None) -> List[Any]:
        loads.append(key_file)
        return ["file-key"]

    async def fake_build(task_id: int, job: JobDescriptor, host: str, stack, known_hosts, **kwargs: Any) -> HostContext:
        seen_keys.append(kwargs["file_keys"])
        return HostContext(id=task_id, host=host, user="u")

    async def fake_run(context: HostContext, command: str, check: str = "", options=None, semaphore=None, job: str = "") -> HostResult:
        return HostResult(task_id=context.id, host=context.host, command=command, exit_status=0, check_passed=True)

    monkeypatch.setattr("sshjobs.jobs.load_file_keys", fake_load)
    monkeypatch.setattr("sshjobs.jobs.build_host_context", fake_build)
    monkeypatch.setattr("sshjobs.jobs.run_on_host", fake_run)

    jobs = [
        make_job(tmp_path, ["h1", "h2", "h3"], name="a.yaml"),
        make_job(tmp_path, ["h4", "h5"], name="b.yaml"),
    ]
    options = ExecOptions(key_file=tmp_path / "id_rsa")
    report = asyncio.run(run_jobs(jobs, ConfigStack(), None, options))

    assert report.total == 5
    assert loads == [tmp_path / "id_rsa"]
    assert seen_keys == [["file-key"]] * 5

    loads.clear()
    asyncio.run(run_job(jobs[0], ConfigStack(), None, options))
    assert len(loads) == 1
