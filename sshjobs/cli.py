"""CLI entrypoints for sshjobs.

This module exposes the ``typer`` application with the ``run``, ``show`` and
``list`` commands.

Key behaviors
- Job resolution: each JOB argument is a path, a name in ``--jobs-dir``, or
  that name plus ``.yaml``.
- Connection profile: port, user and agent forwarding come from the client
  config stack (``--ssh-config``, repeatable; defaults to ``~/.ssh/config``
  then ``/etc/ssh/ssh_config``). A job's ``user`` overrides the config.
- Host key checks: keys are pinned from ``--known-hosts``. Hosts without an
  entry are contacted insecurely (logged at error level) unless
  ``--no-insecure`` is given.
- Concurrency: every host of every job runs at once unless ``--limit`` caps
  the number of concurrent sessions.
- Output modes:
  - Default prints a results table, dumps the output of failed hosts and a
    summary line.
  - ``--quiet`` prints a single summary line.
  - ``-v/-vv`` (before the command) increase log verbosity.
- Artifacts: ``--save-dir`` writes per-host capture files; ``--log-file``
  writes JSONL records per host.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import DEFAULT_JOBS_DIR, JobDescriptor, list_jobs, load_job
from .context import DEFAULT_KEY_FILE, current_user, env_passphrase, no_passphrase
from .errors import SSHJobsError
from .jobs import LOCK_TIMEOUT, RunReport, run_jobs
from .known_hosts import DEFAULT_KNOWN_HOSTS, KnownHostsIndex
from .log import configure_logging, level_from_name, level_from_verbosity
from .sshconfig import ConfigStack, default_config_stack
from .ssh import ExecOptions, HostResult

app = typer.Typer(add_completion=False, help="Run job files over SSH on many hosts in parallel")
console = Console()

JOBS_DIR_OPTION = typer.Option(
    Path(DEFAULT_JOBS_DIR), "--jobs-dir", envvar="SSHJOBS_DIR", help="Directory searched for job names"
)


def _expand(path: Path) -> Path:
    return path.expanduser()


@app.callback()
def _setup(
    log_level: str = typer.Option("warning", help="Log level (debug, info, warning, error, critical)"),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase verbosity (repeat for more detail)"),
    debug_log: Optional[Path] = typer.Option(None, help="Also write log records to this file"),
) -> None:
    """Configure logging for every command."""
    try:
        level = level_from_name(log_level)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--log-level") from exc
    configure_logging(level_from_verbosity(verbose, level), _expand(debug_log) if debug_log else None)


def _load_jobs(names: List[str], jobs_dir: Path) -> tuple[List[JobDescriptor], List[str]]:
    jobs: List[JobDescriptor] = []
    errors: List[str] = []
    for name in names:
        try:
            jobs.append(load_job(name, _expand(jobs_dir)))
        except SSHJobsError as exc:
            errors.append(str(exc))
    return jobs, errors


def _first_line(text: str) -> str:
    return (text.strip().splitlines() or [""])[0]


def _print_plan(jobs: List[JobDescriptor], stack: ConfigStack, limit: int) -> None:
    login, _ = current_user()
    plan = Table(title="Planned SSH Execution", show_lines=False)
    plan.add_column("Job", style="bold")
    plan.add_column("Host")
    plan.add_column("User")
    plan.add_column("Port")
    plan.add_column("TTY")
    plan.add_column("Command (preview)")
    tasks = 0
    for job in jobs:
        for host in job.hosts:
            fqdn = job.fqdn(host)
            user = job.user or stack.get(fqdn, "User", login)
            port = stack.get(fqdn, "Port", "22")
            plan.add_row(
                escape(job.name), escape(fqdn), escape(user), port,
                "yes" if job.tty else "no", escape(_first_line(job.command)[:120]),
            )
            tasks += 1
    console.print(plan)
    concurrency = limit if limit > 0 else "unbounded"
    console.print(f"Will run {tasks} tasks from {len(jobs)} jobs with concurrency={concurrency}")


def _print_report(report: RunReport) -> None:
    table = Table(title="SSH Results", show_lines=False)
    table.add_column("Task")
    table.add_column("Job")
    table.add_column("Host", style="bold")
    table.add_column("Status")
    table.add_column("Exit")
    table.add_column("Duration (s)")
    table.add_column("Output (first line)")
    table.add_column("Error")
    for r in report.hosts:
        exit_text = "" if r.exit_status is None else str(r.exit_status)
        error_text = ""
        if r.failed:
            error_text = (r.error or "check failed")[:200]
        table.add_row(
            str(r.task_id), escape(r.job), escape(r.host), "OK" if r.ok else "FAIL",
            exit_text, f"{r.elapsed:.2f}", escape(_first_line(r.output)[:200]), escape(error_text),
        )
    console.print(table)

    for r in report.hosts:
        if r.failed and r.output:
            console.rule(f"[bold red]OUTPUT[/bold red] - {escape(r.host)} (task {r.task_id})")
            console.print(r.output, markup=False, highlight=False)

    for j in report.failed_jobs:
        console.print(f"[red]Job {escape(j.job.name)}[/red]: {escape(str(j.error))}")
        hook_output = getattr(j.error, "output", "")
        if hook_output:
            console.print(hook_output, markup=False, highlight=False)

    console.print(
        f"Total run time {report.total_elapsed:.2f}s for {report.total} tasks "
        f"in {report.wall_time:.2f}s ({report.speedup:.1f}x speedup)"
    )


def _print_summary(report: RunReport, load_errors: int, quiet: bool) -> None:
    ok_count = report.total - report.failed
    if report.failed:
        text = f"Failed: {report.failed} of {report.total} ({report.failed_percent:.0f}%), Succeeded: {ok_count}"
        console.print(text if quiet else f"[red]{text}[/red]")
    else:
        text = f"Succeeded: {ok_count}"
        console.print(text if quiet else f"[green]{text}[/green]")
    job_errors = len(report.failed_jobs) + load_errors
    if job_errors:
        console.print(f"Failed jobs: {job_errors}")


def _write_jsonl(log_file: Path, results: List[HostResult]) -> None:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    with log_file.open("w", encoding="utf-8") as f:
        for r in results:
            f.write(json.dumps(r.to_dict()) + "\n")


@app.command()
def run(
    jobs: List[str] = typer.Argument(..., help="Job files or names to run"),
    jobs_dir: Path = JOBS_DIR_OPTION,
    ssh_config: Optional[List[Path]] = typer.Option(None, help="Client config file (repeatable, first match wins)"),
    known_hosts: Path = typer.Option(Path(DEFAULT_KNOWN_HOSTS), help="known_hosts file used to pin host keys"),
    strict_known_hosts: bool = typer.Option(False, help="Fail on malformed known_hosts lines instead of skipping them"),
    insecure: bool = typer.Option(True, "--insecure/--no-insecure", help="Contact hosts missing from known_hosts without verification"),
    limit: int = typer.Option(0, min=0, help="Max concurrent SSH sessions (0: unbounded)"),
    identity: Path = typer.Option(Path(DEFAULT_KEY_FILE), help="Private key offered after agent keys"),
    passphrase_env: Optional[str] = typer.Option(None, help="Environment variable holding the key passphrase"),
    connect_timeout: float = typer.Option(10.0, min=1.0, help="SSH connect timeout (seconds)"),
    command_timeout: Optional[float] = typer.Option(None, help="Command timeout (seconds)"),
    retry_attempts: int = typer.Option(1, min=1, max=5, help="Connection retry attempts per host"),
    lock_timeout: float = typer.Option(LOCK_TIMEOUT, min=0.0, help="Seconds to wait for a job's lock"),
    save_dir: Optional[Path] = typer.Option(None, help="Directory to save per-host output captures"),
    log_file: Optional[Path] = typer.Option(None, help="Write JSON lines log with per-host results"),
    progress: bool = typer.Option(True, "--progress/--no-progress", help="Stream per-host results as they finish"),
    dry_run: bool = typer.Option(False, help="Preview jobs, hosts and users without executing"),
    quiet: bool = typer.Option(False, help="Minimal output: only summary and exit code"),
) -> None:
    """Run JOBS on all of their hosts.

    Details
    - Each job takes its advisory lock, runs its ``before`` hook locally, runs
      ``command`` on every host at once, then runs its ``after`` hook.
    - A host fails when the connection or session fails, or when the job's
      ``check`` text is missing from its output. A job fails when its lock or
      a hook fails.
    - Exit code is 0 when everything succeeded, 1 otherwise.
    """
    loaded, load_errors = _load_jobs(jobs, jobs_dir)
    for error in load_errors:
        console.print(f"[red]{escape(error)}[/red]")
    if not loaded:
        raise typer.Exit(code=2)

    try:
        stack = ConfigStack.load(_expand(p) for p in ssh_config) if ssh_config else default_config_stack()
    except SSHJobsError as exc:
        logging.getLogger(__name__).error("%s", exc)
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=2)

    if dry_run:
        if quiet:
            tasks = sum(len(j.hosts) for j in loaded)
            console.print(f"Will run {tasks} tasks from {len(loaded)} jobs")
        else:
            _print_plan(loaded, stack, limit)
        raise typer.Exit(code=0)

    index = KnownHostsIndex(_expand(known_hosts), strict=strict_known_hosts)
    options = ExecOptions(
        limit=limit,
        connect_timeout=connect_timeout,
        command_timeout=command_timeout,
        retry_attempts=retry_attempts,
        lock_timeout=lock_timeout,
        insecure=insecure,
        key_file=_expand(identity),
        passphrase_provider=env_passphrase(passphrase_env) if passphrase_env else no_passphrase,
        save_dir=_expand(save_dir) if save_dir else None,
    )

    def _stream(res: HostResult) -> None:
        status = "[green]OK[/green]" if res.ok else "[red]FAIL[/red]"
        detail = _first_line(res.output)[:120] if res.ok else (res.error or "check failed")
        console.print(f"[{res.task_id}] {escape(res.host)}: {status} dur={res.elapsed:.2f}s - {escape(detail)}", highlight=False)

    if not quiet and not progress:
        tasks = sum(len(j.hosts) for j in loaded)
        console.print(f"Running {tasks} tasks from {len(loaded)} jobs...")

    try:
        report = asyncio.run(run_jobs(loaded, stack, index, options, _stream if progress and not quiet else None))
    except SSHJobsError as exc:
        logging.getLogger(__name__).error("%s", exc)
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=2)

    if not quiet:
        _print_report(report)
    _print_summary(report, len(load_errors), quiet)

    if log_file is not None:
        _write_jsonl(_expand(log_file), report.hosts)

    raise typer.Exit(code=0 if report.ok and not load_errors else 1)


@app.command()
def show(
    job: str = typer.Argument(..., help="Job file or name"),
    jobs_dir: Path = JOBS_DIR_OPTION,
) -> None:
    """Show a job file with defaults spelled out as comments."""
    try:
        descriptor = load_job(job, _expand(jobs_dir))
    except SSHJobsError as exc:
        raise typer.BadParameter(str(exc), param_hint="JOB") from exc

    def text_or_comment(name: str, value: Optional[str], stub: str) -> None:
        if value:
            console.print(f"[bold]{name}[/bold]: {escape(value)}", highlight=False)
        else:
            console.print(f"[dim]# {name}: {escape(stub)}[/dim]", highlight=False)

    console.print(f"[dim]# JOB FILE {escape(descriptor.filename)} #[/dim]", highlight=False)
    text_or_comment("title", descriptor.title, descriptor.name)
    text_or_comment("before", descriptor.before, "/bin/true")
    text_or_comment("command", descriptor.command, "/bin/false")
    text_or_comment("after", descriptor.after, "/bin/true")
    text_or_comment("tty", "true" if descriptor.tty else "", "false")
    text_or_comment("user", descriptor.user, "<current user>")
    text_or_comment("check", descriptor.check, "<nothing special>")
    text_or_comment("domain", descriptor.domain, "example.com")
    console.print("[bold]hosts[/bold]:")
    for host in descriptor.hosts:
        console.print(f"    - {escape(host)}", highlight=False)
    console.print(f"[dim]# EOF {escape(descriptor.filename)} #[/dim]", highlight=False)


@app.command("list")
def list_command(jobs_dir: Path = JOBS_DIR_OPTION) -> None:
    """List job files found under the jobs directory."""
    found = list_jobs(_expand(jobs_dir))
    if not found:
        console.print(f"No jobs in {_expand(jobs_dir)}")
        raise typer.Exit(code=0)
    table = Table(title="Jobs", show_lines=False)
    table.add_column("File", style="bold")
    table.add_column("Title")
    for path, title in found:
        table.add_row(escape(str(path)), escape(title))
    console.print(table)
