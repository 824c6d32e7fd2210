"""Job descriptor loading for sshjobs.

A job is a small YAML file::

    title: Disk usage
    before: ./notify.sh start
    command: df -h /
    after: ./notify.sh done
    check: /dev/
    tty: false
    domain: example.com
    user: env:DEPLOY_USER
    hosts:
      - web1
      - db1

Highlights
- ``env:VAR`` resolution for ``user``, so shared job files need not hard-code
  an account name.
- Names resolve like the job store expects: an existing path, else a name in
  the jobs directory, else that name plus ``.yaml``.
- Validation: raises ``JobFileError`` for missing/unreadable files, non-mapping
  documents, and jobs without a command.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import JobFileError

logger = logging.getLogger(__name__)

DEFAULT_JOBS_DIR = "~/.sshjobs"
JOB_SUFFIX = ".yaml"
LOCK_SUFFIX = ".lock"


@dataclass
class JobDescriptor:
    """A parsed job file.

    ``filename`` doubles as the key of the job's advisory lock.
    """
    filename: str
    title: str = ""
    command: str = ""
    check: str = ""
    tty: bool = False
    domain: str = ""
    user: Optional[str] = None
    before: str = ""
    after: str = ""
    hosts: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        if self.title:
            return self.title
        stem = Path(self.filename).name
        if stem.endswith(JOB_SUFFIX):
            stem = stem[: -len(JOB_SUFFIX)]
        return stem.replace("_", " ").title()

    @property
    def lock_path(self) -> Path:
        return Path(self.filename + LOCK_SUFFIX)

    def fqdn(self, host: str) -> str:
        """Append the job domain unless ``host`` already carries it."""
        if not self.domain:
            return host
        suffix = self.domain if self.domain.startswith(".") else "." + self.domain
        if host.endswith(suffix):
            return host
        return host + suffix

    def check_output(self, text: str) -> bool:
        return not self.check or self.check in text


def _resolve_env(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return value
    value = value.strip()
    if value.startswith("env:"):
        return os.environ.get(value[4:].strip())
    return value or None


def _text(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    return "" if value is None else str(value)


def find_job_file(name: Path | str, jobs_dir: Optional[Path | str] = None) -> Optional[Path]:
    """Resolve a job name to an existing file, or ``None``."""
    path = Path(name).expanduser()
    if path.is_file():
        return path
    if jobs_dir is None:
        return None
    base = Path(jobs_dir).expanduser()
    if not base.is_dir():
        return None
    candidate = base / str(name)
    if candidate.is_file():
        return candidate
    candidate = base / (str(name) + JOB_SUFFIX)
    if candidate.is_file():
        return candidate
    return None


def load_job(name: Path | str, jobs_dir: Optional[Path | str] = None) -> JobDescriptor:
    """Load and validate one job file into a ``JobDescriptor``."""
    path = find_job_file(name, jobs_dir)
    if path is None:
        raise JobFileError(f"Job file not found: {name}")
    logger.debug("Will read %s", path)

    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise JobFileError(f"Cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise JobFileError(f"Cannot process {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise JobFileError(f"Job file {path} must contain a mapping")

    raw_hosts = data.get("hosts", []) or []
    if not isinstance(raw_hosts, list):
        raise JobFileError(f"Job file {path}: 'hosts' must be a list")

    job = JobDescriptor(
        filename=str(path),
        title=_text(data, "title"),
        command=_text(data, "command"),
        check=_text(data, "check"),
        tty=bool(data.get("tty", False)),
        domain=_text(data, "domain").strip(),
        user=_resolve_env(data.get("user")),
        before=_text(data, "before"),
        after=_text(data, "after"),
        hosts=[str(h).strip() for h in raw_hosts if h is not None and str(h).strip()],
    )

    if not job.command.strip():
        raise JobFileError(f"Job file {path} contains no command.")
    if not job.hosts:
        logger.warning("Job %r (%s) lists no hosts", job.name, path)
    return job


def list_jobs(jobs_dir: Path | str) -> List[Tuple[Path, str]]:
    """Walk ``jobs_dir`` for job files; returns ``(path, title)`` pairs.

    Files that fail to load are reported and left out.
    """
    base = Path(jobs_dir).expanduser()
    found: List[Tuple[Path, str]] = []
    if not base.is_dir():
        return found
    for path in sorted(base.rglob("*" + JOB_SUFFIX)):
        if not path.is_file():
            continue
        try:
            job = load_job(path)
        except JobFileError as exc:
            logger.warning("%s", exc)
            continue
        found.append((path, job.name))
    return found
