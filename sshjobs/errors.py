"""Error taxonomy for sshjobs.

Every error carries an optional structured context so it can be written to the
JSONL log alongside per-host results.

Hierarchy
- ``SSHJobsError`` (base)
  - ``ConfigParseError`` / ``IncludeCycleError``: client config problems
  - ``KnownHostsFormatError``: malformed known_hosts line (strict mode only)
  - ``TrustLookupFailure``: no trusted key and insecure mode refused
  - ``JobFileError``: job descriptor missing or invalid
  - ``HostFailure``: fatal to one host task only
    - ``DialFailure``, ``AuthFailure``, ``SessionFailure``, ``AgentForwardError``
  - ``JobFailure``: fatal to one job only
    - ``LockTimeout``, ``HookFailure``
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SSHJobsError(Exception):
    """Base exception for all sshjobs errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    @property
    def error_type(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"error_type": self.error_type, "message": str(self), **self.context}


class ConfigParseError(SSHJobsError):
    """A client config line or host pattern could not be parsed.

    Recoverable: the loader logs it and skips the offending line.
    """

    def __init__(self, message: str, source: Optional[str] = None, line: Optional[int] = None) -> None:
        super().__init__(message, source=source, line=line)
        self.source = source
        self.line = line

    def __str__(self) -> str:
        text = super().__str__()
        if self.source is not None and self.line is not None:
            return f"{self.source}[{self.line}]: {text}"
        return text


class IncludeCycleError(ConfigParseError):
    """An ``Include`` chain re-entered a file that is already being loaded."""


class KnownHostsFormatError(SSHJobsError):
    """A known_hosts line is malformed (raised in strict mode only)."""

    def __init__(self, message: str, path: Optional[str] = None, line: Optional[int] = None) -> None:
        super().__init__(message, path=path, line=line)
        self.path = path
        self.line = line


class TrustLookupFailure(SSHJobsError):
    """No trusted host key was found and insecure acceptance is disabled."""

    def __init__(self, host: str) -> None:
        super().__init__(f"No known host key for {host!r}", host=host)
        self.host = host


class JobFileError(SSHJobsError):
    """A job descriptor could not be located or parsed."""


class HostFailure(SSHJobsError):
    """Transport-level failure fatal to a single host task."""

    def __init__(self, message: str, host: Optional[str] = None, port: Optional[int] = None) -> None:
        super().__init__(message, host=host, port=port)
        self.host = host
        self.port = port


class DialFailure(HostFailure):
    """TCP connection or SSH handshake failed."""


class AuthFailure(HostFailure):
    """The server rejected every offered authentication method."""


class SessionFailure(HostFailure):
    """The command session or its pseudo-terminal could not be opened."""


class AgentForwardError(HostFailure):
    """Agent forwarding was requested but no local agent is available."""


class JobFailure(SSHJobsError):
    """Failure fatal to one job (but not to other jobs)."""

    def __init__(self, message: str, job: Optional[str] = None) -> None:
        super().__init__(message, job=job)
        self.job = job


class LockTimeout(JobFailure):
    """The job's advisory lock could not be acquired in time."""

    def __init__(self, path: str, timeout: float, job: Optional[str] = None) -> None:
        super().__init__(f"Cannot lock {path!r} within {timeout:.3f}s", job=job)
        self.path = path
        self.timeout = timeout


class HookFailure(JobFailure):
    """A before/after hook exited with a nonzero status."""

    def __init__(self, stage: str, command: str, exit_status: Optional[int], output: str = "", job: Optional[str] = None) -> None:
        super().__init__(f"{stage} hook {command!r} failed with exit status {exit_status}", job=job)
        self.stage = stage
        self.command = command
        self.exit_status = exit_status
        self.output = output
