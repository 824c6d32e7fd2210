"""Per-host connection profiles.

``build_host_context`` turns a (job, host) pair into a ``HostContext``: the
fully qualified name, port/user/agent forwarding from the client config stack,
the authentication keys to offer and the host key to trust. The context then
owns the live asyncssh connection and session for exactly one task.

Design notes
- Auth keys are offered in priority order: every key held by the ssh-agent at
  ``$SSH_AUTH_SOCK``, then the default private key file.
- Encrypted private keys are decrypted with a pluggable passphrase provider.
  The default provider has no passphrase, so such keys are skipped with a
  warning rather than failing the host.
- Host keys come from ``KnownHostsIndex``. When there is no trusted key the
  context falls back to accepting any key (logged at error level) unless the
  caller asked to fail closed.
- asyncssh's own ssh_config loading is disabled (``config=None``); resolution
  happens here.
"""

from __future__ import annotations

import asyncio
import getpass
import logging
import os
import pwd
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import asyncssh

from .config import JobDescriptor
from .errors import AgentForwardError, AuthFailure, DialFailure, SessionFailure, TrustLookupFailure
from .known_hosts import KnownHostsIndex
from .sshconfig import ConfigStack

logger = logging.getLogger(__name__)

AGENT_SOCK_ENV = "SSH_AUTH_SOCK"
DEFAULT_KEY_FILE = "~/.ssh/id_rsa"
DEFAULT_PORT = 22

TERM_TYPE = "pty"
TERM_SIZE = (80, 25)
# RFC 4254 terminal mode opcodes
PTY_ECHO = 53
PTY_OP_ISPEED = 128
PTY_OP_OSPEED = 129
TERM_MODES = {PTY_ECHO: 1, PTY_OP_ISPEED: 19200, PTY_OP_OSPEED: 19200}

PassphraseProvider = Callable[[Path], Optional[str]]


def no_passphrase(path: Path) -> Optional[str]:
    return None


def env_passphrase(variable: str) -> PassphraseProvider:
    """Provider reading the passphrase from an environment variable."""

    def provider(path: Path) -> Optional[str]:
        return os.environ.get(variable) or None

    return provider


def current_user() -> Tuple[str, str]:
    """Return ``(login, gecos)`` for the user running this process."""
    login = getpass.getuser()
    try:
        gecos = pwd.getpwnam(login).pw_gecos.split(",")[0]
    except KeyError:
        gecos = ""
    return login, gecos


async def connect_agent(agent_path: Optional[str]) -> Optional[Any]:
    if not agent_path:
        return None
    try:
        return await asyncssh.connect_agent(agent_path)
    except (OSError, asyncssh.Error) as exc:
        logger.error("Cannot use %s=%r: %s", AGENT_SOCK_ENV, agent_path, exc)
        return None


async def agent_keys(agent: Any) -> List[Any]:
    try:
        return list(await agent.get_keys())
    except (OSError, asyncssh.Error) as exc:
        logger.error("Cannot list agent keys: %s", exc)
        return []


def load_private_key(path: Path | str, passphrase_provider: PassphraseProvider = no_passphrase) -> Optional[asyncssh.SSHKey]:
    """Read a private key, or ``None`` if it is missing or cannot be decrypted."""
    path = Path(path).expanduser()
    if not path.is_file():
        logger.warning("No file %s", path)
        return None
    try:
        return asyncssh.read_private_key(str(path), passphrase_provider(path))
    except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError, OSError) as exc:
        logger.warning("Cannot load key %s: %s (skipped)", path, exc)
        return None


@dataclass
class HostContext:
    """Resolved connection profile plus live connection state for one task.

    ``known_hosts`` holds the asyncssh trust argument: ``([key], [], [])`` for
    a pinned host key, ``None`` to accept any key.
    """
    id: int
    host: str
    user: str
    gecos: str = ""
    port: int = DEFAULT_PORT
    forward_agent: bool = False
    use_tty: bool = False
    client_keys: List[Any] = field(default_factory=list)
    known_hosts: Any = None
    agent: Optional[Any] = None
    agent_path: Optional[str] = None
    connect_timeout: Optional[float] = None
    conn: Optional[Any] = None
    session: Optional[Any] = None

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def trusted(self) -> bool:
        return self.known_hosts is not None

    def connect_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = dict(
            host=self.host,
            port=self.port,
            username=self.user,
            client_keys=self.client_keys,
            known_hosts=self.known_hosts,
            connect_timeout=self.connect_timeout,
            config=None,
        )
        if self.agent_path:
            kwargs["agent_path"] = self.agent_path
        if self.forward_agent:
            kwargs["agent_forwarding"] = True
        return kwargs

    async def connect(self) -> None:
        """Dial the host and authenticate."""
        if not self.host:
            raise DialFailure(f"[{self.id}] Context has no host")
        if self.forward_agent and not self.agent_path:
            raise AgentForwardError(f"[{self.id}] No agent.", host=self.host, port=self.port)

        try:
            self.conn = await asyncssh.connect(**self.connect_kwargs())
        except asyncssh.PermissionDenied as exc:
            raise AuthFailure(f"[{self.id}] SSH auth[{self.endpoint}]: {exc}", host=self.host, port=self.port) from exc
        except (OSError, asyncio.TimeoutError, asyncssh.Error) as exc:
            raise DialFailure(f"[{self.id}] SSH client[{self.endpoint}]: {exc}", host=self.host, port=self.port) from exc

        if self.forward_agent:
            logger.debug("[%d] ForwardAgent: yes", self.id)

    async def open_session(self, command: str) -> Any:
        """Start ``command`` in a new session, with a pty when requested."""
        if self.conn is None:
            raise SessionFailure(f"[{self.id}] Not connected", host=self.host, port=self.port)
        kwargs: Dict[str, Any] = dict(stderr=asyncssh.STDOUT)
        if self.use_tty:
            logger.debug("[%d] Requesting a tty", self.id)
            kwargs.update(term_type=TERM_TYPE, term_size=TERM_SIZE, term_modes=TERM_MODES)
        try:
            self.session = await self.conn.create_process(command, **kwargs)
        except (OSError, asyncssh.ChannelOpenError, asyncssh.Error) as exc:
            what = "tty session" if self.use_tty else "session"
            raise SessionFailure(f"[{self.id}] SSH client {what}: {exc}", host=self.host, port=self.port) from exc
        return self.session

    async def execute(self, command: str, timeout: Optional[float] = None) -> Tuple[str, Optional[int]]:
        """Run ``command`` and return its combined output and exit status.

        A nonzero exit status is not an error here.
        """
        process = await self.open_session(command)
        try:
            completed = await process.wait(check=False, timeout=timeout)
        except (OSError, asyncio.TimeoutError, asyncssh.Error) as exc:
            raise SessionFailure(f"[{self.id}] SSH session ({command!r}): {exc}", host=self.host, port=self.port) from exc
        output = completed.stdout or ""
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        return output, completed.exit_status

    async def close(self) -> None:
        """Drop the session, connection and agent client. Safe to repeat."""
        if self.session is not None:
            self.session.close()
            self.session = None
        if self.conn is not None:
            self.conn.close()
            try:
                await self.conn.wait_closed()
            except (OSError, asyncssh.Error) as exc:
                logger.debug("[%d] close %s: %s", self.id, self.endpoint, exc)
            self.conn = None
        if self.agent is not None:
            self.agent.close()
            self.agent = None


def resolve_trust(
    task_id: int,
    host: str,
    port: int,
    index: Optional[KnownHostsIndex],
    insecure: bool = True,
) -> Any:
    """Build the asyncssh ``known_hosts`` argument for ``host``."""
    key = index.lookup(host, port) if index is not None else None
    if key is not None:
        return ([key], [], [])
    if not insecure:
        raise TrustLookupFailure(host)
    logger.error("[%d] No known host key for %r, accepting any host key", task_id, host)
    return None


async def build_host_context(
    task_id: int,
    job: JobDescriptor,
    host: str,
    stack: ConfigStack,
    known_hosts: Optional[KnownHostsIndex],
    *,
    key_file: Path | str = DEFAULT_KEY_FILE,
    passphrase_provider: PassphraseProvider = no_passphrase,
    file_keys: Optional[List[Any]] = None,
    insecure: bool = True,
    connect_timeout: Optional[float] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> HostContext:
    """Resolve everything needed to reach ``host`` for ``job``.

    Port, user and agent forwarding come from ``stack`` (defaults: 22, the
    job's user or the current login, no forwarding). ``file_keys`` holds keys
    already loaded from ``key_file``; when it is ``None`` the file is read here.
    """
    env = os.environ if environ is None else environ
    fqdn = job.fqdn(host)
    login, gecos = current_user()
    logger.debug("[%d] Running as %r (%s)", task_id, login, gecos)

    port_text = stack.get(fqdn, "Port", str(DEFAULT_PORT))
    try:
        port = int(port_text)
    except ValueError:
        logger.warning("[%d] Bad Port %r for %r, using %d", task_id, port_text, fqdn, DEFAULT_PORT)
        port = DEFAULT_PORT
    user = job.user or stack.get(fqdn, "User", login)
    forward_agent = stack.get_bool(fqdn, "ForwardAgent", False)

    trust = await asyncio.to_thread(resolve_trust, task_id, fqdn, port, known_hosts, insecure)

    context = HostContext(
        id=task_id,
        host=fqdn,
        user=user,
        gecos=gecos,
        port=port,
        forward_agent=forward_agent,
        use_tty=job.tty,
        known_hosts=trust,
        connect_timeout=connect_timeout,
    )

    agent_path = env.get(AGENT_SOCK_ENV) or None
    context.agent = await connect_agent(agent_path)
    if context.agent is not None:
        logger.debug("[%d] Using agent via %r", task_id, agent_path)
        context.agent_path = agent_path
        context.client_keys.extend(await agent_keys(context.agent))

    if file_keys is None:
        file_keys = await load_file_keys(key_file, passphrase_provider)
    if file_keys:
        logger.debug("[%d] Using private key", task_id)
        context.client_keys.extend(file_keys)

    return context


async def load_file_keys(key_file: Path | str, passphrase_provider: PassphraseProvider = no_passphrase) -> List[Any]:
    """Load the private key file off the event loop; ``[]`` if unusable."""
    key = await asyncio.to_thread(load_private_key, key_file, passphrase_provider)
    return [] if key is None else [key]
