"""Known-hosts trust lookups.

Each query scans the known_hosts file once and returns the public key of the
first line whose host token matches. Host tokens are either plain names
(compared verbatim) or OpenSSH hashed names, ``|1|<salt>|<hash>``, which match
when ``HMAC-SHA1(salt, hostname) == hash``.

Marker prefixes such as ``@revoked`` or ``@cert-authority`` are stripped
before comparison. Their meaning is not evaluated.

Malformed lines are skipped with a warning by default. With ``strict=True``
the first malformed line raises ``KnownHostsFormatError`` instead, for callers
that would rather stop than trust a partly corrupted store.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from pathlib import Path
from typing import List, Optional

import asyncssh

from .errors import KnownHostsFormatError

logger = logging.getLogger(__name__)

DEFAULT_KNOWN_HOSTS = "~/.ssh/known_hosts"
DEFAULT_PORT = 22


def hashed_host_matches(token: str, host: str) -> bool:
    """Check ``host`` against a hashed known_hosts token.

    Raises ``KnownHostsFormatError`` if the token is not a well formed
    ``|1|salt|hash`` entry (a trailing ``|`` is tolerated).
    """
    fields = token.split("|")
    if len(fields) == 5 and fields[4] == "":
        fields = fields[:4]
    if len(fields) != 4 or fields[0] != "":
        raise KnownHostsFormatError(f"Bad format {token!r}")
    if fields[1] != "1":
        raise KnownHostsFormatError(f"Unknown hash {fields[1]!r} in {token!r}")
    try:
        salt = base64.b64decode(fields[2], validate=True)
        stored = base64.b64decode(fields[3], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KnownHostsFormatError(f"Cannot unbase64 {token!r}: {exc}") from exc
    computed = hmac.new(salt, host.encode("utf-8"), hashlib.sha1).digest()
    return hmac.compare_digest(stored, computed)

def host_token_matches(token: str, host: str) -> bool:
    """Match a (possibly comma separated) host token from a known_hosts line."""
    for alternative in token.split(","):
        if alternative.startswith("|"):
            if hashed_host_matches(alternative, host):
                return True
        elif alternative == host:
            return True
    return False

class KnownHostsIndex:
    """Read-only view of one known_hosts file."""

    def __init__(self, path: Path | str = DEFAULT_KNOWN_HOSTS, strict: bool = False) -> None:
        self.path = Path(path).expanduser()
        self.strict = strict

    def _malformed(self, message: str, lineno: int) -> None:
        error = KnownHostsFormatError(f"{self.path}[{lineno}]: {message}", path=str(self.path), line=lineno)
        if self.strict:
            raise error
        logger.warning("%s (line skipped)", error)

    def find(self, host: str) -> Optional[asyncssh.SSHKey]:
        """Return the trusted key for ``host`` or ``None`` if there is none."""
        if not self.path.is_file():
            logger.warning("No known hosts file %s", self.path)
            return None

        logger.debug("Host keys in %s", self.path)
        with self.path.open("r", encoding="utf-8", errors="replace") as f:
            for lineno, line in enumerate(f, 1):
                words = line.split()
                if not words or words[0].startswith("#"):
                    continue
                if words[0].startswith("@"):
                    logger.debug("%3d: marker %r", lineno, words[0])
                    words = words[1:]
                if len(words) < 3:
                    self._malformed(f"{line.strip()!r} - too few fields", lineno)
                    continue
                try:
                    matched = host_token_matches(words[0], host)
                except KnownHostsFormatError as exc:
                    self._malformed(str(exc), lineno)
                    continue
                if not matched:
                    continue
                try:
                    key = asyncssh.import_public_key(" ".join(words[1:]))
                except (asyncssh.KeyImportError, ValueError) as exc:
                    self._malformed(f"Error parsing {words[1]!r} key: {exc}", lineno)
                    continue
                comment = f" [{' '.join(words[3:])}]" if len(words) > 3 else ""
                logger.debug("Found %r key for host %r at line %d%s", words[1], host, lineno, comment)
                return key
        return None

    def lookup(self, host: str, port: int = DEFAULT_PORT) -> Optional[asyncssh.SSHKey]:
        """Try ``host`` and then, for non-default ports, ``[host]:port``."""
        tries: List[str] = [host]
        if port != DEFAULT_PORT:
            tries.append(f"[{host}]:{port}")
        for candidate in tries:
            key = self.find(candidate)
            if key is not None:
                return key
        logger.warning("No key for host %r", host)
        return None
