"""OpenSSH client config resolution.

Only a subset of the ssh_config grammar is understood:

- blank lines and ``#`` comments are skipped;
- ``Host <pattern>...`` starts a new stanza (each pattern maps to the stanza);
- ``Include <glob>`` loads every matching file (sorted) in place;
- indented ``<key> <value...>`` lines belong to the current stanza.

Anything else is reported as a ``ConfigParseError`` warning and skipped, so a
bad line never makes the whole file unusable.

Lookup rules
- Within a ``ConfigFile`` patterns are tried in insertion order and an exact
  string match short-circuits before any glob test.
- Within a ``ConfigStack`` the first file with *any* matching pattern answers
  the query, even if its stanza lacks the key. Later files are not consulted.
"""

from __future__ import annotations

import fnmatch
import glob
import logging
import re
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Pattern, Tuple

from .errors import ConfigParseError, IncludeCycleError

logger = logging.getLogger(__name__)

USER_CONFIG_FILE = "~/.ssh/config"
SYSTEM_CONFIG_FILE = "/etc/ssh/ssh_config"


class ConfigEntry:
    """Key/value bag for one ``Host`` stanza."""

    def __init__(self, values: Optional[Dict[str, str]] = None) -> None:
        self._values: Dict[str, str] = {}
        for name, value in (values or {}).items():
            self.set(name, value)

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)

    def has(self, name: str) -> bool:
        return name in self._values

    def get_bool(self, name: str) -> Optional[bool]:
        """Interpret a yes/no option; ``None`` when absent or unrecognised.

        ``confirm`` and ``ask`` are treated as ``no``: nothing here can prompt.
        """
        value = self._values.get(name)
        if value == "yes":
            return True
        if value in ("no", "confirm", "ask"):
            return False
        return None

    def set(self, name: str, value: str) -> "ConfigEntry":
        self._values[name] = value.strip()
        return self

    def items(self) -> List[Tuple[str, str]]:
        return sorted(self._values.items())

    def __len__(self) -> int:
        return len(self._values)

    def __bool__(self) -> bool:
        return bool(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConfigEntry):
            return NotImplemented
        return self._values == other._values

    def __repr__(self) -> str:
        return f"ConfigEntry({dict(self.items())!r})"

    def __str__(self) -> str:
        return "\n".join(f"\t{name} {value}" for name, value in self.items())


def _compile_pattern(pattern: str) -> Pattern[str]:
    try:
        return re.compile(fnmatch.translate(pattern))
    except re.error as exc:
        raise ConfigParseError(f"Bad host pattern {pattern!r}: {exc}") from exc


class ConfigFile:
    """Ordered ``(pattern, ConfigEntry)`` pairs loaded from one file."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self.hosts: List[str] = []
        self.entries: Dict[str, ConfigEntry] = {}
        self.globs: Dict[str, Pattern[str]] = {}

    def set(self, pattern: str, entry: ConfigEntry) -> "ConfigFile":
        """Register ``entry`` under ``pattern``.

        A repeated pattern keeps its first position; the newer entry
        replaces the older one.
        """
        compiled = _compile_pattern(pattern)
        if pattern not in self.entries:
            self.hosts.append(pattern)
        self.globs[pattern] = compiled
        self.entries[pattern] = entry
        return self

    def append(self, other: "ConfigFile") -> "ConfigFile":
        for pattern in other.hosts:
            self.set(pattern, other.entries[pattern])
        return self

    def lookup(self, host: str) -> Tuple[Optional[str], Optional[ConfigEntry]]:
        """Return ``(pattern, entry)`` of the first stanza matching ``host``."""
        if host in self.entries:
            return host, self.entries[host]
        for pattern in self.hosts:
            if self.globs[pattern].match(host):
                return pattern, self.entries[pattern]
        return None, None

    def has(self, host: str) -> bool:
        return self.lookup(host)[1] is not None

    def get(self, host: str, key: str, default: str) -> str:
        pattern, entry = self.lookup(host)
        value = entry.get(key) if entry is not None else None
        result = default if value is None else value
        where = host if pattern in (None, host) else f"{pattern}>{host}"
        logger.debug("%r[%r.%r] (%r) = %r", self.name, where, key, default, result)
        return result

    def __len__(self) -> int:
        return len(self.hosts)

    def __iter__(self) -> Iterator[Tuple[str, ConfigEntry]]:
        for pattern in self.hosts:
            yield pattern, self.entries[pattern]

    def __str__(self) -> str:
        lines = [f"# {self.name} #"]
        for pattern, entry in self:
            lines.append(f"Host {pattern}")
            if entry:
                lines.append(str(entry))
        lines.append("# EOF #")
        return "\n".join(lines)


def _resolve_include(pattern: str, base: Path) -> List[Path]:
    expanded = Path(pattern).expanduser()
    if not expanded.is_absolute():
        expanded = base / expanded
    return [Path(name) for name in sorted(glob.glob(str(expanded)))]


def load_config_file(path: Path | str, _ancestors: FrozenSet[Path] = frozenset()) -> Optional[ConfigFile]:
    """Parse one client config file, following ``Include`` directives.

    Returns ``None`` when the file does not exist or cannot be read. An
    ``Include`` chain that leads back to a file already being loaded raises
    ``IncludeCycleError``.
    """
    path = Path(path).expanduser()
    if not path.is_file():
        logger.warning("No SSH config %s", path)
        return None

    resolved = path.resolve()
    if resolved in _ancestors:
        raise IncludeCycleError(f"Include cycle through {str(resolved)!r}", source=str(path))
    ancestors = _ancestors | {resolved}

    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.error("Cannot read %s: %s", path, exc)
        return None

    logger.debug("Loading %s...", path)
    config = ConfigFile(str(path))
    patterns: List[str] = []
    entry: Optional[ConfigEntry] = None

    def flush() -> None:
        if entry is None:
            return
        if not entry:
            logger.debug("%s: stanza %r has no entries", path, " ".join(patterns))
            return
        for pattern in patterns:
            config.set(pattern, entry)

    for lineno, line in enumerate(text.splitlines(), 1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        words = stripped.split()
        try:
            if line[0].isspace():
                if entry is None:
                    raise ConfigParseError(f"{stripped!r} - outside of any Host stanza", str(path), lineno)
                entry.set(words[0], " ".join(words[1:]))
                continue

            keyword = words[0].lower()
            if keyword == "host":
                flush()
                patterns, entry = [], None
                if len(words) < 2:
                    raise ConfigParseError(f"{stripped!r} - no value", str(path), lineno)
                for pattern in words[1:]:
                    _compile_pattern(pattern)
                patterns = words[1:]
                entry = ConfigEntry()
            elif keyword == "include":
                if len(words) < 2:
                    raise ConfigParseError(f"{stripped!r} - no value", str(path), lineno)
                flush()
                patterns, entry = [], None
                for pattern in words[1:]:
                    _include(config, path, lineno, pattern, ancestors)
            else:
                raise ConfigParseError(f"{stripped!r} - bad entry", str(path), lineno)
        except IncludeCycleError:
            raise
        except ConfigParseError as exc:
            logger.warning("%s", exc)
    flush()

    logger.debug("Loaded %s (entries: %d)", path, len(config))
    return config


def _include(config: ConfigFile, path: Path, lineno: int, pattern: str, ancestors: FrozenSet[Path]) -> None:
    names = _resolve_include(pattern, path.parent)
    if not names:
        logger.debug("%s[%d]: no files match pattern %r", path, lineno, pattern)
        return
    for name in names:
        sub = load_config_file(name, ancestors)
        if sub is None or not len(sub):
            logger.warning("%s[%d]: subconfig %s has no entries", path, lineno, name)
            continue
        config.append(sub)


class ConfigStack:
    """Ordered list of ``ConfigFile``; the first file with a match wins."""

    def __init__(self, files: Iterable[Optional[ConfigFile]] = ()) -> None:
        self.files: List[ConfigFile] = [f for f in files if f is not None]

    @classmethod
    def load(cls, paths: Iterable[Path | str]) -> "ConfigStack":
        return cls(load_config_file(p) for p in paths)

    def find(self, host: str) -> Tuple[Optional[ConfigFile], Optional[ConfigEntry]]:
        for config in self.files:
            _, entry = config.lookup(host)
            if entry is not None:
                return config, entry
        return None, None

    def get(self, host: str, key: str, default: str) -> str:
        config, entry = self.find(host)
        if config is None:
            return default
        return config.get(host, key, default)

    def get_bool(self, host: str, key: str, default: bool = False) -> bool:
        _, entry = self.find(host)
        value = entry.get_bool(key) if entry is not None else None
        return default if value is None else value

    def __len__(self) -> int:
        return len(self.files)


def default_config_stack() -> ConfigStack:
    """User config first, then the system-wide one."""
    paths = [Path(USER_CONFIG_FILE).expanduser(), Path(SYSTEM_CONFIG_FILE)]
    return ConfigStack.load(p for p in paths if p.is_file())
