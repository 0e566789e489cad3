#!/usr/bin/env python3
"""
In-memory dialplan

Contexts, extensions, includes and ignore patterns as the digit map generator
sees them, plus loaders for YAML dialplan descriptions and a subset of the
Asterisk extensions.conf format.
"""

import functools
import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

PATTERN_MARKER = "_"
PRIORITY_HINT = -1


class DialplanSyntaxError(ValueError):
    """Raised when a dialplan file cannot be parsed."""

    def __init__(self, message: str, line: Optional[int] = None):
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


# =============================================================================
# Locking
# =============================================================================

class ReadWriteLock:
    """Many readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    def acquire_read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True

    def release_write(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


# =============================================================================
# Pattern Matching
# =============================================================================

@functools.lru_cache(maxsize=1024)
def _compile_pattern(pattern: str) -> Optional[re.Pattern]:
    """Compile an extension pattern body (no leading '_') to a regex.

    Returns None for patterns with an unterminated character set.
    """
    parts = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == 'X':
            parts.append("[0-9]")
        elif c == 'Z':
            parts.append("[1-9]")
        elif c == 'N':
            parts.append("[2-9]")
        elif c == '.':
            parts.append(".+")
        elif c == '!':
            parts.append(".*")
        elif c == '[':
            end = pattern.find(']', i + 1)
            if end == -1:
                return None
            items = []
            body = pattern[i + 1:end]
            j = 0
            while j < len(body):
                if j + 2 < len(body) and body[j + 1] == '-':
                    items.append(f"{re.escape(body[j])}-{re.escape(body[j + 2])}")
                    j += 3
                else:
                    items.append(re.escape(body[j]))
                    j += 1
            if not items:
                return None
            parts.append(f"[{''.join(items)}]")
            i = end
        else:
            parts.append(re.escape(c))
        i += 1
    try:
        return re.compile("".join(parts))
    except re.error:
        return None


def extension_match(pattern: str, data: str) -> bool:
    """Check whether dialed digits `data` match an extension name or pattern.

    Literal names must be equal. Names starting with '_' are patterns:
    X, Z and N are digit classes, [...] is a set, '.' matches one or more
    characters and '!' zero or more.
    """
    if not pattern.startswith(PATTERN_MARKER):
        return pattern == data
    regex = _compile_pattern(pattern[1:])
    if regex is None:
        return False
    return regex.fullmatch(data) is not None


# =============================================================================
# Dialplan Objects
# =============================================================================

@dataclass(frozen=True)
class Extension:
    """One priority of an extension."""
    name: str
    priority: int
    app: str = ""

    @property
    def is_pattern(self) -> bool:
        return self.name.startswith(PATTERN_MARKER)

    def __repr__(self):
        return f"Extension({self.name},{self.priority})"


@dataclass(frozen=True)
class Include:
    """A reference to another context.

    `args` holds the auxiliary arguments that followed the target name;
    the second one, when present, is a digit prefix.
    """
    target: str
    args: Tuple[str, ...] = ()

    @property
    def prefix(self) -> str:
        return self.args[1] if len(self.args) > 1 else ""

    @classmethod
    def parse(cls, raw: str) -> "Include":
        """Parse 'target|arg|prefix' or 'target,timing' include text."""
        pieces = raw.strip().split("|", 2)
        target = pieces[0].split(",", 1)[0].strip()
        return cls(target, tuple(pieces[1:]))

    def __str__(self):
        return "|".join((self.target,) + self.args)


@dataclass(frozen=True)
class IgnorePattern:
    pattern: str

    def matches(self, data: str) -> bool:
        return extension_match(self.pattern, data)


@dataclass
class Context:
    """A named context. Mutate only through the add_* methods."""
    name: str
    extensions: List[Extension] = field(default_factory=list)
    includes: List[Include] = field(default_factory=list)
    ignore_patterns: List[IgnorePattern] = field(default_factory=list)
    lock: ReadWriteLock = field(default_factory=ReadWriteLock, repr=False, compare=False)

    @contextmanager
    def read_locked(self):
        with self.lock.read():
            yield self

    def add_extension(self, name: str, priority: int, app: str = "") -> Extension:
        ext = Extension(name, priority, app)
        with self.lock.write():
            self.extensions.append(ext)
        return ext

    def add_include(self, include) -> Include:
        if isinstance(include, str):
            include = Include.parse(include)
        with self.lock.write():
            self.includes.append(include)
        return include

    def add_ignore_pattern(self, pattern: str) -> IgnorePattern:
        ignorepat = IgnorePattern(pattern)
        with self.lock.write():
            self.ignore_patterns.append(ignorepat)
        return ignorepat

    def extensions_snapshot(self) -> List[Extension]:
        return list(self.extensions)

    def includes_snapshot(self) -> List[Include]:
        return list(self.includes)

    def has_ignore_pattern(self, data: str) -> bool:
        return any(p.matches(data) for p in self.ignore_patterns)


class Dialplan:
    """Registry of contexts keyed by name."""

    def __init__(self):
        self._contexts: Dict[str, Context] = {}
        self._lock = threading.Lock()

    def add_context(self, name: str) -> Context:
        """Return the context called `name`, creating it if needed."""
        with self._lock:
            context = self._contexts.get(name)
            if context is None:
                context = Context(name)
                self._contexts[name] = context
            return context

    def remove_context(self, name: str) -> bool:
        with self._lock:
            return self._contexts.pop(name, None) is not None

    def find_context(self, name: str) -> Optional[Context]:
        with self._lock:
            return self._contexts.get(name)

    def ignore_pattern(self, context_name: str, data: str) -> bool:
        """Check whether `context_name` has an ignore pattern matching `data`."""
        context = self.find_context(context_name)
        if context is None:
            return False
        with context.read_locked():
            return context.has_ignore_pattern(data)

    def context_names(self) -> List[str]:
        with self._lock:
            return list(self._contexts)

    def __contains__(self, name: str) -> bool:
        return self.find_context(name) is not None

    def __len__(self):
        with self._lock:
            return len(self._contexts)


# =============================================================================
# YAML Loader
# =============================================================================

def _parse_priority(value, line: Optional[int] = None) -> int:
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text == "hint":
        return PRIORITY_HINT
    try:
        return int(text)
    except ValueError:
        raise DialplanSyntaxError(f"Invalid priority {value!r}", line)


def _text(value, what: str) -> str:
    """Return a YAML scalar that must be a string.

    Unquoted digit strings are read as numbers (011 as octal 9), so they are
    rejected instead of converted.
    """
    if not isinstance(value, str):
        raise DialplanSyntaxError(
            f"{what} must be a string, got {value!r}; quote digit strings in YAML")
    return value


def dialplan_from_dict(data: dict) -> Dialplan:
    """Build a dialplan from a parsed YAML document.

    Format:
        contexts:
          default:
            extensions:
              - _NXX1234            # priority 1
              - {name: "100", priority: hint}
            includes:
              - intl|x|011          # raw include text
              - {context: local, prefix: "9"}
            ignorepats: ["9"]
    """
    if not isinstance(data, dict):
        raise DialplanSyntaxError(f"Expected mapping at top level, got {type(data).__name__}")
    contexts = data.get("contexts") or {}
    if not isinstance(contexts, dict):
        raise DialplanSyntaxError("'contexts' should be a mapping")

    dialplan = Dialplan()
    for name, body in contexts.items():
        context = dialplan.add_context(_text(name, "Context name"))
        body = body or {}
        if not isinstance(body, dict):
            raise DialplanSyntaxError(f"Context '{name}' should be a mapping")

        for ext in body.get("extensions") or []:
            if isinstance(ext, dict):
                if "name" not in ext:
                    raise DialplanSyntaxError(f"Extension in '{name}' missing 'name'")
                context.add_extension(_text(ext["name"], f"Extension name in '{name}'"),
                                      _parse_priority(ext.get("priority", 1)),
                                      str(ext.get("app", "")))
            else:
                context.add_extension(_text(ext, f"Extension name in '{name}'"), 1)

        for inc in body.get("includes") or []:
            if isinstance(inc, dict):
                args = [_text(a, f"Include argument in '{name}'") for a in inc.get("args") or []]
                if "prefix" in inc:
                    args = (args or [""])[:1] + [_text(inc["prefix"], f"Include prefix in '{name}'")]
                context.add_include(Include(_text(inc.get("context", ""), f"Include context in '{name}'"),
                                            tuple(args)))
            else:
                context.add_include(_text(inc, f"Include in '{name}'"))

        for pat in body.get("ignorepats") or []:
            context.add_ignore_pattern(_text(pat, f"Ignore pattern in '{name}'"))

    return dialplan


def load_dialplan_yaml(path) -> Tuple[Dialplan, dict]:
    """Load a YAML dialplan. Returns the dialplan and its 'digitmap' settings."""
    with open(path, encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise DialplanSyntaxError(f"Invalid YAML in {path}: {e}")
    dialplan = dialplan_from_dict(data or {})
    settings = (data or {}).get("digitmap") or {}
    if not isinstance(settings, dict):
        raise DialplanSyntaxError("'digitmap' should be a mapping")
    return dialplan, settings


# =============================================================================
# extensions.conf Parser
# =============================================================================

_directive_re = re.compile(r"^(\w+)\s*=>?\s*(.*)$")
_label_re = re.compile(r"^(\w+)\((\w+)\)$")


class ConfParser:
    """Line-oriented parser for the dialplan subset of extensions.conf."""

    def __init__(self, text: str):
        self.lines = text.splitlines()
        self.dialplan = Dialplan()
        self.context: Optional[Context] = None
        self.last_name: Optional[str] = None
        self.last_priority = 0
        self.lineno = 0

    def parse(self) -> Dialplan:
        for lineno, raw in enumerate(self.lines, start=1):
            self.lineno = lineno
            line = self._strip_comment(raw).strip()
            if not line:
                continue
            if line.startswith('['):
                self._parse_header(line)
                continue
            m = _directive_re.match(line)
            if not m:
                raise DialplanSyntaxError(f"Unparseable line: {raw.strip()!r}", self.lineno)
            directive, value = m.group(1).lower(), m.group(2).strip()
            if directive in ("exten", "same", "include", "ignorepat") and self.context is None:
                raise DialplanSyntaxError(f"'{directive}' outside of a context", self.lineno)
            if directive == "exten":
                self._parse_exten(value)
            elif directive == "same":
                self._parse_same(value)
            elif directive == "include":
                self.context.add_include(value)
            elif directive == "ignorepat":
                self.context.add_ignore_pattern(value)
            else:
                logger.debug("Ignoring directive '%s' on line %d", directive, self.lineno)
        return self.dialplan

    def _strip_comment(self, line: str) -> str:
        # '\;' is an escaped semicolon
        out = []
        i = 0
        while i < len(line):
            if line[i] == '\\' and i + 1 < len(line) and line[i + 1] == ';':
                out.append(';')
                i += 2
                continue
            if line[i] == ';':
                break
            out.append(line[i])
            i += 1
        return "".join(out)

    def _parse_header(self, line: str):
        end = line.find(']')
        if end == -1:
            raise DialplanSyntaxError(f"Unterminated context header: {line!r}", self.lineno)
        name = line[1:end].strip()
        if not name:
            raise DialplanSyntaxError("Empty context name", self.lineno)
        self.context = self.dialplan.add_context(name)
        self.last_name = None
        self.last_priority = 0

    def _priority(self, text: str) -> int:
        text = text.strip()
        m = _label_re.match(text)
        if m:
            text = m.group(1)
        if text == "n":
            if self.last_name is None:
                raise DialplanSyntaxError("Priority 'n' without a preceding extension", self.lineno)
            return self.last_priority + 1
        return _parse_priority(text, self.lineno)

    def _parse_exten(self, value: str):
        pieces = value.split(",", 2)
        if len(pieces) < 2:
            raise DialplanSyntaxError(f"Incomplete extension: {value!r}", self.lineno)
        name = pieces[0].strip()
        # Drop caller ID match
        name = name.split("/", 1)[0]
        if not name:
            raise DialplanSyntaxError("Empty extension name", self.lineno)
        if name != self.last_name:
            self.last_priority = 0
        self.last_name = name
        priority = self._priority(pieces[1])
        app = pieces[2].strip() if len(pieces) > 2 else ""
        self.context.add_extension(name, priority, app)
        if priority != PRIORITY_HINT:
            self.last_priority = priority

    def _parse_same(self, value: str):
        if self.last_name is None:
            raise DialplanSyntaxError("'same' without a preceding extension", self.lineno)
        pieces = value.split(",", 1)
        priority = self._priority(pieces[0])
        app = pieces[1].strip() if len(pieces) > 1 else ""
        self.context.add_extension(self.last_name, priority, app)
        self.last_priority = priority


def parse_extensions_conf(text: str) -> Dialplan:
    """Parse extensions.conf text into a dialplan."""
    return ConfParser(text).parse()


def load_dialplan(path) -> Tuple[Dialplan, dict]:
    """Load a dialplan from a .yaml/.yml file or an extensions.conf file."""
    path = Path(path)
    if path.suffix.lower() in (".yaml", ".yml"):
        return load_dialplan_yaml(path)
    return parse_extensions_conf(path.read_text(encoding='utf-8')), {}
