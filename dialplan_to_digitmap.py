#!/usr/bin/env python3
"""
Dialplan to Digit Map Converter

Walks a dialplan context, its extensions and everything it includes, and
emits the digit map used by ATAs, gateways and IP phones to decide when a
dialed number is complete.

The generated digit map should be compatible with most devices. Grandstream
devices also need it surrounded with braces (see --braces).
"""

import argparse
import dataclasses
import logging
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional

from dialplan import (
    PATTERN_MARKER,
    Dialplan,
    DialplanSyntaxError,
    Extension,
    Include,
    load_dialplan,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 128
DEFAULT_BUFFER_SIZE = 2048  # Grandstream devices only support a digit map of max length 2048
DEFAULT_MAX_PREFIX_LENGTH = 31

SEPARATOR = "|"
SECOND_DIAL_TONE = ","
RESERVED_EXTENSIONS = frozenset(("a", "i", "s", "t"))

# =============================================================================
# Errors
# =============================================================================

class DigitMapError(Exception):
    """Base class for digit map generation errors."""


class ContextNotFound(DigitMapError):
    def __init__(self, context: str):
        self.context = context
        super().__init__(f"No such context: {context}")


class MaxDepthExceeded(DigitMapError):
    def __init__(self, context: str, max_depth: int):
        self.context = context
        self.max_depth = max_depth
        super().__init__(f"Maximum include depth ({max_depth}) exceeded at {context}")


class CircularInclude(DigitMapError):
    def __init__(self, context: str, parent: str):
        self.context = context
        self.parent = parent
        super().__init__(f"Avoiding circular include of {context} within {parent}")


class BufferExhausted(DigitMapError):
    def __init__(self, capacity: int):
        self.capacity = capacity
        super().__init__(f"No space left in digit map buffer ({capacity} bytes)")


class InvalidPattern(DigitMapError):
    def __init__(self, extension: str, reason: str):
        self.extension = extension
        self.reason = reason
        super().__init__(f"{reason}: {extension}")


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class GeneratorConfig:
    """Limits imposed on one generation pass."""
    max_depth: int = DEFAULT_MAX_DEPTH
    buffer_size: int = DEFAULT_BUFFER_SIZE
    max_prefix_length: int = DEFAULT_MAX_PREFIX_LENGTH

    def __post_init__(self):
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ValueError(f"{f.name} must be a positive integer, got {value!r}")

    @classmethod
    def from_mapping(cls, data: Optional[dict]) -> "GeneratorConfig":
        """Build a config from a 'digitmap:' settings block."""
        data = data or {}
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown digitmap setting(s): {', '.join(unknown)}")
        return cls(**data)

    def replace(self, **overrides) -> "GeneratorConfig":
        """Return a copy with every override that is not None applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes) if changes else self


# =============================================================================
# Traversal State
# =============================================================================

class OutputCursor:
    """Write position over a caller-owned, fixed-size buffer."""

    def __init__(self, buffer: bytearray):
        self.buffer = buffer
        self.pos = 0

    @property
    def capacity(self) -> int:
        return len(self.buffer)

    @property
    def remaining(self) -> int:
        return len(self.buffer) - self.pos

    def write(self, text: str):
        data = text.encode('utf-8')
        if len(data) > self.remaining:
            raise BufferExhausted(self.capacity)
        self.buffer[self.pos:self.pos + len(data)] = data
        self.pos += len(data)

    def text(self, start: int = 0) -> str:
        return bytes(self.buffer[start:self.pos]).decode('utf-8')


class ActiveStack:
    """Names of the contexts on the current include path."""

    def __init__(self, max_depth: int):
        self.max_depth = max_depth
        self._names: List[str] = []

    def __len__(self):
        return len(self._names)

    def __iter__(self) -> Iterator[str]:
        return iter(self._names)

    def __contains__(self, name: str) -> bool:
        folded = name.casefold()
        return any(n.casefold() == folded for n in self._names)

    def push(self, name: str):
        if len(self._names) >= self.max_depth:
            raise MaxDepthExceeded(name, self.max_depth)
        self._names.append(name)

    def pop(self) -> str:
        return self._names.pop()

    @contextmanager
    def visiting(self, name: str):
        self.push(name)
        try:
            yield
        finally:
            self.pop()


# =============================================================================
# Pattern Translation
# =============================================================================

class PatternTranslator:
    """
    Translates one extension pattern into digit map syntax.

    Digit maps don't understand N or Z and spell "any digit" as a lowercase
    x, so those are expanded; '!' becomes the immediate match marker S0.
    Everything else, including '.', is copied literally. Character sets are
    tracked so malformed or device-hostile sets can be reported, but they
    never stop translation.
    """

    TOKENS = {
        'N': "[2-9]",
        'Z': "[1-9]",
        'X': "x",
        '!': "S0",
    }

    def __init__(self, cursor: OutputCursor):
        self.cursor = cursor
        self.warnings: List[InvalidPattern] = []
        self._reset_set()

    def _reset_set(self):
        self.in_set = 0
        self.set_items = 0
        self.set_ranges = 0

    def _warn(self, name: str, reason: str):
        warning = InvalidPattern(name, reason)
        self.warnings.append(warning)
        logger.warning("%s", warning)

    def translate(self, prefix: str, body: str, second_dial_tone: bool = False,
                  display_name: Optional[str] = None):
        """Append prefix + translated body to the cursor.

        Args:
            prefix: Digits accumulated from ancestor includes, copied literally
            body: Extension pattern with any leading '_' already stripped
            second_dial_tone: Insert the second dial tone marker once, after
                the prefix if there is one, otherwise after the first token
            display_name: Extension name used in warnings (defaults to body)

        Raises:
            BufferExhausted: if the cursor runs out of room
        """
        name = display_name or body
        self._reset_set()
        if prefix:
            self.cursor.write(prefix)

        pending = second_dial_tone
        for ch in body:
            if prefix and pending:
                self.cursor.write(SECOND_DIAL_TONE)
                pending = False
            self.cursor.write(self._translate_char(ch, name))
            if not prefix and pending:
                self.cursor.write(SECOND_DIAL_TONE)
                pending = False
        if self.in_set:
            self._warn(name, "Dialplan is invalid: unterminated []")

    def _translate_char(self, ch: str, name: str) -> str:
        token = self.TOKENS.get(ch)
        if token is not None:
            return token

        if ch == '[':
            self.in_set += 1
            if self.in_set > 1:
                self._warn(name, "Dialplan is invalid")
                self.in_set = 1
            self.set_items = 0
            self.set_ranges = 0
        elif ch == ']':
            self.in_set -= 1
            if self.in_set < 0:
                self._warn(name, "Dialplan is invalid")
                self.in_set = 0
            if self.set_ranges and self.set_items > 1:
                # e.g. [02-9]: list 0 and 2-9 separately, or spell out [023456789]
                self._warn(name, "Generated digit map will be invalid: cannot literally translate")
            self.set_items = 0
            self.set_ranges = 0
        elif self.in_set:
            if ch == '.':
                self._warn(name, "Dialplan is invalid: periods should not appear inside []")
            elif ch == '-':
                self.set_items -= 1
                self.set_ranges += 1
            else:
                self.set_items += 1
        return ch


def translate_pattern(pattern: str, prefix: str = "", second_dial_tone: bool = False,
                      capacity: int = DEFAULT_BUFFER_SIZE) -> str:
    """Translate a single extension name or pattern to digit map syntax."""
    body = pattern[1:] if pattern.startswith(PATTERN_MARKER) else pattern
    cursor = OutputCursor(bytearray(capacity))
    PatternTranslator(cursor).translate(prefix, body, second_dial_tone, pattern)
    return cursor.text()


# =============================================================================
# Map Generation
# =============================================================================

class _Traversal:
    """State owned by a single generate() call."""

    def __init__(self, max_depth: int, buffer: bytearray):
        self.stack = ActiveStack(max_depth)
        self.cursor = OutputCursor(buffer)
        self.translator = PatternTranslator(self.cursor)


class MapGenerator:
    """
    Depth-first, pre-order walk of the include graph rooted at one context.

    Each context's extensions are emitted in declaration order, then each of
    its includes is followed in declaration order with the include's prefix
    appended to the accumulated one. Every entry is preceded by a '|'
    separator; the leading one is removed once the walk is done.

    A generator holds no per-call state and may be shared between threads.
    """

    def __init__(self, dialplan: Dialplan, config: Optional[GeneratorConfig] = None):
        self.dialplan = dialplan
        self.config = config or GeneratorConfig()

    def generate(self, context_name: str, buffer: bytearray) -> int:
        """Write the digit map for `context_name` into `buffer`.

        Returns:
            Number of bytes of digit map in buffer[:n] (0 for an empty map)

        Raises:
            ContextNotFound: if the root context does not exist
            BufferExhausted: if the map does not fit in the buffer
        """
        walk = _Traversal(self.config.max_depth, buffer)
        try:
            written = self._generate_context(context_name, "", walk)
        except BufferExhausted:
            logger.warning("No space left in digit map buffer")
            raise

        if written <= 0:
            return 0
        # Skip leading separator
        buffer[0:written - 1] = buffer[1:written]
        buffer[written - 1] = 0
        return written - 1

    def _generate_context(self, context_name: str, prefix: str, walk: _Traversal) -> int:
        context = self.dialplan.find_context(context_name)
        if context is None:
            raise ContextNotFound(context_name)

        start = walk.cursor.pos
        with walk.stack.visiting(context_name):
            logger.debug("Crawling context #%d: %s for extensions (current prefix: %s)",
                         len(walk.stack) - 1, context_name, prefix or "none")
            with context.read_locked():
                for ext in context.extensions_snapshot():
                    self._emit_extension(ext, context_name, prefix, walk)
                includes = context.includes_snapshot()

            for include in includes:
                self._follow_include(include, context_name, prefix, walk)

        return walk.cursor.pos - start

    def _emit_extension(self, ext: Extension, context_name: str, prefix: str,
                        walk: _Traversal):
        if ext.name in RESERVED_EXTENSIONS:
            return
        # Hints and later priorities are not dialable entries
        if ext.priority != 1:
            logger.debug("Skipping %s,%s,%d", context_name, ext.name, ext.priority)
            return

        body = ext.name[len(PATTERN_MARKER):] if ext.is_pattern else ext.name
        # With a prefix, its first digit is the first one really dialed
        first = prefix[:1] if prefix else body[:1]
        second_dial_tone = self._has_ignore_pattern(first, walk.stack)

        walk.cursor.write(SEPARATOR)
        entry_start = walk.cursor.pos
        walk.translator.translate(prefix, body, second_dial_tone, ext.name)
        logger.debug("Added to digit map: %s", walk.cursor.text(entry_start))

    def _has_ignore_pattern(self, first: str, stack: ActiveStack) -> bool:
        """Check every context on the include path for a matching ignorepat."""
        if not first:
            return False
        for depth, name in enumerate(stack):
            logger.debug("Checking exten %s in %s (#%d) for ignorepat", first, name, depth)
            if self.dialplan.ignore_pattern(name, first):
                logger.debug("ignorepat match for %s in context %s", first, name)
                return True
        return False

    def _follow_include(self, include: Include, context_name: str, prefix: str,
                        walk: _Traversal):
        if not include.target:
            logger.warning("Empty include context in %s", context_name)
            return

        if include.prefix:
            logger.debug("Found an include prefix: %s", include.prefix)
        new_prefix = prefix + include.prefix
        limit = self.config.max_prefix_length
        if len(new_prefix) > limit:
            logger.warning("Include prefix %s truncated to %d characters", new_prefix, limit)
            new_prefix = new_prefix[:limit]

        if include.target in walk.stack:
            logger.warning("%s", CircularInclude(str(include), context_name))
            return

        try:
            written = self._generate_context(include.target, new_prefix, walk)
        except MaxDepthExceeded as e:
            logger.warning("%s", e)
            return
        except ContextNotFound as e:
            logger.warning("%s (included from %s)", e, context_name)
            return
        logger.debug("Include %s added %d bytes", include.target, written)


def generate_digit_map(dialplan: Dialplan, context_name: str,
                       config: Optional[GeneratorConfig] = None) -> str:
    """Generate the digit map for a context as a string."""
    config = config or GeneratorConfig()
    buffer = bytearray(config.buffer_size)
    length = MapGenerator(dialplan, config).generate(context_name, buffer)
    return bytes(buffer[:length]).decode('utf-8')


# =============================================================================
# Main
# =============================================================================

def configure_logging(verbosity: int):
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, stream=sys.stderr,
                        format="%(levelname)s: %(message)s")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate device digit maps from the dialplan",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Dialplan files ending in .yaml/.yml use the YAML format (see tests.yaml);
anything else is read as extensions.conf.

Example usage:
    dialplan-to-digitmap -d extensions.conf generate digitmap from-phones
    dialplan-to-digitmap -d dialplan.yaml --braces generate digitmap default
"""
    )
    parser.add_argument(
        "--dialplan", "-d",
        required=True,
        help="Dialplan file (YAML or extensions.conf)"
    )
    parser.add_argument("--max-depth", type=int,
                        help=f"Maximum include depth (default: {DEFAULT_MAX_DEPTH})")
    parser.add_argument("--buffer-size", type=int,
                        help=f"Maximum digit map size in bytes (default: {DEFAULT_BUFFER_SIZE})")
    parser.add_argument("--braces", action="store_true",
                        help="Surround the digit map with { } (Grandstream)")
    parser.add_argument("--verbose", "-v", action="count", default=0,
                        help="More logging (-v info, -vv debug)")

    commands = parser.add_subparsers(dest="command", metavar="command", required=True)
    generate = commands.add_parser("generate", help="Generate output from the dialplan")
    targets = generate.add_subparsers(dest="target", metavar="target", required=True)
    digitmap = targets.add_parser(
        "digitmap",
        help="Generate device digit maps for a dialplan context"
    )
    digitmap.add_argument("context", help="Context to generate the digit map for")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        dialplan, settings = load_dialplan(args.dialplan)
    except OSError as e:
        print(f"Error reading dialplan: {e}", file=sys.stderr)
        return 1
    except DialplanSyntaxError as e:
        print(f"Error parsing dialplan: {e}", file=sys.stderr)
        return 1

    try:
        config = GeneratorConfig.from_mapping(settings).replace(
            max_depth=args.max_depth,
            buffer_size=args.buffer_size,
        )
    except (TypeError, ValueError) as e:
        print(f"Invalid digit map settings: {e}", file=sys.stderr)
        return 1

    try:
        digit_map = generate_digit_map(dialplan, args.context, config)
    except DigitMapError as e:
        print(f"Error generating digit map: {e}", file=sys.stderr)
        return 1

    if not digit_map:
        logger.info("Context %s has no dialable extensions", args.context)
        return 0
    print("{" + digit_map + "}" if args.braces else digit_map)
    return 0


if __name__ == "__main__":
    sys.exit(main())
