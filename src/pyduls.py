#!/usr/bin/env python3
"""
pyduls - List the contents of a disk usage index.

Reads a previously computed disk usage index and prints the entries of the
requested paths with aligned sizes, optional tree connectors, relative size
graphs and color banding. Paths that cannot be found in the index are
reported together once every other path has been listed.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import shutil
import sys
import unicodedata
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import TextIO

logger = logging.getLogger(__name__)

# Hard bound on recursion depth, independent of --levels.
MAX_DEPTH = 32
PATH_CAPACITY = 16384
DEFAULT_WIDTH = 80
DEFAULT_LEVELS = 4
SIZE_FIELD_WIDTH = 6
EXACT_SIZE_FIELD_WIDTH = 12
GRAPH_MARGIN = 5

DEFAULT_CONFIG_FILENAME = "~/.pyduls.config"
DEFAULT_DATABASE = "~/.pyduls.json"
DATABASE_ENV = "PYDULS_DATABASE"


class ColorFormatter(logging.Formatter):
    """
    Custom logging formatter that adds ANSI color codes to log messages.

    This formatter applies color coding based on log levels for better
    readability in terminal output.
    """

    COLORS = {
        logging.DEBUG: "\033[36m",  # Cyan
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[41m",  # Red background
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record with colors.

        Args:
            record (logging.LogRecord):
                The log record to format.

        Returns:
            str:
                The formatted log message with ANSI color codes.

        """
        color = self.COLORS.get(record.levelno, "")
        message = super().format(record)
        if color:
            message = f"{color}{message}{self.RESET}"
        return message


class PyDulsError(Exception):
    """Base class for all pyduls errors."""


class DatabaseError(PyDulsError):
    """The index cannot be opened or contains malformed records."""


class PathNotFoundError(PyDulsError):
    """A requested path is not present in the index."""

    def __init__(self, path: str):
        super().__init__(f"Path '{path}' not found in the index")
        self.path = path


class IndexInconsistencyError(PyDulsError):
    """The index disagrees with the filesystem about an existing file."""


class Metric(Enum):
    """Size measurement used for every computation of a listing."""

    ACTUAL = "actual"
    APPARENT = "apparent"
    COUNT = "count"


class SortOrder(Enum):
    """Order in which the entries of a directory are listed."""

    SIZE = "size"
    NAME = "name"


class NodeType(Enum):
    """Enumeration of indexed node types."""

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    FIFO = "fifo"
    SOCKET = "socket"
    OTHER = "other"


TYPE_CHARS = {
    NodeType.FILE: " ",
    NodeType.DIRECTORY: "/",
    NodeType.SYMLINK: "@",
    NodeType.FIFO: "|",
    NodeType.SOCKET: "=",
    NodeType.OTHER: "?",
}


class Connector(Enum):
    """Per-depth code selecting the tree glyph printed at that depth."""

    NONE = 0
    FIRST = 1
    MIDDLE = 2
    LAST = 3
    VERTICAL = 4
    BLANK = 5


TREE_ASCII = {
    Connector.NONE: "####",
    Connector.FIRST: " `+-",
    Connector.MIDDLE: "  |-",
    Connector.LAST: "  `-",
    Connector.VERTICAL: "  | ",
    Connector.BLANK: "    ",
}

TREE_UTF8 = {
    Connector.NONE: "####",
    Connector.FIRST: " ╰┬─",
    Connector.MIDDLE: "  ├─",
    Connector.LAST: "  ╰─",
    Connector.VERTICAL: "  │ ",
    Connector.BLANK: "    ",
}


@dataclass(frozen=True)
class SizeRecord:
    """Sizes of one node under every metric.

    Attributes:
        actual (int):
            Disk usage in bytes.
        apparent (int):
            Apparent size in bytes.
        count (int):
            Number of items.

    """

    actual: int = 0
    apparent: int = 0
    count: int = 0

    def get(self, metric: Metric) -> int:
        """Return the size under the given metric."""
        return getattr(self, metric.value)

    @classmethod
    def from_dict(cls, data: dict) -> SizeRecord:
        """Build a record from a ``{"actual", "apparent", "count"}`` mapping."""
        if not isinstance(data, dict):
            raise DatabaseError(f"Invalid size record: {data!r}")
        try:
            return cls(
                actual=int(data.get("actual", 0)),
                apparent=int(data.get("apparent", 0)),
                count=int(data.get("count", 0)),
            )
        except (TypeError, ValueError) as e:
            raise DatabaseError(f"Invalid size record: {data!r}") from e


@dataclass(frozen=True)
class Entry:
    """One record of the index, as seen from its parent directory.

    Attributes:
        name (str):
            The name of the file or directory.
        node_type (NodeType):
            Type of the node.
        size (SizeRecord):
            Sizes of the node; for directories this is the precomputed
            aggregate of everything below it.
        children (tuple[Entry, ...]):
            Child records, empty for anything but directories.

    """

    name: str
    node_type: NodeType
    size: SizeRecord
    children: tuple[Entry, ...] = field(default=(), repr=False)

    @property
    def is_dir(self) -> bool:
        return self.node_type is NodeType.DIRECTORY


@dataclass
class RenderOptions:
    """Invocation-wide listing options, fixed before rendering starts."""

    metric: Metric = Metric.ACTUAL
    sort: SortOrder = SortOrder.SIZE
    max_depth: int = DEFAULT_LEVELS
    ascii: bool = False
    classify: bool = False
    exact_bytes: bool = False
    color: bool = False
    graph: bool = False
    full_path: bool = False
    dirs_only: bool = False
    directory: bool = False
    recursive: bool = False
    width: int = DEFAULT_WIDTH

    def __post_init__(self):
        # The graph is budgeted against a fixed-width tree prefix.
        if self.full_path:
            self.graph = False

    @property
    def size_field_width(self) -> int:
        return EXACT_SIZE_FIELD_WIDTH if self.exact_bytes else SIZE_FIELD_WIDTH

    @property
    def glyphs(self) -> dict[Connector, str]:
        return TREE_ASCII if self.ascii else TREE_UTF8


def select_metric(count: bool, apparent: bool) -> Metric:
    """Pick the metric from mutually exclusive flags, count winning over apparent."""
    if count:
        return Metric.COUNT
    if apparent:
        return Metric.APPARENT
    return Metric.ACTUAL


def classify_char(node_type: NodeType) -> str:
    """Return the one-character type indicator appended by --classify."""
    return TYPE_CHARS.get(node_type, "?")


def human_size_parts(size: int, base: int = 1024) -> tuple[str, str]:
    """
    Split a raw size into a printable number and a unit letter.

    Args:
        size (int):
            Raw size value.
        base (int):
            Scaling factor between units (1024 for bytes, 1000 for counts).

    Returns:
        tuple[str, str]:
            Tuple of (formatted_size, unit). Values below ``base`` are printed
            as integers with an empty unit, larger values with one decimal.

    Examples:
        >>> human_size_parts(1000)
        ('1000', '')
        >>> human_size_parts(1536)
        ('1.5', 'K')

    """
    if size < base:
        return str(size), ""
    units = ["K", "M", "G", "T", "P", "E"]
    i = -1
    size_f = float(size)
    while size_f >= base and i < len(units) - 1:
        size_f /= base
        i += 1
    return f"{size_f:.1f}", units[i]


def format_size(size: int, metric: Metric, exact: bool = False) -> str:
    """
    Format a raw size under a metric into a human-readable string.

    Args:
        size (int):
            Raw size value.
        metric (Metric):
            Metric the size was measured with; counts scale by 1000.
        exact (bool):
            Whether to print the exact value without scaling.

    Returns:
        str:
            Formatted size, e.g. "30", "1.5K" or "123456789".

    """
    if exact:
        return str(size)
    number, unit = human_size_parts(size, 1000 if metric is Metric.COUNT else 1024)
    return f"{number}{unit}"


def colored(text: str, color_code: str) -> str:
    """Wrap text in an ANSI color code, always resetting afterwards."""
    return f"\033[{color_code}m{text}\033[0m"


def string_width(text: str) -> int:
    """
    Compute the monospace terminal width of a string.

    Combining marks take no column and East Asian wide or fullwidth characters
    take two. Strings containing control characters cannot be measured and
    fall back to their encoded length, as do strings measuring zero columns.

    Args:
        text (str):
            String to measure.

    Returns:
        int:
            Number of terminal columns.

    """
    width = 0
    for ch in text:
        if unicodedata.category(ch) == "Cc":
            return len(text.encode("utf-8", errors="replace"))
        if unicodedata.combining(ch):
            continue
        width += 2 if unicodedata.east_asian_width(ch) in {"W", "F"} else 1
    if width <= 0:
        return len(text.encode("utf-8", errors="replace"))
    return width


def sort_entries(
    entries: tuple[Entry, ...] | list[Entry], metric: Metric, sort: SortOrder
) -> list[Entry]:
    """Order entries by descending size under ``metric`` or by name."""
    if sort is SortOrder.NAME:
        return sorted(entries, key=lambda e: e.name)
    return sorted(entries, key=lambda e: (-e.size.get(metric), e.name))


class DirHandle:
    """
    Cursor over the entries of one indexed directory.

    Handles are cheap views over the index. They are used as context managers
    so that child handles are closed in the order they were opened.
    """

    def __init__(self, path: str, entry: Entry):
        self.path = path
        self._entry = entry
        self._order: list[Entry] = []
        self._order_key: tuple[Metric, SortOrder] | None = None
        self._pos = 0
        self.closed = False

    def __enter__(self) -> DirHandle:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"DirHandle({self.path!r})"

    def _check_open(self) -> None:
        if self.closed:
            raise ValueError(f"I/O operation on closed directory handle {self.path}")

    def read(self, metric: Metric, sort: SortOrder) -> Entry | None:
        """
        Return the next entry in the requested order.

        Args:
            metric (Metric):
                Metric used when sorting by size.
            sort (SortOrder):
                Listing order.

        Returns:
            Entry | None:
                The next entry, or None once every entry has been read.

        """
        self._check_open()
        if self._order_key != (metric, sort):
            self._order = sort_entries(self._entry.children, metric, sort)
            self._order_key = (metric, sort)
        if self._pos >= len(self._order):
            return None
        entry = self._order[self._pos]
        self._pos += 1
        return entry

    def rewind(self) -> None:
        """Restart iteration from the first entry."""
        self._check_open()
        self._pos = 0

    def count(self) -> int:
        """Return the total number of entries in the directory."""
        self._check_open()
        return len(self._entry.children)

    def get_size(self) -> SizeRecord:
        """Return the precomputed aggregate size of the directory."""
        self._check_open()
        return self._entry.size

    def open_child(self, entry: Entry) -> DirHandle | None:
        """Open a handle on a child directory, or None if it is not a directory."""
        self._check_open()
        if not entry.is_dir:
            return None
        return DirHandle(os.path.join(self.path, entry.name), entry)

    def close(self) -> None:
        self.closed = True


def _normalize_path(path: str) -> str:
    return os.path.normpath(os.path.abspath(path))


def _parse_entry(data: dict, name: str | None = None) -> Entry:
    """
    Build an Entry (and its children) from a decoded JSON record.

    Args:
        data (dict):
            Record with ``name``, ``type``, ``size`` and optional ``children``.
        name (str | None):
            Name to use instead of ``data["name"]`` (used for roots).

    Returns:
        Entry:
            The parsed entry.

    Raises:
        DatabaseError: If the record is malformed.

    """
    if not isinstance(data, dict):
        raise DatabaseError(f"Invalid index record: {data!r}")
    if name is None:
        name = data.get("name")
    if not isinstance(name, str) or not name:
        raise DatabaseError(f"Index record without a name: {data!r}")

    children_data = data.get("children", [])
    if not isinstance(children_data, list):
        raise DatabaseError(f"Invalid children list for '{name}'")

    default_type = "directory" if "children" in data else "file"
    try:
        node_type = NodeType(data.get("type", default_type))
    except ValueError as e:
        raise DatabaseError(f"Unknown node type for '{name}': {data.get('type')!r}") from e

    children = tuple(_parse_entry(child) for child in children_data)
    if children and node_type is not NodeType.DIRECTORY:
        raise DatabaseError(f"Non-directory '{name}' has children")

    return Entry(
        name=name,
        node_type=node_type,
        size=SizeRecord.from_dict(data.get("size", {})),
        children=children,
    )


class Database:
    """
    Read-only disk usage index.

    The index is a JSON document listing one or more indexed roots, each a
    tree of records carrying precomputed sizes under every metric::

        {"roots": [{"path": "/home", "type": "directory",
                    "size": {"actual": 4096, "apparent": 1200, "count": 3},
                    "children": [...]}]}

    """

    def __init__(self, roots: list[tuple[str, Entry]], source: str = "<memory>"):
        self.source = source
        self._roots = sorted(roots, key=lambda r: len(r[0]), reverse=True)

    @classmethod
    def from_dict(cls, data: dict, source: str = "<memory>") -> Database:
        """Build a database from an already decoded index document."""
        if not isinstance(data, dict) or not isinstance(data.get("roots"), list):
            raise DatabaseError(f"{source}: index document has no 'roots' list")
        roots = []
        for root in data["roots"]:
            if not isinstance(root, dict) or not isinstance(root.get("path"), str):
                raise DatabaseError(f"{source}: index root without a path")
            path = _normalize_path(root["path"])
            entry = _parse_entry(root, name=os.path.basename(path) or path)
            if not entry.is_dir:
                raise DatabaseError(f"{source}: index root '{path}' is not a directory")
            roots.append((path, entry))
        logger.debug("Loaded %d indexed root(s) from %s", len(roots), source)
        return cls(roots, source)

    @classmethod
    def load(cls, path: str | Path) -> Database:
        """
        Open an index file.

        Args:
            path (str | Path):
                Path to the JSON index.

        Returns:
            Database:
                The loaded index.

        Raises:
            DatabaseError: If the file cannot be read or parsed.

        """
        path = Path(path)
        logger.debug("Opening index %s", path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise DatabaseError(f"Index file {path} does not exist") from e
        except OSError as e:
            raise DatabaseError(f"Could not read index file {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise DatabaseError(f"Index file {path} is not valid JSON: {e}") from e
        return cls.from_dict(data, str(path))

    def roots(self) -> list[str]:
        """Return the indexed root paths, sorted by name."""
        return sorted(path for path, _ in self._roots)

    def open_dir(self, path: str) -> DirHandle:
        """
        Open a handle on an indexed directory.

        Args:
            path (str):
                Directory path; relative paths are resolved against the
                current working directory.

        Returns:
            DirHandle:
                Handle on the directory.

        Raises:
            PathNotFoundError: If no indexed directory has that path.

        """
        target = _normalize_path(path)
        for root_path, root_entry in self._roots:
            if target == root_path:
                return DirHandle(target, root_entry)
            prefix = root_path.rstrip(os.sep) + os.sep
            if not target.startswith(prefix):
                continue
            entry: Entry | None = root_entry
            for part in target[len(prefix) :].split(os.sep):
                entry = next(
                    (c for c in entry.children if c.is_dir and c.name == part), None
                )
                if entry is None:
                    break
            if entry is not None:
                return DirHandle(target, entry)
        raise PathNotFoundError(path)


@dataclass
class Measurement:
    """Result of the measuring pass over one directory.

    Attributes:
        max_size (int):
            Largest entry size under the active metric (0 when empty).
        max_width (int):
            Widest entry name in terminal columns, plus one for the
            classification character when enabled.
        count (int):
            Number of entries that will be listed.

    """

    max_size: int = 0
    max_width: int = 0
    count: int = 0


@dataclass
class RenderContext:
    """
    Mutable state of one render pass, passed down the recursion.

    Attributes:
        options (RenderOptions):
            Listing options.
        out (TextIO):
            Stream receiving the rendered lines.
        codes (list[Connector]):
            Connector code per depth; grown on demand up to MAX_DEPTH + 1.
        path (str):
            Accumulated ancestor path used in full-path mode.

    """

    options: RenderOptions
    out: TextIO
    codes: list[Connector] = field(default_factory=list)
    path: str = ""

    def set_code(self, depth: int, code: Connector) -> None:
        while len(self.codes) <= depth:
            self.codes.append(Connector.NONE)
        self.codes[depth] = code

    def trail(self) -> str:
        """Glyphs of every depth up to the first one without a connector."""
        glyphs = self.options.glyphs
        parts = []
        for code in self.codes:
            if code is Connector.NONE:
                break
            parts.append(glyphs[code])
        return "".join(parts)

    def push_path(self, name: str) -> int:
        """
        Append ``name/`` to the accumulated path if it fits.

        Args:
            name (str):
                Name of the directory being entered.

        Returns:
            int:
                Length of the path before the append, to pass to pop_path.

        """
        saved = len(self.path)
        segment = name + "/"
        if saved + len(segment) < PATH_CAPACITY:
            self.path += segment
        else:
            logger.debug("Path buffer full, not appending '%s'", name)
        return saved

    def pop_path(self, saved: int) -> None:
        self.path = self.path[:saved]


def _included(entry: Entry, options: RenderOptions) -> bool:
    return not options.dirs_only or entry.is_dir


def iter_entries(
    handle: DirHandle,
    options: RenderOptions,
    include: Callable[[Entry], bool] | None = None,
) -> Iterator[Entry]:
    """Yield the remaining entries of a handle that pass the filter."""
    keep = include if include is not None else partial(_included, options=options)
    while True:
        entry = handle.read(options.metric, options.sort)
        if entry is None:
            return
        if keep(entry):
            yield entry


def measure_dir(
    handle: DirHandle,
    options: RenderOptions,
    include: Callable[[Entry], bool] | None = None,
) -> Measurement:
    """
    Measure the entries of a directory before they are printed.

    Args:
        handle (DirHandle):
            Handle positioned at its first entry.
        options (RenderOptions):
            Listing options; the active metric and filters apply.
        include (Callable[[Entry], bool] | None):
            Entry filter, defaulting to the directories-only filter.

    Returns:
        Measurement:
            Maximum size, maximum display width and listed entry count.

    """
    result = Measurement()
    for entry in iter_entries(handle, options, include):
        result.max_size = max(result.max_size, entry.size.get(options.metric))
        result.max_width = max(result.max_width, string_width(entry.name))
        result.count += 1
    if options.classify:
        result.max_width += 1
    return result


def size_color(size: int, max_size: int) -> str | None:
    """
    Pick the color band of a size relative to the largest sibling.

    Returns:
        str | None:
            "31" (red) from half of ``max_size``, "33" (yellow) from an
            eighth, None below that or when ``max_size`` is 0.

    """
    if max_size <= 0:
        return None
    if size >= max_size // 2:
        return "31"
    if size >= max_size // 8:
        return "33"
    return None


def size_bar(size: int, max_size: int, width: int) -> str:
    """Return ``width`` cells filled with '+' in proportion to size/max_size."""
    width = max(width, 0)
    filled = width * size // max_size if max_size > 0 else 0
    filled = min(max(filled, 0), width)
    return "+" * filled + " " * (width - filled)


def format_entry(
    entry: Entry,
    depth: int,
    measurement: Measurement,
    ctx: RenderContext,
    display_name: str | None = None,
) -> str:
    """
    Render the line of one entry.

    Args:
        entry (Entry):
            Entry to render.
        depth (int):
            Recursion depth of the entry (0 for the listed directory).
        measurement (Measurement):
            Measurement of the directory holding the entry.
        ctx (RenderContext):
            Current render context (connector trail and accumulated path).
        display_name (str | None):
            Name to print instead of ``entry.name``.

    Returns:
        str:
            The rendered line, without a trailing newline.

    """
    options = ctx.options
    size = entry.size.get(options.metric)
    color = size_color(size, measurement.max_size) if options.color else None

    size_str = format_size(size, options.metric, options.exact_bytes)
    size_str = f"{size_str:>{options.size_field_width}}"
    parts = [colored(size_str, color) if color else size_str]

    if options.recursive and not options.full_path:
        parts.append(ctx.trail())
    parts.append(" ")
    if options.full_path:
        parts.append(ctx.path)

    name = display_name if display_name is not None else entry.name
    parts.append(name)
    used = string_width(name) + 1
    if options.classify:
        parts.append(classify_char(entry.node_type))
        used += 1

    if options.graph:
        # Names wider than the measured column (lookup display names) get no padding.
        parts.append(" " * max(measurement.max_width + 1 - used, 0))
        bar_width = (
            options.width
            - measurement.max_width
            - options.size_field_width
            - GRAPH_MARGIN
            - 4 * (depth + 1)
        )
        bar = size_bar(size, measurement.max_size, bar_width)
        parts.append(f" [{colored(bar, color) if color else bar}]")

    return "".join(parts)


def render_dir(handle: DirHandle, depth: int, ctx: RenderContext) -> int:
    """
    Render the entries of one directory and, recursively, its subdirectories.

    The directory is read twice: once to measure its entries, once to print
    them. Connector codes for ``depth`` are set while iterating and reset to
    NONE before returning so that shallower levels see a clean trail.

    Args:
        handle (DirHandle):
            Open handle on the directory.
        depth (int):
            Recursion depth of the directory's entries.
        ctx (RenderContext):
            Render context shared by the whole pass.

    Returns:
        int:
            Number of lines rendered for the subtree.

    """
    options = ctx.options
    if depth > options.max_depth:
        return 0

    measurement = measure_dir(handle, options)
    handle.rewind()

    rendered = 0
    for n, entry in enumerate(iter_entries(handle, options)):
        is_last = n == measurement.count - 1
        if options.recursive:
            ctx.set_code(depth, Connector.FIRST if n == 0 else Connector.MIDDLE)
            if is_last:
                ctx.set_code(depth, Connector.LAST)

        print(format_entry(entry, depth, measurement, ctx), file=ctx.out)
        rendered += 1

        if not (options.recursive and entry.is_dir):
            continue
        if depth >= MAX_DEPTH:
            logger.debug("Maximum depth %d reached at '%s'", MAX_DEPTH, entry.name)
            continue

        ctx.set_code(depth, Connector.BLANK if is_last else Connector.VERTICAL)
        saved = ctx.push_path(entry.name) if options.full_path else None
        child = handle.open_child(entry)
        if child is not None:
            with child:
                rendered += render_dir(child, depth + 1, ctx)
        if saved is not None:
            ctx.pop_path(saved)

    ctx.set_code(depth, Connector.NONE)
    return rendered


def render_tree(
    handle: DirHandle, options: RenderOptions, out: TextIO | None = None
) -> int:
    """Render a whole directory with a fresh render context."""
    ctx = RenderContext(options, out if out is not None else sys.stdout)
    return render_dir(handle, 0, ctx)


def render_summary(
    path: str, handle: DirHandle, options: RenderOptions, out: TextIO | None = None
) -> None:
    """Print only the aggregate size of a directory followed by its path."""
    size = handle.get_size().get(options.metric)
    size_str = format_size(size, options.metric, options.exact_bytes)
    suffix = "/" if options.classify else ""
    print(f"{size_str} {path}{suffix}", file=out if out is not None else sys.stdout)


def render_lookup(
    handle: DirHandle,
    name: str,
    parent: str,
    options: RenderOptions,
    out: TextIO | None = None,
) -> int:
    """
    Render the entries of a directory whose name is exactly ``name``.

    Every matching entry is printed, so duplicate names in the index each get
    their own line. Matching directories are listed below their line when
    recursive mode is on.

    Args:
        handle (DirHandle):
            Open handle on the parent directory.
        name (str):
            Entry name to look for (case-sensitive).
        parent (str):
            Parent path as given by the user, used in directory and
            full-path mode.
        options (RenderOptions):
            Listing options.
        out (TextIO | None):
            Output stream (defaults to stdout).

    Returns:
        int:
            Number of matching entries.

    """
    ctx = RenderContext(options, out if out is not None else sys.stdout)

    def matches(entry: Entry) -> bool:
        return entry.name == name

    measurement = measure_dir(handle, options, matches)
    handle.rewind()

    display_name = None
    if options.directory:
        display_name = f"{parent.rstrip('/')}/{name}"
    elif options.full_path:
        ctx.push_path(parent.rstrip("/"))

    found = 0
    for n, entry in enumerate(iter_entries(handle, options, matches)):
        print(format_entry(entry, 0, measurement, ctx, display_name), file=ctx.out)
        found += 1

        if not (options.recursive and entry.is_dir):
            continue
        is_last = n == measurement.count - 1
        ctx.set_code(0, Connector.BLANK if is_last else Connector.VERTICAL)
        saved = ctx.push_path(entry.name) if options.full_path else None
        child = handle.open_child(entry)
        if child is not None:
            with child:
                render_dir(child, 1, ctx)
        if saved is not None:
            ctx.pop_path(saved)
        # Matched lines themselves never carry a connector.
        ctx.set_code(0, Connector.NONE)

    return found


class ErrorQueue:
    """FIFO of target paths that could not be resolved in the index."""

    def __init__(self):
        self._items: deque[str] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def enqueue(self, path: str) -> None:
        self._items.append(path)

    def dequeue(self) -> str | None:
        """Remove and return the oldest path, or None if the queue is empty."""
        if not self._items:
            return None
        return self._items.popleft()

    def is_empty(self) -> bool:
        return not self._items


def is_regular_file(path: str) -> bool:
    """Check the real filesystem (not the index) for a regular file."""
    return os.path.isfile(path)


def drain_errors(queue: ErrorQueue) -> int:
    """
    Report every queued path, oldest first.

    Args:
        queue (ErrorQueue):
            Queue of unresolved paths; empty on return.

    Returns:
        int:
            Number of paths reported.

    """
    reported = 0
    while not queue.is_empty():
        path = queue.dequeue()
        kind = "file" if is_regular_file(path) else "path"
        logger.error(f"The requested {kind} '{path}' was not found in the index.")
        logger.info("Run 'pyduls --info' for a list of indexed directories.")
        reported += 1
    return reported


def lookup_file(
    db: Database,
    path: str,
    options: RenderOptions,
    errors: ErrorQueue,
    out: TextIO | None = None,
) -> None:
    """
    List a single file by scanning its parent directory in the index.

    Raises:
        IndexInconsistencyError: If the parent directory of an existing file
            is missing from the index.

    """
    parent = os.path.dirname(path) or "."
    name = os.path.basename(path)
    try:
        handle = db.open_dir(parent)
    except PathNotFoundError as e:
        raise IndexInconsistencyError(
            f"The parent directory '{parent}' of '{path}' is not in the index."
        ) from e

    with handle:
        found = render_lookup(handle, name, parent, options, out)
    if not found:
        logger.debug(f"No entry named '{name}' in '{parent}'")
        errors.enqueue(path)


def list_target(
    db: Database,
    path: str,
    options: RenderOptions,
    errors: ErrorQueue,
    out: TextIO | None = None,
) -> None:
    """
    List one command-line target.

    Directories are rendered from the index; existing regular files are looked
    up in their parent directory. Anything else is queued for the final error
    report.

    Args:
        db (Database):
            Open index.
        path (str):
            Target path as given on the command line.
        options (RenderOptions):
            Listing options.
        errors (ErrorQueue):
            Queue receiving unresolved targets.
        out (TextIO | None):
            Output stream (defaults to stdout).

    """
    try:
        handle = db.open_dir(path)
    except PathNotFoundError:
        if is_regular_file(path):
            lookup_file(db, path, options, errors, out)
        else:
            logger.debug(f"Deferring not-found report for '{path}'")
            errors.enqueue(path)
        return

    with handle:
        if options.directory:
            render_summary(path, handle, options, out)
        else:
            render_tree(handle, options, out)


def run(
    db: Database,
    targets: list[str],
    options: RenderOptions,
    out: TextIO | None = None,
) -> int:
    """
    List every target, then report those that could not be found.

    Args:
        db (Database):
            Open index.
        targets (list[str]):
            Paths to list, in command-line order.
        options (RenderOptions):
            Listing options.
        out (TextIO | None):
            Output stream (defaults to stdout).

    Returns:
        int:
            Number of targets that could not be resolved.

    Raises:
        IndexInconsistencyError: Propagated from single-file lookups.

    """
    errors = ErrorQueue()
    for target in targets:
        list_target(db, target, options, errors, out)
    # Diagnostics go to stderr; the listing must reach the terminal first.
    (out if out is not None else sys.stdout).flush()
    return drain_errors(errors)


def print_info(db: Database, options: RenderOptions, out: TextIO | None = None) -> None:
    """Print the aggregate size and entry count of every indexed root."""
    out = out if out is not None else sys.stdout
    print(f"Index: {db.source}", file=out)
    for path in db.roots():
        with db.open_dir(path) as handle:
            size = handle.get_size().get(options.metric)
            size_str = format_size(size, options.metric, options.exact_bytes)
            print(
                f"{size_str:>{options.size_field_width}} {path} ({handle.count()} entries)",
                file=out,
            )


CONFIG_SECTION = "ls"

CONFIG_KEYS: dict[str, type] = {
    "apparent": bool,
    "ascii": bool,
    "bytes": bool,
    "classify": bool,
    "color": bool,
    "count": bool,
    "database": str,
    "directory": bool,
    "dirs-only": bool,
    "full-path": bool,
    "graph": bool,
    "levels": int,
    "name-sort": bool,
    "recursive": bool,
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_config_value(key: str, value: str, path: Path) -> object | None:
    kind = CONFIG_KEYS[key]
    if kind is bool:
        lowered = value.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        logger.warning("Invalid boolean '%s' for '%s' in %s. Ignoring.", value, key, path)
        return None
    if kind is int:
        try:
            return int(value)
        except ValueError:
            logger.warning("Invalid integer '%s' for '%s' in %s. Ignoring.", value, key, path)
            return None
    return value


def load_config_from_file(path: Path) -> dict[str, object] | None:
    """Load option defaults from a config file.

    The file holds an ``ls:`` section followed by indented ``key: value``
    lines, keys being long option names::

        ls:
          recursive: true
          levels: 2

    Args:
        path (Path): Path to the config file.

    Returns:
        dict[str, object] | None: Defaults keyed by argparse destination, or
        None if the file does not exist or cannot be read.
    """
    if not path.exists():
        return None

    defaults: dict[str, object] = {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            current_section = None
            for line in f:
                original_line = line
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                # Section headers - assume they are not indented
                if line.endswith(":") and not original_line[0].isspace():
                    section = line[:-1].strip().lower()
                    if section != CONFIG_SECTION:
                        logger.warning(
                            "Unknown section '%s' in config file %s. Ignoring.",
                            section,
                            path,
                        )
                        current_section = None
                    else:
                        current_section = section
                    continue

                if current_section is None:
                    logger.warning(
                        "Line outside any section in %s: '%s'. Ignoring.", path, line
                    )
                    continue

                if ":" not in line:
                    logger.error(
                        "Invalid line in '%s' section of %s: '%s'. Expected format: 'key: value'",
                        current_section,
                        path,
                        line,
                    )
                    continue
                key, value = (part.strip() for part in line.split(":", 1))
                key = key.lower()
                if key not in CONFIG_KEYS:
                    logger.warning("Unknown option '%s' in %s. Ignoring.", key, path)
                    continue
                parsed = _parse_config_value(key, value, path)
                if parsed is not None:
                    defaults[key.replace("-", "_")] = parsed

    except OSError as e:
        logger.warning("Could not read %s file: %s", path, e)
        return None

    return defaults


def resolve_database_path(database: str | None) -> Path:
    """Pick the index file from --database, the environment, or the default."""
    chosen = database or os.environ.get(DATABASE_ENV) or DEFAULT_DATABASE
    return Path(chosen).expanduser()


def resolve_options(args: argparse.Namespace, stream: TextIO | None = None) -> RenderOptions:
    """
    Turn parsed arguments into render options for the given output stream.

    Color and terminal width detection only apply when the stream is a TTY.

    Args:
        args (argparse.Namespace):
            Parsed command-line arguments.
        stream (TextIO | None):
            Output stream (defaults to stdout).

    Returns:
        RenderOptions:
            The resolved options.

    """
    stream = stream if stream is not None else sys.stdout
    is_tty = stream.isatty()
    width = DEFAULT_WIDTH
    if is_tty:
        width = shutil.get_terminal_size((DEFAULT_WIDTH, 24)).columns
    return RenderOptions(
        metric=select_metric(args.count, args.apparent),
        sort=SortOrder.NAME if args.name_sort else SortOrder.SIZE,
        max_depth=args.levels,
        ascii=args.ascii,
        classify=args.classify,
        exact_bytes=args.bytes,
        color=args.color and is_tty,
        graph=args.graph,
        full_path=args.full_path,
        dirs_only=args.dirs_only,
        directory=args.directory,
        recursive=args.recursive,
        width=width,
    )


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser of the pyduls command."""
    parser = argparse.ArgumentParser(
        description=(
            "List the inclusive size of all files and directories on the given "
            "paths, as recorded in a disk usage index. If no path is given the "
            "current working directory is listed."
        ),
    )
    parser.add_argument(
        "paths",
        nargs="*",
        metavar="PATH",
        help="Paths to list (default: current directory)",
    )
    parser.add_argument(
        "-a",
        "--apparent",
        action="store_true",
        help="Show apparent instead of actual file size",
    )
    parser.add_argument(
        "--count",
        action="store_true",
        help="Show number of files instead of file size",
    )
    parser.add_argument(
        "--ascii",
        action="store_true",
        help="Use ASCII characters instead of UTF-8 to draw the tree",
    )
    parser.add_argument(
        "-b",
        "--bytes",
        action="store_true",
        help="Show file size in exact number of bytes",
    )
    parser.add_argument(
        "-F",
        "--classify",
        action="store_true",
        help="Append file type indicator (one of */@|=) to entries",
    )
    parser.add_argument(
        "-c",
        "--color",
        action="store_true",
        help="Colorize output (only on ttys)",
    )
    parser.add_argument(
        "-d",
        "--database",
        default=None,
        help=f"Index file to use (default: ${DATABASE_ENV} or {DEFAULT_DATABASE})",
    )
    parser.add_argument(
        "-D",
        "--directory",
        action="store_true",
        help="Show the path itself, not its contents",
    )
    parser.add_argument(
        "--dirs-only",
        action="store_true",
        help="List only directories, skip individual files",
    )
    parser.add_argument(
        "--full-path",
        action="store_true",
        help="Show full path instead of tree in recursive view",
    )
    parser.add_argument(
        "-g",
        "--graph",
        action="store_true",
        help="Draw graph with relative size for each entry",
    )
    parser.add_argument(
        "-l",
        "--levels",
        type=int,
        default=DEFAULT_LEVELS,
        help=f"Traverse up to this many levels deep (default: {DEFAULT_LEVELS})",
    )
    parser.add_argument(
        "-n",
        "--name-sort",
        action="store_true",
        help="Sort output by name instead of by size",
    )
    parser.add_argument(
        "-R",
        "--recursive",
        action="store_true",
        help="Recursively list subdirectories",
    )
    parser.add_argument(
        "--info",
        action="store_true",
        help="List the directories recorded in the index and exit",
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_FILENAME,
        help=f"Config file with option defaults (default: {DEFAULT_CONFIG_FILENAME})",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser


def setup_logging(verbose: bool, stream: TextIO | None = None) -> None:
    """Attach the stderr handler once and set the log level.

    Level colors are only used when the handler writes to a terminal.
    """
    if not logger.handlers:
        handler = logging.StreamHandler(stream)
        formatter_class = ColorFormatter if handler.stream.isatty() else logging.Formatter
        handler.setFormatter(formatter_class("%(levelname)s: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the pyduls command-line tool.

    Args:
        argv (list[str] | None):
            Command-line arguments. If None, uses sys.argv.

    Returns:
        int:
            Exit code (0 when every target was listed, 1 otherwise).
    """
    parser = build_parser()

    # Config file defaults must be in place before the real parse.
    pre_args, _ = parser.parse_known_args(argv)
    setup_logging(pre_args.verbose)
    config = load_config_from_file(Path(pre_args.config).expanduser())
    if config:
        logger.debug(f"Config defaults: {config}")
        parser.set_defaults(**config)

    args = parser.parse_args(argv)
    if args.levels < 0:
        parser.error("--levels must not be negative")

    options = resolve_options(args)

    try:
        db = Database.load(resolve_database_path(args.database))
    except DatabaseError as e:
        logger.error(f"{e}")
        return 1

    if args.info:
        print_info(db, options)
        return 0

    try:
        unresolved = run(db, args.paths or ["."], options)
    except IndexInconsistencyError as e:
        logger.critical(f"{e}")
        return 1

    return 1 if unresolved else 0


if __name__ == "__main__":
    raise SystemExit(main())
