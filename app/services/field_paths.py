"""
Step field path model.

A field path addresses one node in a step's value tree. It is an ordered list
of text segments; each segment is a field id, a choice-option id, or a decimal
array index into a repeatable group.

Paths cross storage and form boundaries as a single token:

    ("trucks", "0", "loading_photo")  <->  "trucks.0.loading_photo"

Every segment is percent-escaped before joining, so ids containing ".",
":" or "~" survive the round trip. The empty segment is written as "~".

Tree operations (get_value / set_value / remove_value) never raise:
intermediate nodes of the wrong shape are replaced by the container the
next segment needs (list before an index segment, dict otherwise).
A repeatable group holds at most MAX_GROUP_ITEMS items: set_value ignores a
write whose index falls outside that range and leaves the tree untouched.

Usage:
    from app.services.field_paths import FieldPath, get_value, set_value

    path = FieldPath.of("trucks", 0, "truck_number")
    set_value(values, path, "DXB-1234")
    token = path.encode()
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)

SEPARATOR = "."
_EMPTY_SEGMENT = "~"
_INDEX_RE = re.compile(r"^[0-9]+$")

# Largest number of items a write may grow a repeatable group to.
MAX_GROUP_ITEMS = 500


def is_index_segment(segment) -> bool:
    """True when *segment* addresses an item of a repeatable group."""
    return isinstance(segment, str) and bool(_INDEX_RE.match(segment))


def _index_of(segment: str) -> int | None:
    """Integer index for *segment*, or None when outside the group bound."""
    if not is_index_segment(segment) or len(segment) > len(str(MAX_GROUP_ITEMS)):
        return None
    index = int(segment)
    return index if index < MAX_GROUP_ITEMS else None


def _encode_segment(segment: str) -> str:
    if segment == "":
        return _EMPTY_SEGMENT
    return quote(segment, safe="").replace(".", "%2E").replace("~", "%7E")


def _decode_segment(token: str) -> str:
    if token == _EMPTY_SEGMENT:
        return ""
    return unquote(token)


@dataclass(frozen=True)
class FieldPath:
    """Immutable, hashable address into a value tree."""

    segments: tuple[str, ...] = ()

    @classmethod
    def of(cls, *segments) -> FieldPath:
        """Build a path; integer segments become index segments."""
        return cls(tuple(str(s) for s in segments))

    @classmethod
    def coerce(cls, path) -> FieldPath:
        """Accept a FieldPath, an encoded token or any iterable of segments."""
        if isinstance(path, FieldPath):
            return path
        if isinstance(path, str):
            return cls.decode(path)
        return cls.of(*path)

    @classmethod
    def decode(cls, token: str) -> FieldPath:
        if not token:
            return cls()
        return cls(tuple(_decode_segment(part) for part in token.split(SEPARATOR)))

    def encode(self) -> str:
        return SEPARATOR.join(_encode_segment(s) for s in self.segments)

    def child(self, *segments) -> FieldPath:
        return FieldPath(self.segments + tuple(str(s) for s in segments))

    def item(self, index: int) -> FieldPath:
        return self.child(str(index))

    @property
    def parent(self) -> FieldPath:
        return FieldPath(self.segments[:-1])

    @property
    def leaf(self) -> str | None:
        return self.segments[-1] if self.segments else None

    def __len__(self) -> int:
        return len(self.segments)

    def __iter__(self):
        return iter(self.segments)

    def __str__(self) -> str:
        return self.encode()


def encode_field_path(segments) -> str:
    return FieldPath.of(*segments).encode()


def decode_field_path(token: str) -> list[str]:
    return list(FieldPath.decode(token).segments)


# ── Form keys ────────────────────────────────────────────────────────────────

FIELD_INPUT_PREFIX = "field:"
FIELD_REMOVAL_PREFIX = "field-remove:"


def field_input_name(path) -> str:
    return FIELD_INPUT_PREFIX + FieldPath.coerce(path).encode()


def field_removal_name(path) -> str:
    return FIELD_REMOVAL_PREFIX + FieldPath.coerce(path).encode()


# ── Tree operations ──────────────────────────────────────────────────────────

def get_value(tree, path):
    """Value at *path*, or None when any step of the walk is missing."""
    current = tree
    for segment in FieldPath.coerce(path):
        if isinstance(current, list):
            index = _index_of(segment)
            if index is None or index >= len(current):
                return None
            current = current[index]
        elif isinstance(current, dict):
            if segment not in current:
                return None
            current = current[segment]
        else:
            return None
    return current


def _container_for(next_segment: str):
    return [] if is_index_segment(next_segment) else {}


def _ensure_slot(items: list, index: int) -> None:
    while len(items) <= index:
        items.append({})


def set_value(tree: dict, path, value) -> dict:
    """Write *value* at *path*, creating containers on demand.

    A node whose shape does not fit the next segment is replaced, discarding
    what it held. Returns *tree* so calls can be chained.
    """
    segments = FieldPath.coerce(path).segments
    if not segments or not isinstance(tree, dict):
        return tree
    # Digit segments after the first always index into a list.
    if any(is_index_segment(s) and _index_of(s) is None for s in segments[1:]):
        logger.debug("Ignoring write past group bound: %s", FieldPath(segments).encode())
        return tree

    current = tree
    for position, segment in enumerate(segments):
        last = position == len(segments) - 1
        if isinstance(current, list):
            # Parent created this list because the segment is an index.
            index = _index_of(segment)
            _ensure_slot(current, index)
            if last:
                current[index] = value
                return tree
            wanted = _container_for(segments[position + 1])
            if type(current[index]) is not type(wanted):
                current[index] = wanted
            current = current[index]
            continue

        if last:
            current[segment] = value
            return tree
        wanted = _container_for(segments[position + 1])
        if type(current.get(segment)) is not type(wanted):
            current[segment] = wanted
        current = current[segment]
    return tree


def remove_value(tree, path) -> None:
    """Delete the node at *path*; list items are spliced out."""
    segments = FieldPath.coerce(path).segments
    if not segments:
        return
    parent = get_value(tree, FieldPath(segments[:-1]))
    last = segments[-1]
    if isinstance(parent, list):
        index = _index_of(last)
        if index is not None and index < len(parent):
            del parent[index]
    elif isinstance(parent, dict):
        parent.pop(last, None)
