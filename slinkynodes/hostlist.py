"""Expansion and compression of Slurm host lists such as ``node[1-3,5],login``."""

from __future__ import annotations

import re
from typing import Iterable, Iterator

_NUMBERED_RE = re.compile(r"(.*?)([0-9]+)")


def _split_top_level(text: str) -> Iterator[str]:
    """Split on commas that are not inside brackets."""
    depth = 0
    start = 0
    for position, char in enumerate(text):
        if char == "[":
            depth += 1
            if depth > 1:
                raise ValueError(f"nested brackets in hostlist {text!r}")
        elif char == "]":
            depth -= 1
            if depth < 0:
                raise ValueError(f"unbalanced brackets in hostlist {text!r}")
        elif char == "," and depth == 0:
            yield text[start:position]
            start = position + 1
    if depth != 0:
        raise ValueError(f"unbalanced brackets in hostlist {text!r}")
    yield text[start:]


def _expand_ranges(body: str) -> list[str]:
    values: list[str] = []
    for part in body.split(","):
        part = part.strip()
        if not part:
            raise ValueError(f"empty range in [{body}]")
        low, dash, high = part.partition("-")
        if not low.isdigit() or (dash and not high.isdigit()):
            raise ValueError(f"invalid range {part!r}")
        if not dash:
            values.append(low)
            continue
        start, end = int(low), int(high)
        if end < start:
            raise ValueError(f"descending range {part!r}")
        width = len(low)
        values.extend(str(number).zfill(width) for number in range(start, end + 1))
    return values


def _expand_item(item: str) -> list[str]:
    open_at = item.find("[")
    if open_at < 0:
        if "]" in item:
            raise ValueError(f"unbalanced brackets in {item!r}")
        return [item]
    close_at = item.find("]", open_at)
    if close_at < 0:
        raise ValueError(f"unbalanced brackets in {item!r}")
    prefix = item[:open_at]
    if "]" in prefix:
        raise ValueError(f"unbalanced brackets in {item!r}")
    values = _expand_ranges(item[open_at + 1 : close_at])
    suffixes = _expand_item(item[close_at + 1 :])
    return [f"{prefix}{value}{suffix}" for value in values for suffix in suffixes]


def expand(hostlist: str) -> list[str]:
    """Return the host names a hostlist expression stands for, in order.

    Raises ValueError for a malformed expression.
    """
    names: list[str] = []
    for item in _split_top_level(hostlist):
        item = item.strip()
        if item:
            names.extend(_expand_item(item))
    return names


def _runs(numbers: list[int]) -> Iterator[tuple[int, int]]:
    start = previous = numbers[0]
    for number in numbers[1:]:
        if number != previous + 1:
            yield start, previous
            start = number
        previous = number
    yield start, previous


def compress(names: Iterable[str]) -> str:
    """Return a hostlist expression covering ``names``, grouped by prefix."""
    groups: dict[tuple, set[int]] = {}
    for name in names:
        match = _NUMBERED_RE.fullmatch(name)
        if match is None:
            groups.setdefault(("plain", name), set())
            continue
        prefix, digits = match.groups()
        width = len(digits) if len(digits) > 1 and digits.startswith("0") else 0
        groups.setdefault(("numbered", prefix, width), set()).add(int(digits))

    parts: list[str] = []
    for key, numbers in groups.items():
        if key[0] == "plain":
            parts.append(key[1])
            continue
        _, prefix, width = key

        def fmt(number: int, width: int = width) -> str:
            return str(number).zfill(width)

        ordered = sorted(numbers)
        if len(ordered) == 1:
            parts.append(f"{prefix}{fmt(ordered[0])}")
            continue
        ranges = [
            fmt(low) if low == high else f"{fmt(low)}-{fmt(high)}"
            for low, high in _runs(ordered)
        ]
        parts.append(f"{prefix}[{','.join(ranges)}]")
    return ",".join(parts)