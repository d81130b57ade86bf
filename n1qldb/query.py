"""
N1QL Argument Encoding

Rewrites ``?`` placeholders into positional ``$n`` markers and serializes
arguments into the text form the query service expects.

@version 1.0.0
@author n1qldb Development Team
"""

from __future__ import annotations

import json
import re
from typing import Any, List, Sequence, Tuple

from .types import ArgumentCountMismatch


_PLACEHOLDER = re.compile(r"\?")
_MARKER = re.compile(r"\$(\d+)")


def prepare_query(query: str) -> Tuple[str, int]:
    """
    Replace each ``?`` with ``$1``, ``$2``, ...

    Returns:
        The rewritten text and the number of substitutions
    """
    count = 0

    def _next_marker(_match: re.Match) -> str:
        nonlocal count
        count += 1
        return f"${count}"

    return _PLACEHOLDER.sub(_next_marker, query), count


def encode_arg(arg: Any) -> str:
    """Serialize one argument to its wire text."""
    if isinstance(arg, str):
        # quoted, never escaped
        return f'"{arg}"'
    if isinstance(arg, (bytes, bytearray)):
        return bytes(arg).decode("utf-8")
    if isinstance(arg, bool):
        return "true" if arg else "false"
    if arg is None:
        return "null"
    if isinstance(arg, (dict, list, tuple)):
        return json.dumps(arg, separators=(",", ":"))
    return str(arg)


def build_positional_arg_list(args: Sequence[Any]) -> str:
    """Render ``args`` as a JSON array text, or ``""`` when empty."""
    if not args:
        return ""
    return "[" + ",".join(encode_arg(a) for a in args) + "]"


def prepare_positional_args(
    query: str,
    arg_count: int,
    args: Sequence[Any],
) -> Tuple[str, List[Any]]:
    """
    Inline the first ``arg_count`` arguments in place of their markers.

    Returns:
        The rewritten text and the left-over arguments, in order
    """
    inline = [encode_arg(a) for a in args[:arg_count]]
    extra = list(args[arg_count:])

    def _substitute(match: re.Match) -> str:
        pos = int(match.group(1))
        if 1 <= pos <= len(inline):
            return inline[pos - 1]
        return match.group(0)

    return _MARKER.sub(_substitute, query), extra


def encode_statement(query: str, args: Sequence[Any]) -> Tuple[str, List[Any]]:
    """
    Encode an ad-hoc statement and its arguments.

    Raises:
        ArgumentCountMismatch: If fewer arguments than placeholders are given
    """
    if not args:
        return query, []

    query, arg_count = prepare_query(query)
    if len(args) < arg_count:
        raise ArgumentCountMismatch(
            f"Argument count mismatch {arg_count} != {len(args)}"
        )
    return prepare_positional_args(query, arg_count, args)
