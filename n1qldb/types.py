"""
N1QL Database Type Definitions

Error taxonomy, decoded JSON values and result containers.

@version 1.0.0
@author n1qldb Development Team
"""

from __future__ import annotations

import json
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlsplit


class N1QLError(Exception):
    """Base exception for n1qldb client errors."""
    pass


class ConnectionError(N1QLError):
    """Connection-related errors."""
    pass


class ConnectionExhausted(ConnectionError):
    """Every query endpoint failed at the transport level."""
    pass


class ConnectionClosed(ConnectionError):
    """The client has already been closed."""
    pass


class AuthenticationError(N1QLError):
    """Authentication-related errors."""
    pass


class QueryError(N1QLError):
    """
    Statement execution errors.

    Carries the HTTP status, the server ``errors`` array and, for exec
    requests, the partially valid result. Raw requests keep the unread
    response on ``response``.
    """

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        errors: Optional[List[Any]] = None,
        result: Optional["ExecResult"] = None,
        response: Any = None,
    ):
        super().__init__(message)
        self.status = status
        self.errors = errors or []
        self.result = result
        self.response = response


class PrepareFailed(QueryError):
    """The server reported errors while preparing a statement."""
    pass


class InternalNoPlanReturned(N1QLError):
    """PREPARE succeeded but no usable plan came back."""
    pass


class InvalidPreparedStatement(N1QLError):
    """The prepared statement has no plan body."""
    pass


class ArgumentCountMismatch(N1QLError):
    """Fewer arguments than positional placeholders."""
    pass


class DecodeMalformed(N1QLError):
    """Response body is not a valid JSON envelope."""
    pass


class ScanError(N1QLError):
    """Scan() could not map the current row."""
    pass


class ScanTypeMismatch(ScanError):
    pass


class ScanInsufficientColumns(ScanError):
    pass


class TransactionError(N1QLError):
    """Transaction state errors."""
    pass


class NoActiveTransaction(TransactionError):
    pass


class TransactionsUnsupported(TransactionError):
    pass


def _is_symbol_or_punct(ch: str) -> bool:
    return unicodedata.category(ch)[0] in ("S", "P")


def strip_url(message: str) -> str:
    """
    Mask the password of the first credentialed URL in ``message``.

    The password is matched by its decoded length, so a percent-encoded
    password leaves residue behind; the pass is repeated once per symbol
    or punctuation character it contained.
    """
    start = message.find("http")
    if start < 0:
        return message

    end = message.find(" ", start)
    if end < 0:
        end = len(message)

    try:
        parts = urlsplit(message[start:end])
        raw_password = parts.password
    except ValueError:
        return message
    if raw_password is None:
        return message

    username = parts.username or ""
    password = unquote(raw_password)

    num = sum(1 for ch in password if _is_symbol_or_punct(ch) and ch != "*")

    idx = message.find("//" + username + ":", start)
    if idx < 0:
        return message
    idx += len(username) + 3
    message = message[:idx] + "*" + message[idx + len(password):]

    while num > 0:
        num -= 1
        message = strip_url(message)

    return message


def serialize_errors(errors: Any) -> str:
    """Merge a server ``errors`` array into one readable message."""
    parts = []
    if isinstance(errors, list):
        for e in errors:
            if isinstance(e, dict):
                msg = e.get("msg")
                if msg:
                    parts.append(f"Code : {e.get('code')} Message : {msg}")

    if parts:
        return " ".join(parts)
    return f" Error {errors} {type(errors).__name__}"


class ValueKind(Enum):
    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


@dataclass(frozen=True)
class Value:
    """
    A decoded JSON value tagged with its kind.

    Example:
        >>> Value.from_json([1, 2, 3]).to_json()
        '[1,2,3]'
    """
    kind: ValueKind
    data: Any = None

    @classmethod
    def from_json(cls, data: Any) -> "Value":
        if data is None:
            return cls(ValueKind.NULL)
        # bool is an int subclass, test it first
        if isinstance(data, bool):
            return cls(ValueKind.BOOL, data)
        if isinstance(data, (int, float)):
            return cls(ValueKind.NUMBER, data)
        if isinstance(data, str):
            return cls(ValueKind.STRING, data)
        if isinstance(data, list):
            return cls(ValueKind.ARRAY, data)
        if isinstance(data, dict):
            return cls(ValueKind.OBJECT, data)
        raise DecodeMalformed(f"N1QL: Unsupported JSON value {data!r}")

    @property
    def is_null(self) -> bool:
        return self.kind is ValueKind.NULL

    def to_python(self) -> Any:
        return self.data

    def to_json(self) -> str:
        """Compact JSON text with sorted object keys."""
        return json.dumps(
            self.data, separators=(",", ":"), sort_keys=True, ensure_ascii=False
        )

    def __repr__(self) -> str:
        return f"Value({self.kind.value}, {self.data!r})"


@dataclass
class Row:
    """
    A single row from a query result.

    Supports both dict-like and attribute access.
    """
    _data: Dict[str, Any]

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return self._data.get(name)

    def __iter__(self):
        return iter(self._data.values())

    def __len__(self):
        return len(self._data)

    def keys(self):
        return self._data.keys()

    def values(self):
        return self._data.values()

    def items(self):
        return self._data.items()

    def to_dict(self) -> Dict[str, Any]:
        return self._data.copy()

    def __repr__(self) -> str:
        return f"Row({self._data})"


@dataclass
class ExecResult:
    """Result of a statement that returns no rows."""
    rows_affected: int = 0
    last_insert_id: int = 0
