"""
n1qldb: N1QL query service client for Python

An async client library for the Couchbase N1QL query service.

Features:
- Async-first design with aiohttp
- Cluster endpoint discovery and failover across query nodes
- Prepared statements with named-plan fallback
- Transactions pinned to a single query node
- Streaming row decode

Example:
    >>> import asyncio
    >>> import n1qldb
    >>>
    >>> async def main():
    ...     client = await n1qldb.open("http://localhost:8091")
    ...     async with client:
    ...         rows = await client.query("SELECT name, abv FROM `beer-sample` LIMIT 10")
    ...         while await rows.next():
    ...             abv, name = rows.scan(float, str)
    ...             print(name, abv)
    >>>
    >>> asyncio.run(main())

@version 1.0.0
@author n1qldb Development Team
"""

from .client import N1QLClient, open, open_extended
from .config import ClientConfig, Network, TLSOptions, VERSION
from .rows import ResultStream, StreamState
from .statement import PreparedStatement
from .transaction import Transaction, TxStatement, classify_statement
from .types import (
    Row,
    Value,
    ValueKind,
    ExecResult,
    N1QLError,
    ConnectionError,
    ConnectionExhausted,
    ConnectionClosed,
    AuthenticationError,
    QueryError,
    PrepareFailed,
    InternalNoPlanReturned,
    InvalidPreparedStatement,
    ArgumentCountMismatch,
    DecodeMalformed,
    ScanError,
    ScanTypeMismatch,
    ScanInsufficientColumns,
    TransactionError,
    NoActiveTransaction,
    TransactionsUnsupported,
    strip_url,
)

__version__ = VERSION
__all__ = [
    "open",
    "open_extended",
    "N1QLClient",
    "ClientConfig",
    "Network",
    "TLSOptions",
    "ResultStream",
    "StreamState",
    "PreparedStatement",
    "Transaction",
    "TxStatement",
    "classify_statement",
    "Row",
    "Value",
    "ValueKind",
    "ExecResult",
    "N1QLError",
    "ConnectionError",
    "ConnectionExhausted",
    "ConnectionClosed",
    "AuthenticationError",
    "QueryError",
    "PrepareFailed",
    "InternalNoPlanReturned",
    "InvalidPreparedStatement",
    "ArgumentCountMismatch",
    "DecodeMalformed",
    "ScanError",
    "ScanTypeMismatch",
    "ScanInsufficientColumns",
    "TransactionError",
    "NoActiveTransaction",
    "TransactionsUnsupported",
    "strip_url",
]
