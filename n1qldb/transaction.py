"""
N1QL Transaction Support

@version 1.0.0
@author n1qldb Development Team
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, List, TYPE_CHECKING

from .types import NoActiveTransaction, TransactionError

if TYPE_CHECKING:
    from .client import N1QLClient
    from .config import ClientConfig
    from .rows import ResultStream
    from .types import ExecResult


_CLASSIFY_PREFIX = 64
_TOKEN_SPLIT = re.compile(r"[\s;]+")
_ROLLBACK_QUALIFIERS = {"work", "tran", "transaction"}


class TxStatement(Enum):
    NONE = "none"
    START = "start"
    COMMIT = "commit"
    ROLLBACK = "rollback"


def classify_statement(statement: str) -> TxStatement:
    """Classify a statement by its leading keyword."""
    tokens = [t for t in _TOKEN_SPLIT.split(statement[:_CLASSIFY_PREFIX].strip().lower()) if t]
    if not tokens:
        return TxStatement.NONE

    head, rest = tokens[0], tokens[1:]
    if head in ("begin", "start"):
        return TxStatement.START if rest else TxStatement.NONE
    if head == "commit":
        return TxStatement.COMMIT
    if head == "rollback":
        # "rollback to savepoint x" only unwinds part of the transaction
        if all(t in _ROLLBACK_QUALIFIERS for t in rest):
            return TxStatement.ROLLBACK
    return TxStatement.NONE


class TransactionContext:
    """The open transaction of a client and the endpoint it is pinned to."""

    def __init__(self):
        self.txid = ""
        self.endpoint = ""

    @property
    def active(self) -> bool:
        return self.txid != ""

    def set(self, txid: str, endpoint: str) -> None:
        self.txid = txid
        self.endpoint = endpoint

    def clear(self) -> None:
        self.txid = ""
        self.endpoint = ""

    def request_values(
        self,
        config: "ClientConfig",
        kind: TxStatement = TxStatement.NONE,
    ) -> Dict[str, str]:
        """Transaction form fields, empty ones omitted."""
        values = {}
        if self.active:
            values["txid"] = self.txid
        elif config.tx_implicit and kind is TxStatement.NONE:
            values["tximplicit"] = "true"

        if config.tx_timeout and (values or kind is TxStatement.START):
            values["txtimeout"] = config.tx_timeout
        return values

    def __repr__(self) -> str:
        return f"TransactionContext(txid={self.txid!r}, endpoint={self.endpoint!r})"


class Transaction:
    """
    Handle on the transaction a client has open.

    Every statement goes through the client, which routes it to the
    endpoint the transaction was started on.

    Example:
        async with client.transaction() as tx:
            await tx.execute("INSERT INTO default (KEY, VALUE) VALUES (?, ?)", "k1", {"a": 1})
            savepoint = await tx.savepoint("sp1")
            try:
                await tx.execute("UPDATE default SET a = 2 WHERE META().id = 'k1'")
            except Exception:
                await tx.rollback_to(savepoint)
    """

    def __init__(self, client: "N1QLClient", txid: str):
        self._client = client
        self.txid = txid
        self._savepoints: List[str] = []

    @property
    def is_active(self) -> bool:
        """Check if this transaction is still the client's open one."""
        return self._client.txid == self.txid and self.txid != ""

    def _check_active(self) -> None:
        if not self.is_active:
            raise NoActiveTransaction("No active transaction")

    async def commit(self) -> None:
        """Commit the transaction."""
        self._check_active()
        await self._client.commit()
        self._savepoints.clear()

    async def rollback(self) -> None:
        """Rollback the transaction."""
        self._check_active()
        await self._client.rollback()
        self._savepoints.clear()

    async def savepoint(self, name: str) -> str:
        """Create a savepoint."""
        self._check_active()
        await self._client.execute(f"SAVEPOINT {name}")
        self._savepoints.append(name)
        return name

    async def rollback_to(self, savepoint: str) -> None:
        """Rollback to a savepoint."""
        self._check_active()

        if savepoint not in self._savepoints:
            raise TransactionError(f"Unknown savepoint: {savepoint}")

        await self._client.execute(f"ROLLBACK TRANSACTION TO SAVEPOINT {savepoint}")

        # Remove savepoints created after this one
        idx = self._savepoints.index(savepoint)
        self._savepoints = self._savepoints[:idx + 1]

    async def execute(self, statement: str, *args: Any) -> "ExecResult":
        """Execute a statement within the transaction."""
        self._check_active()
        return await self._client.execute(statement, *args)

    async def query(self, statement: str, *args: Any) -> "ResultStream":
        """Run a query within the transaction."""
        self._check_active()
        return await self._client.query(statement, *args)

    def __repr__(self) -> str:
        return f"Transaction(txid={self.txid!r}, active={self.is_active})"
