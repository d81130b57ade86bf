"""
N1QL Prepared Statements

@version 1.0.0
@author n1qldb Development Team
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, TypeVar, TYPE_CHECKING

from .query import build_positional_arg_list
from .transaction import TxStatement
from .types import ArgumentCountMismatch, InvalidPreparedStatement, N1QLError

if TYPE_CHECKING:
    import aiohttp

    from .client import N1QLClient
    from .rows import ResultStream
    from .types import ExecResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PreparedStatement:
    """
    A statement the server has prepared.

    Requests reference the plan by its server-assigned name when there is
    one. If the server no longer knows that name the statement falls back,
    once, to sending the full plan.

    Not safe for concurrent use: the fallback clears ``name`` in place.

    Example:
        stmt = await client.prepare("SELECT name FROM `beer-sample` WHERE abv > ?")
        rows = await stmt.query(5.0)
    """

    def __init__(
        self,
        client: "N1QLClient",
        *,
        name: str,
        prepared: str,
        signature: str = "",
        arg_count: int = 0,
        kind: TxStatement = TxStatement.NONE,
    ):
        self._client = client
        self.name = name
        self.prepared = prepared
        self.signature = signature
        self.arg_count = arg_count
        self.kind = kind

    @property
    def num_input(self) -> int:
        return self.arg_count

    def _request_values(self, args: Sequence[Any]) -> Dict[str, str]:
        values = {}
        # use the named plan if possible
        if self.name:
            values["prepared"] = f'"{self.name}"'
        else:
            values["prepared"] = self.prepared

        if len(args) < self.num_input:
            raise ArgumentCountMismatch(
                "N1QL: Insufficient args. Prepared statement contains positional args"
            )

        positional = build_positional_arg_list(args)
        if positional:
            values["args"] = positional
        return values

    async def _run(
        self,
        args: Sequence[Any],
        perform: Callable[[Dict[str, str], TxStatement], Awaitable[T]],
    ) -> T:
        if not self.prepared:
            raise InvalidPreparedStatement("N1QL: Prepared statement not found")
        self._client._check_open()

        values = self._request_values(args)
        try:
            return await perform(values, self.kind)
        except N1QLError as e:
            if not self.name:
                raise
            if getattr(e, "response", None) is not None:
                e.response.release()
            # the server may have evicted the named plan, send it inline once
            logger.debug("Named plan %s failed (%s), retrying with the full plan", self.name, e)
            self.name = ""

        return await perform(self._request_values(args), self.kind)

    async def query(self, *args: Any) -> "ResultStream":
        """Run the statement and stream its rows."""
        return await self._run(args, self._client._perform_query)

    async def query_raw(self, *args: Any) -> "aiohttp.ClientResponse":
        """Run the statement and return the unread HTTP response."""
        return await self._run(args, self._client._perform_raw)

    async def query_row(self, *args: Any) -> Optional["ResultStream"]:
        """Run the statement and position the stream on its first row."""
        rows = await self.query(*args)
        if not await rows.next():
            await rows.close()
            return None
        return rows

    async def execute(self, *args: Any) -> "ExecResult":
        """Execute the statement, returning the mutation count."""
        return await self._run(args, self._client._perform_exec)

    async def execute_raw(self, *args: Any) -> "aiohttp.ClientResponse":
        return await self._run(args, self._client._perform_raw)

    async def close(self) -> None:
        self.prepared = ""
        self.signature = ""
        self.arg_count = 0

    async def __aenter__(self) -> "PreparedStatement":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"PreparedStatement(name={self.name!r}, num_input={self.arg_count})"
