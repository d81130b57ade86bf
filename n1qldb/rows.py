"""
N1QL Result Streaming

A ResultStream decodes the ``results`` array of a query response on a
worker task and hands rows to the caller one at a time through a
capacity-1 queue.

@version 1.0.0
@author n1qldb Development Team
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .types import (
    DecodeMalformed,
    QueryError,
    Row,
    ScanError,
    ScanInsufficientColumns,
    ScanTypeMismatch,
    Value,
    ValueKind,
    serialize_errors,
)

logger = logging.getLogger(__name__)

_END = object()


class StreamState(Enum):
    OPENING = "opening"
    STREAMING = "streaming"
    EXHAUSTED = "exhausted"
    ERRORED = "errored"
    CLOSED = "closed"


def decode_signature(signature: Any, passthrough: bool = False) -> Any:
    """Normalize a response signature into a dict, a string or None."""
    if signature is None:
        # DML statements can come back without a signature, passthrough
        # still needs a column to put status and metrics rows in
        return {"*": "*"} if passthrough else None
    if isinstance(signature, (dict, str)):
        return signature
    logger.debug("Cannot decode signature of type %s", type(signature).__name__)
    return {"*": "*"}


def signature_columns(signature: Any) -> List[str]:
    """Column names of a decoded signature, sorted."""
    if isinstance(signature, dict):
        columns = list(signature.keys())
    elif isinstance(signature, str):
        columns = [signature]
    else:
        columns = ["null"]
    return sorted(columns)


class ResultStream:
    """
    Rows of one query response.

    Example:
        rows = await client.query("SELECT name, abv FROM `beer-sample` LIMIT 2")
        async with rows:
            while await rows.next():
                abv, name = rows.scan(float, str)
    """

    def __init__(
        self,
        results: Any,
        signature: Any = None,
        *,
        errors: Any = None,
        metrics: Any = None,
        extras: Optional[Dict[str, Any]] = None,
        passthrough: bool = False,
    ):
        self._results = results
        self._signature = signature
        self._errors = errors
        self._metrics = metrics
        self._extras = extras
        self.passthrough = passthrough

        self._columns = signature_columns(signature)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._error: asyncio.Future = asyncio.get_running_loop().create_future()
        self._worker: Optional[asyncio.Task] = None
        self._closed = False
        self._stopping = False
        self._cur_values: Optional[List[Value]] = None
        self._iter_error: Optional[Exception] = None
        self._error_raised = False
        self.state = StreamState.OPENING

    def start(self) -> "ResultStream":
        """Start the decode worker."""
        if self._worker is None:
            self._worker = asyncio.create_task(self._populate_rows())
            self.state = StreamState.STREAMING
        return self

    async def _populate_rows(self) -> None:
        if not isinstance(self._results, list):
            self._error.set_result(
                DecodeMalformed(
                    f"N1QL: Failed to decode results, expected an array "
                    f"got {type(self._results).__name__}"
                )
            )
            return

        if self.passthrough:
            if self._extras is not None:
                if not await self._put((Value.from_json(self._extras), True)):
                    return
            if self._metrics is not None:
                if not await self._put((Value.from_json(self._metrics), True)):
                    return

        for item in self._results:
            try:
                value = Value.from_json(item)
            except DecodeMalformed as e:
                self._error.set_result(e)
                return
            if not await self._put((value, False)):
                return

        if self.passthrough:
            # the last passthrough row is always the error row
            if not await self._put((Value.from_json({"errors": self._errors}), True)):
                return
        elif self._errors:
            self._error.set_result(
                QueryError(
                    f"N1QL: Error executing query {serialize_errors(self._errors)}",
                    errors=self._errors if isinstance(self._errors, list) else None,
                )
            )
            return

        await self._put(_END)

    async def _put(self, item: Any) -> bool:
        if self._stopping:
            return False
        await self._queue.put(item)
        return True

    @property
    def columns(self) -> List[str]:
        """Column names, sorted lexicographically."""
        return list(self._columns)

    @property
    def signature(self) -> Any:
        return self._signature

    def err(self) -> Optional[Exception]:
        """The error that ended iteration, if any."""
        return self._iter_error

    def values(self) -> Optional[List[Value]]:
        """Values of the current row, one per column."""
        return None if self._cur_values is None else list(self._cur_values)

    async def next(self) -> bool:
        """
        Advance to the next row.

        Returns:
            False once the stream is exhausted, closed or errored; the
            cause of an error is available from ``err()``
        """
        if self.state is StreamState.OPENING:
            self.start()
        if self.state is not StreamState.STREAMING:
            self._cur_values = None
            return False

        if not self._queue.empty():
            item = self._queue.get_nowait()
        elif self._error.done():
            return self._fail(self._error.result())
        else:
            getter = asyncio.ensure_future(self._queue.get())
            done, _ = await asyncio.wait(
                {getter, self._error}, return_when=asyncio.FIRST_COMPLETED
            )
            if getter not in done:
                getter.cancel()
                return self._fail(self._error.result())
            item = getter.result()

        if item is _END:
            self.state = StreamState.EXHAUSTED
            self._cur_values = None
            return False

        value, synthetic = item
        try:
            self._cur_values = self._assemble(value, synthetic)
        except DecodeMalformed as e:
            return self._fail(e)
        return True

    def _fail(self, error: Exception) -> bool:
        self._iter_error = error
        self._cur_values = None
        self.state = StreamState.ERRORED
        self._halt()
        return False

    def _halt(self) -> None:
        self._stopping = True
        # free the slot so a worker blocked in put() sees the flag
        while not self._queue.empty():
            self._queue.get_nowait()

    def _assemble(self, value: Value, synthetic: bool) -> List[Value]:
        num_columns = len(self._columns)
        empty = Value(ValueKind.STRING, "")

        if num_columns == 1:
            return [value]

        if synthetic:
            # status, metrics and errors rows rarely match the projection
            return [value] + [empty] * (num_columns - 1)

        if value.kind is ValueKind.OBJECT:
            if len(value.data) > num_columns:
                raise DecodeMalformed(
                    f"N1QL: More Colums than expected {len(value.data)} != "
                    f"{num_columns} r {value.data}"
                )
            return [
                Value.from_json(value.data[col]) if col in value.data else empty
                for col in self._columns
            ]

        if value.kind is ValueKind.ARRAY:
            if len(value.data) > num_columns:
                raise DecodeMalformed(
                    f"N1QL: More Colums than expected {len(value.data)} != {num_columns}"
                )
            dest = [Value.from_json(v) for v in value.data]
            return dest + [Value(ValueKind.NULL)] * (num_columns - len(dest))

        return [value] + [Value(ValueKind.NULL)] * (num_columns - 1)

    def scan(self, *dest: type) -> Tuple[Any, ...]:
        """
        Convert the current row into the given destination types.

        Supported destinations are ``float``, ``bool``, ``str`` and
        ``Value``. A string destination takes JSON text for any value
        that is not a string.

        Example:
            abv, is_twenty, name = rows.scan(float, bool, str)
        """
        if self._cur_values is None:
            raise ScanError("No current row.")
        if len(dest) > len(self._cur_values):
            raise ScanInsufficientColumns(
                f"Scan() asked for {len(dest)} values, but only "
                f"{len(self._cur_values)} are available."
            )

        out = []
        for i, d in enumerate(dest):
            cur = self._cur_values[i]
            if d is float:
                if cur.kind is not ValueKind.NUMBER:
                    raise ScanTypeMismatch(
                        f"Cannot assign to float at index {i} of Scan() from value {cur.data!r}."
                    )
                out.append(float(cur.data))
            elif d is bool:
                if cur.kind is not ValueKind.BOOL:
                    raise ScanTypeMismatch(
                        f"Cannot assign to bool at index {i} of Scan() from value {cur.data!r}."
                    )
                out.append(cur.data)
            elif d is str:
                out.append(cur.data if cur.kind is ValueKind.STRING else cur.to_json())
            elif d is Value:
                out.append(cur)
            else:
                raise ScanTypeMismatch(
                    f"Unsupported destination type at parameter {i} of Scan()."
                )
        return tuple(out)

    def row(self) -> Optional[Row]:
        """The current row keyed by column name."""
        if self._cur_values is None:
            return None
        return Row({c: v.to_python() for c, v in zip(self._columns, self._cur_values)})

    async def to_dicts(self) -> List[Dict[str, Any]]:
        """Drain the remaining rows into dictionaries."""
        return [row.to_dict() async for row in self]

    async def to_dataframe(self):
        """Drain the remaining rows into a pandas DataFrame (requires pandas)."""
        try:
            import pandas as pd
        except ImportError:
            raise ImportError("pandas is required for to_dataframe()")
        return pd.DataFrame(await self.to_dicts(), columns=self.columns)

    async def close(self) -> None:
        """Stop the worker at its next row boundary. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        if self.state in (StreamState.OPENING, StreamState.STREAMING):
            self.state = StreamState.CLOSED
        self._cur_values = None
        self._halt()

        if self._worker is not None:
            await self._worker

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "ResultStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __aiter__(self) -> "ResultStream":
        return self

    async def __anext__(self) -> Row:
        if await self.next():
            return self.row()
        if self._iter_error is not None and not self._error_raised:
            self._error_raised = True
            raise self._iter_error
        raise StopAsyncIteration

    def __repr__(self) -> str:
        return f"ResultStream(columns={self._columns}, state={self.state.value})"
