"""
N1QL Database Python Client

Async client for the N1QL query service with endpoint discovery,
failover across query nodes, prepared statements and transactions.

@version 1.0.0
@author n1qldb Development Team
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import weakref
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from .config import DEFAULT_STATEMENT, VERSION, ClientConfig
from .discovery import normalize_data_source, resolve_endpoints
from .query import build_positional_arg_list, encode_statement, prepare_query
from .rows import ResultStream, decode_signature
from .statement import PreparedStatement
from .transaction import (
    Transaction,
    TransactionContext,
    TxStatement,
    classify_statement,
)
from .types import (
    AuthenticationError,
    ConnectionClosed,
    ConnectionError,
    ConnectionExhausted,
    DecodeMalformed,
    ExecResult,
    InternalNoPlanReturned,
    NoActiveTransaction,
    PrepareFailed,
    QueryError,
    TransactionError,
    TransactionsUnsupported,
    serialize_errors,
    strip_url,
)

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


def _envelope_errors(body: bytes) -> Optional[Any]:
    """The ``errors`` field of an error response body, if it has one."""
    try:
        envelope = json.loads(body)
    except ValueError:
        return None
    return envelope.get("errors") if isinstance(envelope, dict) else None


async def _read_body(resp: aiohttp.ClientResponse, *, release: bool = True) -> bytes:
    """Read a response body, turning a broken transfer into ConnectionError."""
    try:
        return await resp.read()
    except _TRANSPORT_ERRORS as e:
        resp.release()
        raise ConnectionError(
            strip_url(f"N1QL: Failed to read response from {resp.url}. Error {e}")
        ) from e
    finally:
        if release:
            resp.release()


class N1QLClient:
    """
    Async client for the N1QL query service.

    Example:
        async with N1QLClient("http://localhost:8091") as client:
            rows = await client.query("SELECT name FROM `beer-sample` LIMIT 10")
            async for row in rows:
                print(row.name)
    """

    def __init__(
        self,
        data_source: str,
        config: Optional[ClientConfig] = None,
        *,
        user_agent: str = "",
    ):
        """
        Initialize the client.

        Args:
            data_source: Cluster address (e.g., "http://localhost:8091") or
                the address of a standalone query service
            config: Credentials, TLS material and request options
            user_agent: Tag appended to the CB-User-Agent header
        """
        # the caller's config is never written to
        self.config = (config or ClientConfig()).copy()
        if user_agent:
            self.config.user_agent = user_agent
        self.data_source = normalize_data_source(data_source, self.config)

        self._session: Optional[aiohttp.ClientSession] = None
        self._endpoints: List[str] = []
        self._tx = TransactionContext()
        self._lock: Optional[asyncio.Lock] = None
        self._streams: "weakref.WeakSet[ResultStream]" = weakref.WeakSet()
        self._closed = False

    async def __aenter__(self) -> "N1QLClient":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    @property
    def endpoints(self) -> List[str]:
        """Query endpoints still considered alive."""
        return list(self._endpoints)

    @property
    def txid(self) -> str:
        return self._tx.txid

    @property
    def in_transaction(self) -> bool:
        return self._tx.active

    @property
    def closed(self) -> bool:
        return self._closed

    async def connect(self) -> None:
        """
        Discover the query endpoints and check the first one answers.

        Raises:
            ConnectionError: If no query endpoint can be reached
        """
        if self._session is not None:
            return
        if self._closed:
            raise ConnectionClosed("N1QL connection is already closed.")

        connector_args: Dict[str, Any] = {"limit": self.config.max_connections}
        if self.data_source.startswith("https"):
            connector_args["ssl"] = self.config.tls.ssl_context()

        headers = {}
        if self.config.has_credentials:
            headers["Authorization"] = aiohttp.BasicAuth(
                self.config.username or "", self.config.password or ""
            ).encode()

        self._lock = asyncio.Lock()
        self._session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(**connector_args),
            timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            headers=headers,
        )

        try:
            endpoints, probe_error = await resolve_endpoints(
                self._session, self.data_source, self.config
            )
            await self._check_endpoint(endpoints[0], probe_error)
        except Exception:
            await self._session.close()
            self._session = None
            raise

        self._endpoints = endpoints
        logger.debug("Connected to %s with endpoints %s", strip_url(self.data_source), endpoints)

    async def _check_endpoint(self, endpoint: str, probe_error: Optional[Exception]) -> None:
        """Run the no-op statement to validate reachability and credentials."""
        try:
            resp = await self._session.post(
                endpoint,
                data=self._request_values({"statement": DEFAULT_STATEMENT}),
                headers=self._headers(),
            )
        except _TRANSPORT_ERRORS as e:
            message = strip_url(f"N1QL: Connection failed {e}")
            if probe_error is not None:
                message = message + "\n " + strip_url(str(probe_error))
            raise ConnectionError(message) from e

        if resp.status in (401, 403):
            resp.release()
            raise AuthenticationError(f"N1QL: Unauthorized ({resp.status})")
        body = await _read_body(resp)
        if resp.status != 200:
            raise ConnectionError(
                f"N1QL: Connection failure {body[:512].decode('utf-8', 'replace')}"
            )

        try:
            json.loads(body)
        except ValueError as e:
            raise ConnectionError(f"N1QL: Failed to parse response. Error {e}") from e

    async def close(self) -> None:
        """Close the client and every stream it produced."""
        for stream in list(self._streams):
            await stream.close()
        if self._session:
            await self._session.close()
            self._session = None
        self._closed = True
        self._tx.clear()

    def _check_open(self) -> None:
        if self._closed:
            raise ConnectionClosed("N1QL connection is already closed.")
        if self._session is None:
            raise ConnectionError("Client not connected. Call connect() first.")

    def _headers(self) -> Dict[str, str]:
        """Get request headers."""
        agent = f"n1qldb/{VERSION}"
        if self.config.user_agent:
            agent = f"{agent} ({self.config.user_agent})"
        return {
            "Content-Type": "application/x-www-form-urlencoded",
            "CB-User-Agent": agent,
        }

    def _request_values(self, values: Dict[str, str]) -> Dict[str, str]:
        merged = dict(self.config.query_params)
        merged.update(values)
        return merged

    # =========================================================================
    # Request Execution
    # =========================================================================

    async def _do_request(
        self,
        values: Dict[str, str],
        kind: TxStatement = TxStatement.NONE,
    ) -> aiohttp.ClientResponse:
        """
        POST a request to one query endpoint, failing over to the others.

        Inside a transaction the request always goes to the endpoint the
        transaction was started on.

        Raises:
            ConnectionExhausted: If no endpoint could be reached
        """
        self._check_open()

        while True:
            sticky = self._tx.active
            if sticky:
                endpoint = self._tx.endpoint
            else:
                endpoint = random.choice(self._endpoints)

            form = self._request_values(values)
            form.update(self._tx.request_values(self.config, kind))

            try:
                resp = await self._session.post(endpoint, data=form, headers=self._headers())
            except _TRANSPORT_ERRORS as e:
                async with self._lock:
                    if not sticky and endpoint not in self._endpoints:
                        # a concurrent request already dropped it
                        continue
                    if sticky or len(self._endpoints) <= 1:
                        self._tx.clear()
                        raise ConnectionExhausted(
                            strip_url(f"N1QL: Query nodes not responding. Last error {e}")
                        ) from e
                    self._endpoints.remove(endpoint)
                logger.warning(
                    "Query endpoint %s failed, %d left: %s",
                    endpoint, len(self._endpoints), strip_url(str(e)),
                )
                continue

            await self._track_transaction(kind, endpoint, resp)
            return resp

    async def _track_transaction(
        self,
        kind: TxStatement,
        endpoint: str,
        resp: aiohttp.ClientResponse,
    ) -> None:
        if kind is TxStatement.NONE or resp.status != 200:
            return

        if kind is TxStatement.START:
            # the body stays cached on the response for the caller
            body = await _read_body(resp, release=False)
            try:
                envelope = json.loads(body)
            except ValueError:
                return
            results = envelope.get("results") if isinstance(envelope, dict) else None
            if results and isinstance(results[0], dict) and results[0].get("txid"):
                async with self._lock:
                    self._tx.set(results[0]["txid"], endpoint)
                logger.debug("Transaction %s pinned to %s", self._tx.txid, endpoint)
            return

        async with self._lock:
            logger.debug("Transaction %s finished (%s)", self._tx.txid, kind.value)
            self._tx.clear()

    async def _check_status(self, resp: aiohttp.ClientResponse) -> None:
        """Raise for a non-200 response, releasing it."""
        if resp.status == 200:
            return

        body = await _read_body(resp)
        errors = _envelope_errors(body)
        message = serialize_errors(errors) if errors else body[:512].decode("utf-8", "replace")

        if resp.status in (401, 403):
            raise AuthenticationError(f"Unauthorized ({resp.status}): {message}")
        raise QueryError(
            f"N1QL: Request failed ({resp.status}): {message}",
            status=resp.status,
            errors=errors if isinstance(errors, list) else None,
        )

    async def _read_envelope(self, resp: aiohttp.ClientResponse) -> Dict[str, Any]:
        await self._check_status(resp)
        body = await _read_body(resp)

        try:
            envelope = json.loads(body)
        except ValueError as e:
            raise DecodeMalformed(f"N1QL: Failed to decode result {e}") from e
        if not isinstance(envelope, dict):
            raise DecodeMalformed(
                f"N1QL: Failed to decode result, got {type(envelope).__name__}"
            )
        return envelope

    async def _perform_query(
        self,
        values: Dict[str, str],
        kind: TxStatement = TxStatement.NONE,
    ) -> ResultStream:
        resp = await self._do_request(values, kind)
        envelope = await self._read_envelope(resp)

        passthrough = self.config.passthrough
        signature = decode_signature(envelope.get("signature"), passthrough)
        results = envelope.get("results", [])

        if passthrough:
            rows = ResultStream(
                results,
                signature,
                errors=envelope.get("errors"),
                metrics=envelope.get("metrics"),
                extras={
                    "requestID": envelope.get("requestID"),
                    "status": envelope.get("status"),
                    "signature": signature,
                },
                passthrough=True,
            )
        else:
            # errors travel with the rows, results can be partially valid
            rows = ResultStream(results, signature, errors=envelope.get("errors"))

        self._streams.add(rows)
        return rows.start()

    async def _perform_exec(
        self,
        values: Dict[str, str],
        kind: TxStatement = TxStatement.NONE,
    ) -> ExecResult:
        resp = await self._do_request(values, kind)
        envelope = await self._read_envelope(resp)

        result = ExecResult()
        metrics = envelope.get("metrics")
        if isinstance(metrics, dict) and "mutationCount" in metrics:
            result.rows_affected = int(metrics["mutationCount"])

        errors = envelope.get("errors")
        if errors:
            raise QueryError(
                f"N1QL: Error executing query {serialize_errors(errors)}",
                errors=errors if isinstance(errors, list) else None,
                result=result,
            )
        return result

    async def _perform_raw(
        self,
        values: Dict[str, str],
        kind: TxStatement = TxStatement.NONE,
    ) -> aiohttp.ClientResponse:
        resp = await self._do_request(values, kind)
        if resp.status != 200:
            raise QueryError(
                f"Request failed with error code {resp.status}.",
                status=resp.status,
                response=resp,
            )
        return resp

    def _statement_values(self, statement: str, args: tuple) -> Dict[str, str]:
        statement, extra = encode_statement(statement, args)
        values = {"statement": statement}
        positional = build_positional_arg_list(extra)
        if positional:
            values["args"] = positional
        return values

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def query(self, statement: str, *args: Any) -> ResultStream:
        """
        Run a statement that returns rows.

        Args:
            statement: N1QL text, ``?`` marks a positional argument
            args: Positional arguments

        Returns:
            ResultStream over the rows
        """
        self._check_open()
        values = self._statement_values(statement, args)
        return await self._perform_query(values, classify_statement(statement))

    async def query_raw(self, statement: str, *args: Any) -> aiohttp.ClientResponse:
        """
        Run a statement and return the unread HTTP response.

        The caller owns the response and must release it. On a non-200
        status the response is attached to the raised QueryError.
        """
        self._check_open()
        values = self._statement_values(statement, args)
        return await self._perform_raw(values, classify_statement(statement))

    async def query_row(self, statement: str, *args: Any) -> Optional[ResultStream]:
        """Run a statement and position the stream on its first row."""
        rows = await self.query(statement, *args)
        if not await rows.next():
            await rows.close()
            return None
        return rows

    async def execute(self, statement: str, *args: Any) -> ExecResult:
        """
        Execute a statement that returns no rows (INSERT, UPSERT, DELETE, ...).

        Returns:
            ExecResult with the mutation count
        """
        self._check_open()
        values = self._statement_values(statement, args)
        return await self._perform_exec(values, classify_statement(statement))

    async def execute_raw(self, statement: str, *args: Any) -> aiohttp.ClientResponse:
        self._check_open()
        values = self._statement_values(statement, args)
        return await self._perform_raw(values, classify_statement(statement))

    async def prepare(self, statement: str) -> PreparedStatement:
        """
        Prepare a statement on the server.

        Raises:
            PrepareFailed: If the server reported errors
            InternalNoPlanReturned: If no plan came back
        """
        self._check_open()
        kind = classify_statement(statement)
        text, arg_count = prepare_query("PREPARE " + statement)

        resp = await self._do_request({"statement": text})
        envelope = await self._read_envelope(resp)

        errors = envelope.get("errors")
        if errors:
            raise PrepareFailed(
                f"N1QL: Error preparing statement {serialize_errors(errors)}",
                errors=errors if isinstance(errors, list) else None,
            )

        results = envelope.get("results")
        if not isinstance(results, list) or not results:
            raise InternalNoPlanReturned("N1QL: Unknown error, no prepared results returned")

        plan = results[0]
        if not plan:
            raise InternalNoPlanReturned("N1QL: Internal Error, empty plan")

        signature = envelope.get("signature")
        return PreparedStatement(
            self,
            name=plan.get("name", "") if isinstance(plan, dict) else "",
            prepared=json.dumps(plan, separators=(",", ":"), sort_keys=True),
            signature=json.dumps(signature) if signature is not None else "",
            arg_count=arg_count,
            kind=kind,
        )

    async def prepare_extended(self, statement: str) -> PreparedStatement:
        return await self.prepare(statement)

    async def ping(self) -> None:
        """Run the no-op statement against a live endpoint."""
        rows = await self.query(DEFAULT_STATEMENT)
        await rows.close()

    # =========================================================================
    # Transaction Methods
    # =========================================================================

    async def begin(self) -> Transaction:
        """
        Start a transaction pinned to one query node.

        Raises:
            TransactionError: If a transaction is already open
            TransactionsUnsupported: If the service returned no transaction id
        """
        self._check_open()
        if self._tx.active:
            raise TransactionError("N1QL: Transaction already active")

        await self.execute("BEGIN WORK")
        if not self._tx.active:
            raise TransactionsUnsupported("N1QL: Transactions are not supported.")
        return Transaction(self, self._tx.txid)

    async def commit(self) -> None:
        """Commit the open transaction."""
        self._check_open()
        if not self._tx.active:
            raise NoActiveTransaction("No active transaction")
        await self.execute("COMMIT WORK")

    async def rollback(self) -> None:
        """Rollback the open transaction."""
        self._check_open()
        if not self._tx.active:
            raise NoActiveTransaction("No active transaction")
        await self.execute("ROLLBACK WORK")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """
        Start a transaction.

        Example:
            async with client.transaction() as tx:
                await tx.execute("INSERT INTO default (KEY, VALUE) VALUES (?, ?)", "k1", {"a": 1})
                await tx.execute("DELETE FROM default WHERE META().id = ?", "k0")
        """
        tx = await self.begin()
        try:
            yield tx
            await tx.commit()
        except Exception:
            if tx.is_active:
                await tx.rollback()
            raise


async def open(
    data_source: str,
    config: Optional[ClientConfig] = None,
) -> N1QLClient:
    """Open a connected client on ``data_source``."""
    client = N1QLClient(data_source, config)
    await client.connect()
    return client


async def open_extended(
    data_source: str,
    user_agent: str,
    config: Optional[ClientConfig] = None,
) -> N1QLClient:
    """Open a connected client that tags its requests with ``user_agent``."""
    client = N1QLClient(data_source, config, user_agent=user_agent)
    await client.connect()
    return client
