"""
Pytest fixtures for n1qldb tests.

This module provides:
- FakeQueryService: an in-process aiohttp.web stand-in for the query
  service and the cluster manager
- service / client fixtures wired to it
- Sample datasets shaped like the beer-sample bucket
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer, unused_port

import n1qldb


# =============================================================================
# Sample Data
# =============================================================================

OTHER_LAGERS = [
    {"name": "Baltika 6", "abv": 7.0, "is_twenty": True},
    {"name": "Estrella Levante Clasica", "abv": 4.8, "is_twenty": False},
    {"name": "Estrella Levante Especial", "abv": 5.4, "is_twenty": False},
    {"name": "Estrella Levante Sin 0.0% Alcohol", "abv": 1.0, "is_twenty": False},
]

LAGER_SIGNATURE = {"name": "json", "abv": "json", "is_twenty": "boolean"}

SAN_FRANCISCO = [{"beer-sample": {"city": "San Francisco", "id": i}} for i in range(10)]


def envelope(
    results: Any,
    signature: Any = None,
    *,
    errors: Optional[List[Dict[str, Any]]] = None,
    metrics: Optional[Dict[str, Any]] = None,
    status: str = "success",
    **extra: Any,
) -> Dict[str, Any]:
    body = {
        "requestID": "5c1b3f0a-8f0e-4c3e-9d2a-0c8d2f6f1a01",
        "signature": signature,
        "results": results,
        "status": status,
        "metrics": metrics or {"elapsedTime": "1.2ms", "resultCount": 0},
    }
    if errors is not None:
        body["errors"] = errors
    body.update(extra)
    return body


def dead_endpoint() -> str:
    """A query endpoint nobody listens on."""
    return f"http://127.0.0.1:{unused_port()}/query/service"


# =============================================================================
# Fake Query Service
# =============================================================================

TRUNCATED = object()

Responder = Union[Dict[str, Any], Callable[[Dict[str, str]], Any]]


class FakeQueryService:
    """
    Minimal query service.

    Statements are answered by the first registered prefix that matches;
    requests carrying ``prepared`` go to ``prepared_handler``. A body of
    ``TRUNCATED`` sends the headers and part of the payload, then drops
    the connection.
    """

    def __init__(self):
        self.requests: List[Dict[str, str]] = []
        self.headers: List[Dict[str, str]] = []
        self.responses: List[Tuple[str, int, Responder]] = []
        self.prepared_handler: Optional[Callable[[Dict[str, str]], Tuple[int, Dict[str, Any]]]] = None
        self.node_services: Optional[Dict[str, Any]] = None
        self.query_nodes: Optional[List[Dict[str, Any]]] = None
        self.auth: Optional[str] = None
        self.url = ""

        self.app = web.Application()
        self.app.router.add_post("/query/service", self._query)
        self.app.router.add_post("/analytics/service", self._query)
        self.app.router.add_get("/pools/default/nodeServices", self._node_services)
        self.app.router.add_get("/admin/clusters/default/nodes", self._query_nodes)

    @property
    def endpoint(self) -> str:
        return self.url + "/query/service"

    @property
    def statements(self) -> List[str]:
        return [r.get("statement", "") for r in self.requests]

    def add(self, prefix: str, body: Responder, status: int = 200) -> None:
        self.responses.append((prefix, status, body))

    def _authorized(self, request: web.Request) -> bool:
        return self.auth is None or request.headers.get("Authorization") == self.auth

    async def _query(self, request: web.Request) -> web.StreamResponse:
        if not self._authorized(request):
            return web.json_response({"errors": [{"code": 10000, "msg": "Authentication failed"}]}, status=401)

        form = dict(await request.post())
        self.requests.append(form)
        self.headers.append(dict(request.headers))

        if "prepared" in form and self.prepared_handler is not None:
            status, body = self.prepared_handler(form)
            return await self._respond(request, status, body)

        statement = form.get("statement", "")
        for prefix, status, body in self.responses:
            if statement.startswith(prefix):
                if callable(body):
                    body = body(form)
                return await self._respond(request, status, body)

        return web.json_response(envelope([1], {"$1": "number"}))

    async def _respond(self, request: web.Request, status: int, body: Any) -> web.StreamResponse:
        if body is TRUNCATED:
            # promise more bytes than are sent, then drop the connection
            resp = web.StreamResponse(
                status=status,
                headers={"Content-Type": "application/json", "Content-Length": "4096"},
            )
            await resp.prepare(request)
            await resp.write(b'{"requestID": "5c1b3f0a", "results": [')
            request.transport.close()
            return resp
        if isinstance(body, (bytes, str)):
            return web.Response(body=body, status=status, content_type="application/json")
        return web.json_response(body, status=status)

    async def _node_services(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return web.Response(status=401, text="Unauthorized")
        if self.node_services is None:
            return web.Response(status=404, text="Not found.")
        return web.json_response(self.node_services)

    async def _query_nodes(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return web.Response(status=401, text="Unauthorized")
        if self.query_nodes is None:
            return web.Response(status=404, text="Not found.")
        return web.Response(text=json.dumps(self.query_nodes), content_type="application/json")


# =============================================================================
# Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def service():
    """A running FakeQueryService."""
    svc = FakeQueryService()
    server = TestServer(svc.app, host="127.0.0.1")
    await server.start_server()
    svc.url = f"http://127.0.0.1:{server.port}"
    yield svc
    await server.close()


@pytest_asyncio.fixture
async def client(service: FakeQueryService):
    """A client opened on the fake service, with the open-time requests cleared."""
    c = await n1qldb.open(service.url)
    service.requests.clear()
    service.headers.clear()
    yield c
    await c.close()


@pytest.fixture
def first_endpoint(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make endpoint selection deterministic: always the first live endpoint."""
    monkeypatch.setattr("n1qldb.client.random.choice", lambda seq: seq[0])
