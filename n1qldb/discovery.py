"""
N1QL Endpoint Discovery

Turns a data source into the list of query endpoints, either through the
cluster topology or by using the address directly.

@version 1.0.0
@author n1qldb Development Team
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import aiohttp

from .config import (
    ANALYTICS_SERVICE_PATH,
    QUERY_SERVICE_PATH,
    ClientConfig,
    Network,
)
from .types import ConnectionError, strip_url

logger = logging.getLogger(__name__)

NODE_SERVICES_PATH = "/pools/default/nodeServices"
QUERY_NODES_PATH = "/admin/clusters/default/nodes"


def normalize_data_source(data_source: str, config: ClientConfig) -> str:
    """
    Add a scheme when missing and move URL credentials into ``config``.
    """
    data_source = data_source.strip()
    if "://" not in data_source:
        data_source = "http://" + data_source

    parts = urlsplit(data_source)
    if parts.username is not None or parts.password is not None:
        if not config.has_credentials:
            config.username = parts.username or ""
            config.password = parts.password or ""
        netloc = parts.netloc.rsplit("@", 1)[1]
        data_source = urlunsplit(parts._replace(netloc=netloc))
    return data_source


def is_ipv6(host: str) -> bool:
    try:
        return ipaddress.ip_address(host.strip("[]")).version == 6
    except ValueError:
        return False


def format_host(host: str) -> str:
    host = host.strip("[]")
    return f"[{host}]" if is_ipv6(host) else host


def select_network(nodes: List[Dict[str, Any]], seed_host: str, network: Network) -> Network:
    """Resolve ``auto`` by matching the seed host against the node address tables."""
    if network is not Network.AUTO:
        return network

    seed_host = seed_host.strip("[]")
    internal = {n.get("hostname", "").strip("[]") for n in nodes}
    if seed_host in internal:
        return Network.DEFAULT

    for node in nodes:
        external = (node.get("alternateAddresses") or {}).get("external") or {}
        if external.get("hostname", "").strip("[]") == seed_host:
            return Network.EXTERNAL
    return Network.DEFAULT


def node_endpoints(
    node_services: Dict[str, Any],
    seed_host: str,
    secure: bool,
    config: ClientConfig,
) -> Tuple[List[str], Network]:
    """
    Compute the host:port of every node offering the query service.

    Returns:
        The addresses and the network they were taken from
    """
    nodes = node_services.get("nodesExt") or []
    network = select_network(nodes, seed_host, config.network)

    service = "cbas" if config.analytics else "n1ql"
    if secure:
        service += "SSL"

    addresses = []
    for node in nodes:
        services = node.get("services") or {}
        if service not in services:
            continue

        host = node.get("hostname") or seed_host
        port = services[service]

        if network is Network.EXTERNAL:
            external = (node.get("alternateAddresses") or {}).get("external")
            if external:
                host = external.get("hostname") or host
                port = (external.get("ports") or {}).get(service, port)

        addresses.append(f"{format_host(host)}:{port}")
    return addresses, network


async def _get_json(session: aiohttp.ClientSession, url: str) -> Any:
    async with session.get(url) as resp:
        if resp.status != 200:
            body = await resp.content.read(512)
            raise ConnectionError(body.decode("utf-8", "replace"))
        text = await resp.text()
    try:
        return json.loads(text)
    except ValueError as e:
        raise ConnectionError(f"N1QL: Failed to parse response. Error {e}") from e


async def get_query_api(session: aiohttp.ClientSession, node: str) -> List[str]:
    """
    Ask a query node for the endpoints of every query node in the cluster.
    """
    data = await _get_json(session, f"http://{node}{QUERY_NODES_PATH}")

    endpoints = [
        entry["queryEndpoint"]
        for entry in data if isinstance(entry, dict) and "queryEndpoint" in entry
    ] if isinstance(data, list) else []

    if not endpoints:
        raise ConnectionError("Query endpoints not found")

    hostname = node.rpartition(":")[0] or node
    localhost = "[::1]" if is_ipv6(hostname) else "127.0.0.1"

    # nodes report themselves on loopback, use the address we reached them on
    return [e.replace(localhost, hostname) for e in endpoints]


async def resolve_endpoints(
    session: aiohttp.ClientSession,
    data_source: str,
    config: ClientConfig,
) -> Tuple[List[str], Optional[Exception]]:
    """
    Resolve the query endpoints behind ``data_source``.

    Returns:
        The endpoints, and the cluster probe error when the data source
        was used directly as a query endpoint

    Raises:
        ConnectionError: If the cluster has no query service
    """
    parts = urlsplit(data_source)
    secure = parts.scheme == "https"
    seed_host = parts.hostname or ""
    base = urlunsplit((parts.scheme, parts.netloc, "", "", ""))

    try:
        node_services = await _get_json(session, base + NODE_SERVICES_PATH)
        if not isinstance(node_services, dict):
            raise ConnectionError("N1QL: Failed to get NodeServices list")
    except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as e:
        probe_error = ConnectionError(
            strip_url(f"N1QL: Unable to connect to cluster endpoint {data_source}. Error {e}")
        )
        logger.debug("Cluster discovery failed, using %s directly: %s", data_source, probe_error)
        path = ANALYTICS_SERVICE_PATH if config.analytics else QUERY_SERVICE_PATH
        return [data_source.rstrip("/") + path], probe_error

    addresses, network = node_endpoints(node_services, seed_host, secure, config)
    if not addresses:
        raise ConnectionError("N1QL: No query service found on this cluster")

    scheme = "https" if secure else "http"
    if config.analytics:
        endpoints = [f"{scheme}://{a}{ANALYTICS_SERVICE_PATH}" for a in addresses]
    elif network is Network.EXTERNAL or secure:
        endpoints = [f"{scheme}://{a}{QUERY_SERVICE_PATH}" for a in addresses]
    else:
        try:
            endpoints = await get_query_api(session, addresses[0])
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ConnectionError(strip_url(f"N1QL: Failed to get query endpoints. Error {e}")) from e

    logger.debug("Resolved %d query endpoint(s) on %s network: %s", len(endpoints), network.value, endpoints)
    return endpoints, None
