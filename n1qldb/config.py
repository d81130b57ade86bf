"""
N1QL Client Configuration

@version 1.0.0
@author n1qldb Development Team
"""

from __future__ import annotations

import ssl
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Optional


VERSION = "1.0.0"

DEFAULT_STATEMENT = "SELECT RAW 1;"
QUERY_SERVICE_PATH = "/query/service"
ANALYTICS_SERVICE_PATH = "/analytics/service"


class Network(str, Enum):
    """Which address table of a cluster node to use."""
    DEFAULT = "default"
    EXTERNAL = "external"
    AUTO = "auto"


@dataclass
class TLSOptions:
    """TLS material for https endpoints."""
    skip_verify: bool = True
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    ca_file: Optional[str] = None
    key_passphrase: Optional[str] = None

    def ssl_context(self) -> ssl.SSLContext:
        ctx = ssl.create_default_context(cafile=self.ca_file)
        if self.skip_verify:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        if self.cert_file:
            ctx.load_cert_chain(
                self.cert_file,
                keyfile=self.key_file,
                password=self.key_passphrase,
            )
        return ctx


@dataclass
class ClientConfig:
    """Configuration for the N1QL client."""
    username: Optional[str] = None
    password: Optional[str] = None
    tls: TLSOptions = field(default_factory=TLSOptions)
    passthrough: bool = False
    network: Network = Network.AUTO
    query_params: Dict[str, str] = field(default_factory=dict)
    user_agent: str = ""
    analytics: bool = False
    tx_timeout: str = ""
    tx_implicit: bool = False
    timeout: float = 75.0
    max_connections: int = 10

    def __post_init__(self):
        self.network = Network(self.network)

    @property
    def has_credentials(self) -> bool:
        return bool(self.username or self.password)

    def set_query_param(self, key: str, value: str) -> None:
        if not key:
            raise ValueError("N1QL: Key not specified")
        self.query_params[key] = value

    def unset_query_param(self, key: str) -> None:
        if not key:
            raise ValueError("N1QL: Key not specified")
        self.query_params.pop(key, None)

    def copy(self) -> "ClientConfig":
        """An independent copy, including the TLS options and query parameters."""
        return replace(self, tls=replace(self.tls), query_params=dict(self.query_params))
