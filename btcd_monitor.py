#!/usr/bin/env python3
# btcd_monitor.py
#
# An exporter for Prometheus and the btcd full node.
#
# Licensed under BSD 3-clause (see LICENSE).
#
# Dependency licenses:
#   prometheus_client: Apache 2.0
#   python-bitcoinlib: LGPLv3

import http.client
import logging
import os
import signal
import ssl
import sys
import threading
import time
from datetime import datetime
from typing import Any
from typing import Callable
from typing import Dict
from typing import Iterator
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Tuple
from typing import Union
from urllib.parse import urlsplit
from wsgiref.simple_server import WSGIRequestHandler, make_server

from bitcoin.rpc import JSONRPCError, Proxy
from prometheus_client import CollectorRegistry, Counter, make_wsgi_app
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric
from prometheus_client.exposition import ThreadingWSGIServer


logger = logging.getLogger("btcd-exporter")

NAMESPACE = "btcd"

DEFAULT_RPC_PORT = 8334  # btcd mainnet RPC
DEFAULT_METRICS_PORT = 9101
DEFAULT_TIMEOUT = 30

LANDING_PAGE = b"""<html>
<head><title>BTCD Exporter</title></head>
<body>
<h1>BTCD Exporter</h1>
<p><a href='/metrics'>Metrics</a></p>
</body>
</html>
"""

RpcResult = Union[Dict[str, Any], str, int, float, None]

# Anything the proxy can raise on a failed round trip. JSON decoding errors are
# ValueErrors, refused connections and socket timeouts are OSErrors. A reply that
# decodes to something other than an object fails inside the proxy with AttributeError.
RPC_EXCEPTIONS = (JSONRPCError, OSError, http.client.HTTPException, ValueError, AttributeError)

# Raised while picking fields out of a result that does not have the expected shape.
MALFORMED_RESULT = (KeyError, TypeError, ValueError)


class ConfigError(Exception):
    pass


class UpstreamError(Exception):
    """A btcd RPC call failed. The original exception is chained as __cause__."""


class Config(NamedTuple):
    host: str
    username: str
    password: str
    cert_path: Optional[str]
    rpc_scheme: str = "https"
    latest_block: bool = True
    timeout: int = DEFAULT_TIMEOUT
    metrics_addr: str = ""
    metrics_port: int = DEFAULT_METRICS_PORT

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "Config":
        host = environ.get("BTCD_EXPORTER_HOST", "")
        username = environ.get("BTCD_EXPORTER_USERNAME", "")
        password = environ.get("BTCD_EXPORTER_PASSWORD", "")
        if not host or not username or not password:
            raise ConfigError(
                "BTCD_EXPORTER_HOST, BTCD_EXPORTER_USERNAME, BTCD_EXPORTER_PASSWORD must be set"
            )

        rpc_scheme = environ.get("BTCD_EXPORTER_RPC_SCHEME", "https").lower()
        if rpc_scheme not in ("http", "https"):
            raise ConfigError("Unsupported BTCD_EXPORTER_RPC_SCHEME: {}".format(rpc_scheme))

        cert_path = None
        if rpc_scheme == "https":
            cert_path = environ.get("BTCD_EXPORTER_CERT_PATH")
            if not cert_path:
                cert_path = os.path.join(btcd_app_data_dir(environ), "rpc.cert")
                logger.info("BTCD_EXPORTER_CERT_PATH not set, using default path: %s", cert_path)

        try:
            timeout = int(environ.get("BTCD_EXPORTER_TIMEOUT", DEFAULT_TIMEOUT))
            metrics_port = int(environ.get("METRICS_PORT", DEFAULT_METRICS_PORT))
        except ValueError as e:
            raise ConfigError("Invalid numeric setting: {}".format(e)) from e

        return cls(
            host=host,
            username=username,
            password=password,
            cert_path=cert_path,
            rpc_scheme=rpc_scheme,
            latest_block=environ.get("BTCD_EXPORTER_LATEST_BLOCK", "true").lower() == "true",
            timeout=timeout,
            metrics_addr=environ.get("METRICS_ADDR", ""),  # empty = any address
            metrics_port=metrics_port,
        )


def btcd_app_data_dir(environ: Mapping[str, str] = os.environ, platform: str = sys.platform) -> str:
    """Return the directory btcd keeps its data (and rpc.cert) in on this OS."""
    home = environ.get("HOME") or os.path.expanduser("~")
    if platform.startswith("win"):
        app_data = environ.get("LOCALAPPDATA") or environ.get("APPDATA") or home
        return os.path.join(app_data, "Btcd")
    if platform == "darwin":
        return os.path.join(home, "Library", "Application Support", "Btcd")
    return os.path.join(home, ".btcd")


def split_host_port(host: str, default_port: int = DEFAULT_RPC_PORT) -> Tuple[str, int]:
    parts = urlsplit("//" + host)
    try:
        port = parts.port
    except ValueError as e:
        raise ConfigError("Invalid BTCD_EXPORTER_HOST: {}".format(host)) from e
    if not parts.hostname:
        raise ConfigError("Invalid BTCD_EXPORTER_HOST: {}".format(host))
    return parts.hostname, port or default_port


def ssl_context_from_cert(cert_path: str) -> ssl.SSLContext:
    try:
        return ssl.create_default_context(cafile=cert_path)
    except (OSError, ssl.SSLError) as e:
        raise ConfigError("error reading cert file {}: {}".format(cert_path, e)) from e


class NodeInfo(NamedTuple):
    blocks: int
    connections: int
    difficulty: float


class NetTotals(NamedTuple):
    total_bytes_sent: int
    total_bytes_recv: int


class BlockHeader(NamedTuple):
    hash: str
    height: int
    timestamp: int


class BtcdClient:
    """
    A single persistent JSON-RPC session to one btcd node.

    Calls are serialized, the underlying http.client connection is not safe
    for interleaved requests.
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        ssl_context: Optional[ssl.SSLContext] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        hostname, port = split_host_port(host)
        scheme = "https" if ssl_context is not None else "http"

        if ssl_context is not None:
            self._conn = http.client.HTTPSConnection(
                hostname, port=port, timeout=timeout, context=ssl_context
            )  # type: http.client.HTTPConnection
        else:
            self._conn = http.client.HTTPConnection(hostname, port=port, timeout=timeout)

        # Proxy only accepts http URLs; TLS comes from the connection handed to it.
        service_url = "http://{}:{}@{}:{}".format(username, password, hostname, port)
        self._proxy = Proxy(service_url=service_url, timeout=timeout, connection=self._conn)
        self._lock = threading.Lock()
        self.endpoint = "{}://{}:{}".format(scheme, hostname, port)

    @classmethod
    def from_config(cls, config: Config) -> "BtcdClient":
        ssl_context = None
        if config.rpc_scheme == "https":
            ssl_context = ssl_context_from_cert(config.cert_path)
        return cls(
            config.host,
            config.username,
            config.password,
            ssl_context=ssl_context,
            timeout=config.timeout,
        )

    def call(self, *args) -> RpcResult:
        with self._lock:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("RPC call: " + " ".join(str(a) for a in args))
            try:
                result = self._proxy.call(*args)
            except RPC_EXCEPTIONS as e:
                # Drop the socket so the next scrape starts on a fresh connection.
                self._conn.close()
                raise UpstreamError("{} failed: {}".format(args[0], e)) from e
            logger.debug("Result:   %s", result)
            return result

    def get_info(self) -> NodeInfo:
        info = self.call("getinfo")
        try:
            return NodeInfo(
                blocks=int(info["blocks"]),
                connections=int(info["connections"]),
                difficulty=float(info["difficulty"]),
            )
        except MALFORMED_RESULT as e:
            raise UpstreamError("getinfo returned a malformed result: {!r}".format(e)) from e

    def get_net_totals(self) -> NetTotals:
        totals = self.call("getnettotals")
        try:
            return NetTotals(
                total_bytes_sent=int(totals["totalbytessent"]),
                total_bytes_recv=int(totals["totalbytesrecv"]),
            )
        except MALFORMED_RESULT as e:
            raise UpstreamError("getnettotals returned a malformed result: {!r}".format(e)) from e

    def get_best_block_hash(self) -> str:
        block_hash = self.call("getbestblockhash")
        if not isinstance(block_hash, str):
            raise UpstreamError("getbestblockhash returned {!r}".format(block_hash))
        return block_hash

    def get_block_header(self, block_hash: str) -> BlockHeader:
        header = self.call("getblockheader", block_hash, True)
        try:
            return BlockHeader(
                hash=header["hash"],
                height=int(header["height"]),
                timestamp=int(header["time"]),
            )
        except MALFORMED_RESULT as e:
            raise UpstreamError("getblockheader returned a malformed result: {!r}".format(e)) from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class Snapshot(NamedTuple):
    block_height: int
    peer_count: int
    difficulty: float
    bytes_sent: int
    bytes_received: int
    latest_block_timestamp: Optional[int] = None


class Descriptor(NamedTuple):
    name: str
    documentation: str
    kind: str  # "counter" or "gauge"
    field: str

    @property
    def full_name(self) -> str:
        return "{}_{}".format(NAMESPACE, self.name)

    def family(self, value: Optional[float] = None) -> Metric:
        family_type = CounterMetricFamily if self.kind == "counter" else GaugeMetricFamily
        if value is None:
            return family_type(self.full_name, self.documentation)
        return family_type(self.full_name, self.documentation, value=value)


UP = Descriptor("up", "Was the last btcd query successful.", "gauge", "")

DESCRIPTORS = (
    Descriptor("blocks_total", "How many blocks are reported by btcd getinfo.", "counter", "block_height"),
    Descriptor("peers", "How many peers are reported by btcd getinfo.", "gauge", "peer_count"),
    Descriptor("difficulty", "What is difficulty reported by btcd getinfo.", "gauge", "difficulty"),
    Descriptor(
        "sent_bytes", "How many bytes have been sent reported by btcd getnettotals.", "counter", "bytes_sent"
    ),
    Descriptor(
        "received_bytes",
        "How many bytes have been received reported by btcd getnettotals.",
        "gauge",
        "bytes_received",
    ),
)

LATEST_BLOCK = Descriptor(
    "latest_block_timestamp",
    "Timestamp of the latest block in the chain. According to block header information.",
    "gauge",
    "latest_block_timestamp",
)


def exception_name(e: BaseException) -> str:
    err_type = type(e)
    return err_type.__module__ + "." + err_type.__name__


class BtcdCollector:
    """
    Collect-on-scrape bridge between a btcd node and Prometheus.

    Every collect() queries the node in a fixed order and stops at the first
    failure. Either all descriptor metrics are emitted together with up=1, or
    only up=0 is.
    """

    def __init__(
        self,
        client: BtcdClient,
        latest_block: bool = True,
        errors: Optional[Counter] = None,
        process_time: Optional[Counter] = None,
    ) -> None:
        self.client = client
        self.descriptors = DESCRIPTORS + (LATEST_BLOCK,) if latest_block else DESCRIPTORS
        self._latest_block = latest_block
        self._errors = errors
        self._process_time = process_time

    def fetch_snapshot(self) -> Snapshot:
        info = self.client.get_info()
        totals = self.client.get_net_totals()

        latest_block_timestamp = None
        if self._latest_block:
            best_block_hash = self.client.get_best_block_hash()
            latest_block_timestamp = self.client.get_block_header(best_block_hash).timestamp

        return Snapshot(
            block_height=info.blocks,
            peer_count=info.connections,
            difficulty=info.difficulty,
            bytes_sent=totals.total_bytes_sent,
            bytes_received=totals.total_bytes_recv,
            latest_block_timestamp=latest_block_timestamp,
        )

    def describe(self) -> Iterator[Metric]:
        yield UP.family()
        for descriptor in self.descriptors:
            yield descriptor.family()

    def collect(self) -> Iterator[Metric]:
        process_start = datetime.now()
        try:
            snapshot = self.fetch_snapshot()  # type: Optional[Snapshot]
        except UpstreamError as e:
            logger.error("Error collecting btcd statistics: %s", e)
            self._count_error(e)
            snapshot = None

        duration = datetime.now() - process_start
        if self._process_time is not None:
            self._process_time.inc(duration.total_seconds())
        logger.debug("Collection took %s seconds", duration)

        return iter(self.render(snapshot))

    def render(self, snapshot: Optional[Snapshot]) -> Tuple[Metric, ...]:
        if snapshot is None:
            return (UP.family(0),)
        return (UP.family(1),) + tuple(
            descriptor.family(float(getattr(snapshot, descriptor.field)))
            for descriptor in self.descriptors
        )

    def _count_error(self, e: UpstreamError) -> None:
        if self._errors is None:
            return
        cause = e.__cause__ if e.__cause__ is not None else e
        self._errors.labels(**{"type": exception_name(cause)}).inc()


def build_registry(client: BtcdClient, latest_block: bool = True) -> CollectorRegistry:
    """Create a registry holding the btcd collector and the exporter's own counters."""
    registry = CollectorRegistry()
    errors = Counter(
        "btcd_exporter_errors",
        "Number of errors encountered by the exporter",
        labelnames=["type"],
        registry=None,
    )
    process_time = Counter(
        "btcd_exporter_process_time",
        "Time spent processing metrics from btcd node",
        registry=None,
    )
    # Collectors run in registration order; the counters must be read after the
    # collector has updated them for this scrape.
    registry.register(
        BtcdCollector(client, latest_block=latest_block, errors=errors, process_time=process_time)
    )
    registry.register(errors)
    registry.register(process_time)
    return registry


def make_exporter_app(registry: CollectorRegistry) -> Callable:
    metrics_app = make_wsgi_app(registry)

    def exporter_app(environ, start_response):
        if environ.get("PATH_INFO", "/") == "/metrics":
            return metrics_app(environ, start_response)
        start_response(
            "200 OK",
            [("Content-Type", "text/html; charset=utf-8"), ("Content-Length", str(len(LANDING_PAGE)))],
        )
        return [LANDING_PAGE]

    return exporter_app


class QuietHandler(WSGIRequestHandler):
    """Send the per-request access line to the debug log instead of stderr."""

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)


def sigterm_handler(signal, frame) -> None:
    logger.critical("Received SIGTERM. Exiting.")
    sys.exit(0)


def main():
    # UTC timestamps, same layout as btcd's own logs.
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(message)s", datefmt="%Y-%m-%dT%H:%M:%SZ"
    )
    logging.Formatter.converter = time.gmtime
    logger.setLevel(os.environ.get("LOG_LEVEL", "INFO"))

    # Handle SIGTERM gracefully.
    signal.signal(signal.SIGTERM, sigterm_handler)

    try:
        config = Config.from_env()
        client = BtcdClient.from_config(config)
    except ConfigError as e:
        logger.critical("%s", e)
        sys.exit(1)

    registry = build_registry(client, latest_block=config.latest_block)
    app = make_exporter_app(registry)

    try:
        httpd = make_server(
            config.metrics_addr,
            config.metrics_port,
            app,
            server_class=ThreadingWSGIServer,
            handler_class=QuietHandler,
        )
    except OSError as e:
        logger.critical("Cannot listen on port %d: %s", config.metrics_port, e)
        client.close()
        sys.exit(1)

    logger.info("Scraping %s, starting server on port %d", client.endpoint, config.metrics_port)
    try:
        httpd.serve_forever()
    finally:
        httpd.server_close()
        client.close()


if __name__ == "__main__":
    main()
