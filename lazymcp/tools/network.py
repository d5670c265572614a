"""Network inspection tool: DNS, TCP and HTTP probes plus IP lookups.

Probes are single attempts bounded by a timeout. Transient failures are
reported with ``retryable=True`` and left to the client to retry.
"""

from __future__ import annotations

import asyncio
import fnmatch
import ipaddress
import logging
import re
import socket
import time
from enum import Enum
from urllib.parse import urlsplit

import httpx
from pydantic import Field, model_validator

from ..errors import ErrorKind, ExecutionError
from ..session_logging import session_extra
from ..settings import NetworkSettings
from .base import CallContext, Tool, ToolInputModel, ToolOutputModel
from .geo import IPGeolocation, lookup_ip
from .upstream import error_for_exception

logger = logging.getLogger(__name__)

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}\.?$)[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*\.?$"
)

_NAME_NOT_FOUND = {
    code
    for code in (getattr(socket, "EAI_NONAME", None), getattr(socket, "EAI_NODATA", None))
    if code is not None
}


class NetworkCheck(str, Enum):
    DNS = "dns"
    TCP = "tcp"
    HTTP = "http"
    IP_INFO = "ip_info"
    CLIENT_IP = "client_ip"


_TARGETLESS_CHECKS = {NetworkCheck.IP_INFO, NetworkCheck.CLIENT_IP}


class NetworkInput(ToolInputModel):
    check: NetworkCheck = Field(default=NetworkCheck.TCP, description="Probe to run")
    target: str | None = Field(
        default=None,
        description="Hostname, IP address or URL. Optional for ip_info and client_ip.",
    )
    port: int | None = Field(
        default=None, ge=1, le=65535, description="TCP port for tcp checks (default 443)"
    )
    timeout_seconds: float | None = Field(
        default=None, gt=0, description="Probe timeout, capped by server configuration"
    )

    @model_validator(mode="after")
    def _require_target(self) -> "NetworkInput":
        if self.target is not None:
            self.target = self.target.strip() or None
        if self.target is None and self.check not in _TARGETLESS_CHECKS:
            raise ValueError(f"target is required for {self.check.value} checks")
        return self


class IPInfo(ToolOutputModel):
    ip: str
    country: str
    country_code: str
    region: str
    city: str
    zip: str
    latitude: float
    longitude: float
    timezone: str
    isp: str
    org: str
    autonomous_system: str

    @classmethod
    def from_geolocation(cls, data: IPGeolocation) -> "IPInfo":
        return cls(
            ip=data.query,
            country=data.country,
            country_code=data.country_code,
            region=data.region_name,
            city=data.city,
            zip=data.zip,
            latitude=data.lat,
            longitude=data.lon,
            timezone=data.timezone,
            isp=data.isp,
            org=data.org,
            autonomous_system=data.as_name,
        )


class NetworkOutput(ToolOutputModel):
    check: NetworkCheck
    target: str | None = None
    reachable: bool
    latency_ms: float | None = None
    addresses: list[str] = Field(default_factory=list)
    status_code: int | None = None
    ip_info: IPInfo | None = None


def _invalid_target(message: str) -> ExecutionError:
    return ExecutionError(ErrorKind.INVALID_TARGET, message, retryable=False)


def _timeout(target: str, seconds: float) -> ExecutionError:
    return ExecutionError(
        ErrorKind.TIMEOUT, f"probe of {target} timed out after {seconds:g}s", retryable=True
    )


def split_target(target: str) -> tuple[str, int | None]:
    """Split a hostname, ``host:port`` or URL target into host and optional port."""
    if "://" in target:
        try:
            parts = urlsplit(target)
            host, port = parts.hostname, parts.port
        except ValueError as exc:
            raise _invalid_target(f"invalid url {target!r}") from exc
        if not host:
            raise _invalid_target(f"url {target!r} has no host")
        return host, port
    try:
        ipaddress.ip_address(target)
        return target, None
    except ValueError:
        pass
    if target.startswith("[") and "]" in target:
        host, _, rest = target[1:].partition("]")
        return host, _parse_port(target, rest[1:]) if rest.startswith(":") else None
    if target.count(":") == 1:
        host, raw_port = target.split(":", 1)
        return host, _parse_port(target, raw_port)
    return target, None


def _parse_port(target: str, raw: str) -> int:
    if not raw.isdigit() or not 1 <= int(raw) <= 65535:
        raise _invalid_target(f"invalid port in target {target!r}")
    return int(raw)


def _probe_port(target: str, embedded: int | None, requested: int | None) -> int:
    if embedded is not None and requested is not None and embedded != requested:
        raise _invalid_target(
            f"target {target!r} names port {embedded} but port {requested} was requested"
        )
    return embedded or requested or 443


def validate_host(host: str, allowed_patterns: tuple[str, ...]) -> str:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        if not _HOSTNAME_RE.match(host):
            raise _invalid_target(f"{host!r} is not a valid hostname or IP address")
    normalized = host.lower().rstrip(".")
    if not any(fnmatch.fnmatch(normalized, pattern.lower()) for pattern in allowed_patterns):
        raise _invalid_target(f"target {host!r} is not allowed by server policy")
    return normalized


async def _getaddrinfo(host: str, port: int | None) -> list[tuple]:
    loop = asyncio.get_running_loop()
    return await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)


def _resolution_error(host: str, exc: socket.gaierror) -> ExecutionError:
    if exc.errno in _NAME_NOT_FOUND:
        return _invalid_target(f"could not resolve host {host!r}")
    return ExecutionError(
        ErrorKind.UNREACHABLE, f"name resolution failed for {host!r}: {exc}", retryable=True
    )


class NetworkTool(Tool):
    """Outbound reachability and latency probes."""

    name = "network"
    description = (
        "Inspect network targets: resolve DNS names, measure TCP connect latency, "
        "check HTTP endpoints, look up IP geolocation, or report the caller's IP."
    )
    input_model = NetworkInput
    output_model = NetworkOutput

    def __init__(
        self,
        settings: NetworkSettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or NetworkSettings()
        self._transport = transport

    def _probe_timeout(self, arguments: NetworkInput) -> float:
        limit = self.settings.probe_timeout_seconds
        if arguments.timeout_seconds is None:
            return limit
        return min(arguments.timeout_seconds, limit)

    async def execute(self, arguments: NetworkInput, context: CallContext) -> NetworkOutput:
        timeout = self._probe_timeout(arguments)
        logger.info(
            "network probe check=%s target=%s timeout=%s",
            arguments.check.value,
            arguments.target,
            timeout,
            extra=session_extra(context.session_id),
        )
        if arguments.check == NetworkCheck.CLIENT_IP:
            return self._client_ip(context)
        if arguments.check == NetworkCheck.IP_INFO:
            return await self._ip_info(arguments, context, timeout)
        target = arguments.target or ""
        raw_host, embedded_port = split_target(target)
        host = validate_host(raw_host, self.settings.allowed_target_patterns)
        if arguments.check == NetworkCheck.DNS:
            return await self._dns(target, host, timeout)
        if arguments.check == NetworkCheck.TCP:
            port = _probe_port(target, embedded_port, arguments.port)
            return await self._tcp(target, host, port, timeout)
        return await self._http(target, timeout)

    def _client_ip(self, context: CallContext) -> NetworkOutput:
        if not context.client_address:
            raise _invalid_target("could not determine client IP address")
        return NetworkOutput(
            check=NetworkCheck.CLIENT_IP,
            target=context.client_address,
            reachable=True,
            addresses=[context.client_address],
        )

    async def _ip_info(
        self, arguments: NetworkInput, context: CallContext, timeout: float
    ) -> NetworkOutput:
        ip = arguments.target or context.client_address
        if not ip:
            raise _invalid_target(
                "could not determine client IP address and no target provided"
            )
        try:
            ipaddress.ip_address(ip)
        except ValueError as exc:
            raise _invalid_target(f"{ip!r} is not an IP address") from exc
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            data = await lookup_ip(client, self.settings.ip_api_url, ip)
        return NetworkOutput(
            check=NetworkCheck.IP_INFO,
            target=ip,
            reachable=True,
            addresses=[data.query],
            ip_info=IPInfo.from_geolocation(data),
        )

    async def _dns(self, target: str, host: str, timeout: float) -> NetworkOutput:
        start = time.perf_counter()
        try:
            infos = await asyncio.wait_for(_getaddrinfo(host, None), timeout)
        except asyncio.TimeoutError as exc:
            raise _timeout(target, timeout) from exc
        except socket.gaierror as exc:
            raise _resolution_error(host, exc) from exc
        addresses: list[str] = []
        for info in infos:
            address = info[4][0]
            if address not in addresses:
                addresses.append(address)
        return NetworkOutput(
            check=NetworkCheck.DNS,
            target=target,
            reachable=bool(addresses),
            latency_ms=_elapsed_ms(start),
            addresses=addresses,
        )

    async def _tcp(self, target: str, host: str, port: int, timeout: float) -> NetworkOutput:
        start = time.perf_counter()
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout
            )
        except asyncio.TimeoutError as exc:
            raise _timeout(target, timeout) from exc
        except socket.gaierror as exc:
            raise _resolution_error(host, exc) from exc
        except OSError as exc:
            raise ExecutionError(
                ErrorKind.UNREACHABLE,
                f"could not connect to {host}:{port}: {exc.strerror or exc}",
                retryable=True,
            ) from exc
        latency = _elapsed_ms(start)
        peer = writer.get_extra_info("peername")
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            logger.debug("error while closing probe connection to %s:%s", host, port)
        addresses = [peer[0]] if peer else []
        return NetworkOutput(
            check=NetworkCheck.TCP,
            target=target,
            reachable=True,
            latency_ms=latency,
            addresses=addresses,
        )

    async def _http(self, target: str, timeout: float) -> NetworkOutput:
        url = target if "://" in target else f"https://{target}"
        scheme = urlsplit(url).scheme.lower()
        if scheme not in ("http", "https"):
            raise _invalid_target(f"unsupported url scheme {scheme!r}")
        allowed = self.settings.allowed_target_patterns

        async def check_hop(request: httpx.Request) -> None:
            # Every redirect hop must pass the same policy as the first request.
            validate_host(request.url.host, allowed)

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                timeout=timeout,
                transport=self._transport,
                follow_redirects=True,
                event_hooks={"request": [check_hop]},
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            resolution = _resolution_cause(exc)
            if resolution is not None:
                raise _resolution_error(urlsplit(url).hostname or url, resolution) from exc
            raise error_for_exception(f"http probe {url}", exc) from exc
        return NetworkOutput(
            check=NetworkCheck.HTTP,
            target=url,
            reachable=response.status_code < 500,
            latency_ms=_elapsed_ms(start),
            status_code=response.status_code,
        )


def _resolution_cause(exc: BaseException) -> socket.gaierror | None:
    """Find the name resolution failure behind an httpx connect error, if any."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, socket.gaierror):
            return current
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return None


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)
