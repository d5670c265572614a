"""IP geolocation lookups backed by ip-api.com."""

from __future__ import annotations

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaValidationError

from ..errors import ErrorKind, ExecutionError
from .upstream import get_json

PROVIDER = "ip-api"


class IPGeolocation(BaseModel):
    """The subset of the ip-api.com payload the tools consume."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    query: str
    status: str
    message: str | None = None
    country: str = ""
    country_code: str = Field(default="", alias="countryCode")
    region: str = ""
    region_name: str = Field(default="", alias="regionName")
    city: str = ""
    zip: str = ""
    lat: float = 0.0
    lon: float = 0.0
    timezone: str = ""
    isp: str = ""
    org: str = ""
    as_name: str = Field(default="", alias="as")


async def lookup_ip(client: httpx.AsyncClient, base_url: str, ip: str) -> IPGeolocation:
    """Resolve geolocation data for ``ip``."""
    payload = await get_json(client, f"{base_url.rstrip('/')}/{ip}", provider=PROVIDER)
    if not isinstance(payload, dict):
        raise ExecutionError(
            ErrorKind.UPSTREAM_ERROR, f"{PROVIDER}: unexpected payload", retryable=False
        )
    if payload.get("status") != "success":
        reason = payload.get("message") or "lookup failed"
        raise ExecutionError(
            ErrorKind.INVALID_TARGET, f"{PROVIDER}: {reason} for {ip}", retryable=False
        )
    try:
        return IPGeolocation.model_validate(payload)
    except SchemaValidationError as exc:
        raise ExecutionError(
            ErrorKind.UPSTREAM_ERROR, f"{PROVIDER}: malformed payload", retryable=False
        ) from exc
