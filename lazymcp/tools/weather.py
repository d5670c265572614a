"""Weather tool backed by the OpenWeatherMap HTTP API."""

from __future__ import annotations

import logging
import re
from collections import Counter
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaValidationError

from ..errors import ErrorKind, ExecutionError
from ..session_logging import session_extra
from ..settings import NetworkSettings, WeatherSettings
from .base import CallContext, Tool, ToolInputModel, ToolOutputModel
from .geo import lookup_ip
from .upstream import get_json

logger = logging.getLogger(__name__)

PROVIDER = "openweathermap"

Units = Literal["metric", "imperial"]

FORECAST_PERIODS = 8
FORECAST_DAYS = 5

_COMPASS_POINTS = (
    "N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE",
    "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW",
)

_US_INDICATORS = (",US", ", US", "USA", "UNITED STATES")
_US_STATE_RE = re.compile(r"[ ,](?:CA|NY|TX|FL|IL|PA|OH|GA|NC|MI)\b")


# ----- Provider payloads -----------------------------------------------------


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _Coord(_ProviderModel):
    lat: float
    lon: float


class _Condition(_ProviderModel):
    main: str = ""
    description: str = ""


class _Wind(_ProviderModel):
    speed: float = 0.0
    deg: int = 0


class _Clouds(_ProviderModel):
    all: int = 0


class _CurrentMain(_ProviderModel):
    temp: float
    feels_like: float
    temp_min: float
    temp_max: float
    pressure: int
    humidity: int


class _CurrentSys(_ProviderModel):
    country: str = ""


class ProviderCurrent(_ProviderModel):
    coord: _Coord
    weather: list[_Condition] = Field(default_factory=list)
    main: _CurrentMain
    visibility: int = 0
    wind: _Wind = Field(default_factory=_Wind)
    clouds: _Clouds = Field(default_factory=_Clouds)
    sys: _CurrentSys = Field(default_factory=_CurrentSys)
    name: str = ""


# Last midnight representable by datetime, in UTC seconds.
_MAX_TIMESTAMP = 253_402_214_400
_DAY_SECONDS = 86_400


class _ForecastMain(_ProviderModel):
    temp: float
    temp_min: float
    temp_max: float


class _ForecastItem(_ProviderModel):
    dt: int = Field(ge=0, le=_MAX_TIMESTAMP)
    main: _ForecastMain
    weather: list[_Condition] = Field(default_factory=list)
    pop: float = 0.0


class _ForecastCity(_ProviderModel):
    name: str = ""
    country: str = ""
    coord: _Coord
    timezone: int = Field(default=0, ge=-_DAY_SECONDS, le=_DAY_SECONDS)


class ProviderForecast(_ProviderModel):
    items: list[_ForecastItem] = Field(alias="list")
    city: _ForecastCity


# ----- Tool schemas ------------------------------------------------------------


class WeatherMode(str, Enum):
    CURRENT = "current"
    FORECAST = "forecast"


class WeatherInput(ToolInputModel):
    location: str | None = Field(
        default=None,
        description=(
            "City name (e.g. 'London' or 'New York,US') or 'lat,lon' coordinates. "
            "Uses the client's IP location if omitted."
        ),
    )
    mode: WeatherMode = Field(default=WeatherMode.CURRENT)
    units: Units | None = Field(
        default=None, description="Inferred from the location when omitted"
    )


class WeatherLocation(ToolOutputModel):
    name: str
    country: str
    latitude: float
    longitude: float
    requested: str | None = None


class CurrentConditions(ToolOutputModel):
    condition: str
    description: str
    temperature: float
    feels_like: float
    temp_min: float
    temp_max: float
    humidity: int
    pressure: float
    pressure_unit: str
    wind_speed: float
    wind_direction: str
    wind_degrees: int
    visibility: float | None = None
    visibility_unit: str
    cloudiness: int


class ForecastPeriod(ToolOutputModel):
    time: str
    temperature: float
    condition: str
    precipitation_probability: float


class DailySummary(ToolOutputModel):
    date: str
    temp_min: float
    temp_max: float
    condition: str
    precipitation_probability: float


class WeatherForecast(ToolOutputModel):
    periods: list[ForecastPeriod]
    daily: list[DailySummary]


class WeatherOutput(ToolOutputModel):
    location: WeatherLocation
    units: Units
    temperature_unit: str
    current: CurrentConditions | None = None
    forecast: WeatherForecast | None = None


# ----- Helpers -------------------------------------------------------------------


def determine_units(location: str) -> Units:
    """Guess the unit system from a free-form location string."""
    upper = location.upper()
    if "CANADA" in upper:
        return "metric"
    if any(indicator in upper for indicator in _US_INDICATORS):
        return "imperial"
    if _US_STATE_RE.search(upper):
        return "imperial"
    return "metric"


def wind_direction(degrees: int) -> str:
    return _COMPASS_POINTS[int((degrees + 11.25) / 22.5) % 16]


def parse_coordinates(location: str) -> tuple[float, float] | None:
    parts = location.split(",")
    if len(parts) != 2:
        return None
    try:
        lat, lon = float(parts[0].strip()), float(parts[1].strip())
    except ValueError:
        return None
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        return None
    return lat, lon


def _title(text: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in text.split())


def _temperature_unit(units: Units) -> str:
    return "°F" if units == "imperial" else "°C"


def _parse(model: type[BaseModel], payload: Any) -> Any:
    try:
        return model.model_validate(payload)
    except SchemaValidationError as exc:
        raise ExecutionError(
            ErrorKind.UPSTREAM_ERROR,
            f"{PROVIDER}: malformed {model.__name__} payload",
            retryable=False,
        ) from exc


def map_current(payload: Any, units: Units, requested: str | None) -> WeatherOutput:
    data: ProviderCurrent = _parse(ProviderCurrent, payload)
    condition = data.weather[0] if data.weather else _Condition()
    imperial = units == "imperial"
    if data.visibility > 0:
        visibility = data.visibility / 1609.34 if imperial else data.visibility / 1000
        visibility = round(visibility, 1)
    else:
        visibility = None
    return WeatherOutput(
        location=WeatherLocation(
            name=data.name,
            country=data.sys.country,
            latitude=data.coord.lat,
            longitude=data.coord.lon,
            requested=requested,
        ),
        units=units,
        temperature_unit=_temperature_unit(units),
        current=CurrentConditions(
            condition=condition.main,
            description=_title(condition.description),
            temperature=data.main.temp,
            feels_like=data.main.feels_like,
            temp_min=data.main.temp_min,
            temp_max=data.main.temp_max,
            humidity=data.main.humidity,
            pressure=round(data.main.pressure * 0.02953, 2) if imperial else data.main.pressure,
            pressure_unit="inHg" if imperial else "hPa",
            wind_speed=data.wind.speed,
            wind_direction=wind_direction(data.wind.deg),
            wind_degrees=data.wind.deg,
            visibility=visibility,
            visibility_unit="miles" if imperial else "km",
            cloudiness=data.clouds.all,
        ),
    )


def map_forecast(payload: Any, units: Units, requested: str | None) -> WeatherOutput:
    data: ProviderForecast = _parse(ProviderForecast, payload)
    offset = data.city.timezone

    def local_time(timestamp: int) -> datetime:
        try:
            return datetime.fromtimestamp(timestamp + offset, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise ExecutionError(
                ErrorKind.UPSTREAM_ERROR,
                f"{PROVIDER}: forecast timestamp {timestamp} is out of range",
                retryable=False,
            ) from exc

    periods = []
    for item in data.items[:FORECAST_PERIODS]:
        condition = item.weather[0].description if item.weather else ""
        periods.append(
            ForecastPeriod(
                time=local_time(item.dt).strftime("%Y-%m-%dT%H:%M"),
                temperature=item.main.temp,
                condition=_title(condition),
                precipitation_probability=item.pop,
            )
        )

    days: dict[str, list[_ForecastItem]] = {}
    for item in data.items:
        days.setdefault(local_time(item.dt).strftime("%Y-%m-%d"), []).append(item)

    daily = []
    for day, items in list(days.items())[:FORECAST_DAYS]:
        conditions = Counter(item.weather[0].main for item in items if item.weather)
        dominant = conditions.most_common(1)[0][0] if conditions else ""
        daily.append(
            DailySummary(
                date=day,
                temp_min=min(item.main.temp_min for item in items),
                temp_max=max(item.main.temp_max for item in items),
                condition=dominant,
                precipitation_probability=max(item.pop for item in items),
            )
        )

    return WeatherOutput(
        location=WeatherLocation(
            name=data.city.name,
            country=data.city.country,
            latitude=data.city.coord.lat,
            longitude=data.city.coord.lon,
            requested=requested,
        ),
        units=units,
        temperature_unit=_temperature_unit(units),
        forecast=WeatherForecast(periods=periods, daily=daily),
    )


# ----- Tool ----------------------------------------------------------------------


class WeatherTool(Tool):
    """Current conditions and 5-day forecasts from OpenWeatherMap."""

    name = "weather"
    description = (
        "Get current weather or a 5-day forecast for a location. Uses the client's "
        "IP location by default, or accepts a city name or 'lat,lon' coordinates."
    )
    input_model = WeatherInput
    output_model = WeatherOutput

    def __init__(
        self,
        settings: WeatherSettings | None = None,
        network: NetworkSettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or WeatherSettings()
        self.network = network or NetworkSettings()
        self._transport = transport

    async def execute(self, arguments: WeatherInput, context: CallContext) -> WeatherOutput:
        api_key = self.settings.api_key
        if not api_key:
            raise ExecutionError(
                ErrorKind.UPSTREAM_ERROR,
                "OpenWeatherMap API key not configured. Set the OPENWEATHER_API_KEY "
                "environment variable.",
                retryable=False,
            )
        async with httpx.AsyncClient(
            timeout=self.settings.request_timeout_seconds, transport=self._transport
        ) as client:
            params, units, requested = await self._resolve_location(
                client, arguments, context
            )
            params.update({"appid": api_key, "units": units})
            endpoint = "weather" if arguments.mode == WeatherMode.CURRENT else "forecast"
            logger.info(
                "weather request mode=%s location=%s units=%s",
                arguments.mode.value,
                requested,
                units,
                extra=session_extra(context.session_id),
            )
            payload = await get_json(
                client,
                f"{self.settings.base_url.rstrip('/')}/{endpoint}",
                provider=PROVIDER,
                params=params,
            )
        if arguments.mode == WeatherMode.CURRENT:
            return map_current(payload, units, requested)
        return map_forecast(payload, units, requested)

    async def _resolve_location(
        self,
        client: httpx.AsyncClient,
        arguments: WeatherInput,
        context: CallContext,
    ) -> tuple[dict[str, Any], Units, str]:
        location = (arguments.location or "").strip()
        if location:
            units = arguments.units or determine_units(location)
            coordinates = parse_coordinates(location)
            if coordinates is not None:
                lat, lon = coordinates
                return {"lat": lat, "lon": lon}, units, location
            return {"q": location}, units, location

        if not context.client_address:
            raise ExecutionError(
                ErrorKind.INVALID_TARGET,
                "no location provided and the client IP address is unknown",
                retryable=False,
            )
        geo = await lookup_ip(client, self.network.ip_api_url, context.client_address)
        units = arguments.units or ("imperial" if geo.country_code == "US" else "metric")
        params = {"lat": round(geo.lat, 4), "lon": round(geo.lon, 4)}
        return params, units, f"{geo.city}, {geo.country}"

    def summarize(self, output: WeatherOutput) -> str:
        unit = output.temperature_unit
        location = output.location
        lines: list[str] = []
        if output.current is not None:
            current = output.current
            lines.append(f"# Weather Information: {location.name}\n")
            if location.requested and location.requested != location.name:
                lines.append(f"*Requested location: {location.requested}*\n")
            lines.append("## Current Conditions")
            lines.append(f"- **Condition:** {current.description} ({current.condition})")
            lines.append(
                f"- **Temperature:** {current.temperature:.1f}{unit} "
                f"(feels like {current.feels_like:.1f}{unit})"
            )
            if current.temp_min != current.temp_max:
                lines.append(
                    f"- **Range:** {current.temp_min:.1f}{unit} - {current.temp_max:.1f}{unit}"
                )
            lines.append(f"- **Humidity:** {current.humidity}%")
            lines.append(f"- **Pressure:** {current.pressure:g} {current.pressure_unit}")
            lines.append("\n## Details")
            if current.wind_speed > 0:
                speed_unit = "mph" if output.units == "imperial" else "m/s"
                lines.append(
                    f"- **Wind:** {current.wind_speed:.1f} {speed_unit} "
                    f"{current.wind_direction} ({current.wind_degrees}°)"
                )
            if current.visibility is not None:
                lines.append(
                    f"- **Visibility:** {current.visibility:.1f} {current.visibility_unit}"
                )
            if current.cloudiness > 0:
                lines.append(f"- **Cloudiness:** {current.cloudiness}%")
        elif output.forecast is not None:
            lines.append(f"# Weather Forecast: {location.name}\n")
            if location.requested and location.requested != location.name:
                lines.append(f"*Requested location: {location.requested}*\n")
            lines.append("## Next 24 Hours\n")
            for period in output.forecast.periods:
                chance = ""
                if period.precipitation_probability > 0:
                    chance = f" ({period.precipitation_probability * 100:.0f}% chance rain)"
                lines.append(
                    f"**{period.time}**: {period.temperature:.1f}{unit}, "
                    f"{period.condition}{chance}"
                )
            lines.append("\n## 5-Day Forecast\n")
            for day in output.forecast.daily:
                chance = ""
                if day.precipitation_probability > 0:
                    chance = (
                        f", {day.precipitation_probability * 100:.0f}% chance precipitation"
                    )
                lines.append(
                    f"**{day.date}**: {day.temp_min:.1f}{unit} - {day.temp_max:.1f}{unit}, "
                    f"{day.condition}{chance}"
                )
        lines.append("\n## Location")
        lines.append(f"- **City:** {location.name}, {location.country}")
        lines.append(
            f"- **Coordinates:** {location.latitude:.4f}, {location.longitude:.4f}"
        )
        return "\n".join(lines) + "\n"
