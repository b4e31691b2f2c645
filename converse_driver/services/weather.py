"""Weather lookup service interface and implementations."""

import math
from dataclasses import dataclass
from typing import Any, Protocol

from converse_driver.utils.logging import get_logger

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0


@dataclass
class WeatherReport:
    """Current conditions at a location."""

    location: str
    temperature: str
    condition: str

    def as_dict(self) -> dict[str, Any]:
        return {"location": self.location, "temperature": self.temperature, "condition": self.condition}


class WeatherService(Protocol):
    """Interface for weather lookup services."""

    async def get_current_weather(self, lat: float, lon: float) -> WeatherReport:
        """Get current conditions for a coordinate.

        Args:
            lat: Latitude in degrees
            lon: Longitude in degrees

        Returns:
            Current weather report

        Raises:
            LookupError: If no data is available for the coordinate
        """
        ...


@dataclass
class WeatherStation:
    """A reporting station with its latest observation."""

    name: str
    lat: float
    lon: float
    temperature_f: int
    condition: str


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


DEFAULT_STATIONS = [
    WeatherStation(name="Portland", lat=45.52, lon=-122.68, temperature_f=60, condition="cloudy"),
    WeatherStation(name="Seattle", lat=47.61, lon=-122.33, temperature_f=55, condition="light rain"),
    WeatherStation(name="San Francisco", lat=37.77, lon=-122.42, temperature_f=64, condition="foggy"),
    WeatherStation(name="Denver", lat=39.74, lon=-104.99, temperature_f=48, condition="clear"),
    WeatherStation(name="New York", lat=40.71, lon=-74.01, temperature_f=71, condition="partly cloudy"),
]


class InMemoryWeatherService:
    """In-memory weather service answering from the nearest known station."""

    def __init__(self, stations: list[WeatherStation] | None = None, max_distance_km: float = 50.0):
        """Initialize with station observations.

        Args:
            stations: Stations to answer from, defaults to a small built-in set
            max_distance_km: Coordinates farther than this from every station have no data
        """
        self.stations = list(stations) if stations is not None else list(DEFAULT_STATIONS)
        self.max_distance_km = max_distance_km

    async def get_current_weather(self, lat: float, lon: float) -> WeatherReport:
        if not self.stations:
            raise LookupError("No weather stations configured")

        nearest = min(self.stations, key=lambda station: haversine_km(lat, lon, station.lat, station.lon))
        distance = haversine_km(lat, lon, nearest.lat, nearest.lon)
        if distance > self.max_distance_km:
            raise LookupError(f"No weather station within {self.max_distance_km:.0f} km of ({lat}, {lon})")

        logger.debug(f"Weather for ({lat}, {lon}) from station {nearest.name} at {distance:.1f} km")
        return WeatherReport(
            location=nearest.name,
            temperature=f"{nearest.temperature_f}F",
            condition=nearest.condition,
        )
