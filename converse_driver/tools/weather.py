"""Current weather tool."""

from typing import Any

from pydantic import BaseModel, Field

from converse_driver.services.weather import WeatherService
from converse_driver.tools.base import ToolDefinition


class GetWeatherInput(BaseModel):
    """Input schema for the weather tool."""

    lat: float = Field(..., ge=-90, le=90, description="Latitude of the location in decimal degrees", examples=[45.5])
    lon: float = Field(
        ..., ge=-180, le=180, description="Longitude of the location in decimal degrees", examples=[-122.6]
    )


def create_get_weather_tool(weather_service: WeatherService) -> ToolDefinition:
    async def get_weather_handler(params: GetWeatherInput) -> dict[str, Any]:
        report = await weather_service.get_current_weather(params.lat, params.lon)
        return report.as_dict()

    return ToolDefinition(
        name="getWeather",
        description=(
            "Get the current weather for a location given its latitude and longitude. "
            "Returns the location name, the temperature in Fahrenheit and a short description of the conditions. "
            "Convert place names to coordinates before calling."
        ),
        input_schema_class=GetWeatherInput,
        handler=get_weather_handler,
    )
