"""
Weather lookup collaborator (OpenWeather current conditions).

lookup() never raises for provider trouble: it returns a WeatherReport whose
`ok` flag says whether `facts` is populated or only a user-facing message is.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from .logging_utils import setup_logger

logger = setup_logger("parley.weather", "logs/parley.log")

_HERE_WORDS = frozenset({"", "current", "here", "my location"})


@dataclass(frozen=True)
class WeatherFacts:
    location: str
    country: str
    temperature: int
    feels_like: int
    description: str
    humidity: int
    wind_speed: float


@dataclass(frozen=True)
class WeatherReport:
    ok: bool
    message: str
    facts: Optional[WeatherFacts] = None


def describe_temperature(temperature: float) -> str:
    if temperature < 10:
        return "It's quite cold"
    if temperature < 20:
        return "It's cool"
    if temperature < 25:
        return "It's pleasant"
    if temperature < 30:
        return "It's warm"
    return "It's hot"


def format_weather_message(facts: WeatherFacts) -> str:
    """Turn structured conditions into a sentence suited to speech"""
    place = f"{facts.location}, {facts.country}" if facts.country else facts.location
    parts = [
        f"Currently in {place}, {describe_temperature(facts.temperature)} at {facts.temperature}°C.",
        f"The weather is {facts.description}.",
    ]
    if abs(facts.temperature - facts.feels_like) >= 3:
        parts.append(f"It feels like {facts.feels_like}°C.")
    if facts.humidity > 70:
        parts.append(f"Humidity is high at {facts.humidity}%.")
    elif facts.humidity < 30:
        parts.append(f"Humidity is low at {facts.humidity}%.")
    if facts.wind_speed > 5:
        parts.append(f"Wind speed is {facts.wind_speed:.1f} meters per second.")
    return " ".join(parts)


class WeatherService:
    """Thin requests-based client for the current-weather endpoint"""

    def __init__(self, api_key: Optional[str], url: str = "https://api.openweathermap.org/data/2.5/weather",
                 default_location: Optional[Dict[str, Any]] = None, timeout: float = 5.0,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.url = url
        self.default_location = default_location or {"name": "Pimpri", "lat": 18.6298, "lon": 73.7997}
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _params(self, location: Optional[str]) -> Dict[str, Any]:
        params: Dict[str, Any] = {"appid": self.api_key, "units": "metric"}
        if not location or location.strip().lower() in _HERE_WORDS:
            params["lat"] = self.default_location["lat"]
            params["lon"] = self.default_location["lon"]
        else:
            params["q"] = location.strip()
        return params

    def lookup(self, location: Optional[str] = None) -> WeatherReport:
        """Current conditions for a city name, or the default location"""
        label = location or self.default_location.get("name", "default location")
        if not self.available:
            logger.warning("Weather lookup requested but no API key is configured")
            return WeatherReport(ok=False, message="Weather information isn't available right now.")

        logger.info(f"Fetching weather for: {label}")
        try:
            resp = self.session.get(self.url, params=self._params(location), timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Weather request failed: {e}")
            return WeatherReport(ok=False,
                                 message="Sorry, I had trouble getting the weather information. Please try again.")

        if resp.status_code == 404:
            return WeatherReport(
                ok=False,
                message=f"I couldn't find weather information for \"{label}\". Could you try a different city name?",
            )
        if resp.status_code != 200:
            logger.error(f"Weather API responded {resp.status_code}")
            return WeatherReport(ok=False,
                                 message="Sorry, I had trouble getting the weather information. Please try again.")

        try:
            data = resp.json()
            facts = WeatherFacts(
                location=data["name"],
                country=(data.get("sys") or {}).get("country", ""),
                temperature=round(data["main"]["temp"]),
                feels_like=round(data["main"]["feels_like"]),
                description=data["weather"][0]["description"],
                humidity=int(data["main"].get("humidity", 50)),
                wind_speed=float((data.get("wind") or {}).get("speed", 0.0)),
            )
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"Unexpected weather payload: {e}")
            return WeatherReport(ok=False,
                                 message="Sorry, I had trouble getting the weather information. Please try again.")

        logger.info(f"Weather for {facts.location}: {facts.temperature}°C, {facts.description}")
        return WeatherReport(ok=True, message=format_weather_message(facts), facts=facts)
