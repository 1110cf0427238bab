# weather_client.py - Thin wrapper around the OpenWeatherMap endpoints the proxy forwards to
import logging

import requests

from errors import UpstreamError, UpstreamQuotaRejected
from key_manager import mask_key

DEFAULT_BASE_URL = "https://api.openweathermap.org"
DEFAULT_TIMEOUT = 10


class WeatherClient:
    """
    Issues one GET per call against OpenWeatherMap with the key it is given.

    Raises UpstreamQuotaRejected when the provider answers 429 and
    UpstreamError for every other failure (bad status, network error,
    undecodable body). Retrying and key selection are the caller's job.
    """

    def __init__(self, base_url=DEFAULT_BASE_URL, timeout=DEFAULT_TIMEOUT, units="metric", session=None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.units = units
        self.session = session or requests.Session()

    def current_weather(self, api_key, q=None, lat=None, lon=None):
        if lat and lon:
            params = {"lat": lat, "lon": lon}
        elif q:
            params = {"q": q}
        else:
            raise ValueError("Either q or both lat and lon are required.")
        params["units"] = self.units
        return self._get("/data/2.5/weather", api_key, params)

    def forecast(self, api_key, lat, lon):
        return self._get("/data/2.5/forecast", api_key, {"lat": lat, "lon": lon, "units": self.units})

    def reverse_geocode(self, api_key, lat, lon, limit=1):
        return self._get("/geo/1.0/reverse", api_key, {"lat": lat, "lon": lon, "limit": limit})

    def _get(self, path, api_key, params):
        url = f"{self.base_url}{path}"
        params = dict(params, appid=api_key)
        key_short = mask_key(api_key)
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            status_code = e.response.status_code if e.response is not None else None
            logging.error(f"OpenWeather request to {path} with key {key_short} failed ({status_code}): {e}")
            if status_code == 429:
                raise UpstreamQuotaRejected(f"OpenWeather rejected key {key_short} for quota") from e
            raise UpstreamError(f"OpenWeather request to {path} failed") from e

        try:
            return response.json()
        except ValueError as e:
            logging.error(f"OpenWeather returned a non-JSON body for {path}: {e}")
            raise UpstreamError(f"OpenWeather returned an invalid body for {path}") from e
