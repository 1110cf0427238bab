import os
import time
import logging
from datetime import datetime, timezone

from flask import Flask, request, jsonify
from flask_cors import CORS
from dotenv import load_dotenv

from errors import ProxyError, MissingParameters, QuotaExhausted, UpstreamQuotaRejected, UpstreamError
from key_manager import KeyRotator, DEFAULT_DAILY_LIMIT, load_api_keys
from weather_client import WeatherClient, DEFAULT_BASE_URL, DEFAULT_TIMEOUT

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

# Load environment variables
load_dotenv()

VERSION = "1.0.0"
RESET_TIME = "Tomorrow at midnight UTC"
FORECAST_ENTRIES = 8  # 24 hours at 3 hour steps


def parse_daily_limit(value):
    """Reads DAILY_LIMIT, falling back to the default for anything that is not a positive integer."""
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return DEFAULT_DAILY_LIMIT
    return limit if limit >= 1 else DEFAULT_DAILY_LIMIT


def parse_timeout(value):
    """Reads UPSTREAM_TIMEOUT in seconds, falling back to the default for anything that is not a positive number."""
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT
    return timeout if timeout > 0 else DEFAULT_TIMEOUT


# Configuration
DAILY_LIMIT = parse_daily_limit(os.getenv("DAILY_LIMIT"))
PROXY_HOST = os.getenv("HOST", "0.0.0.0")
PROXY_PORT = int(os.getenv("PORT", 3000))
OPENWEATHER_BASE_URL = os.getenv("OPENWEATHER_BASE_URL", DEFAULT_BASE_URL)
UPSTREAM_TIMEOUT = parse_timeout(os.getenv("UPSTREAM_TIMEOUT"))


def iso_now():
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# --- Response shaping ---

def with_usage(payload, usage):
    if not isinstance(payload, dict):
        raise UpstreamError(f"Expected a JSON object from OpenWeather, got {type(payload).__name__}")
    body = dict(payload)
    body["apiUsage"] = usage
    return body


def limit_forecast(payload, usage):
    body = with_usage(payload, usage)
    entries = body.get("list")
    if not isinstance(entries, list):
        raise UpstreamError("Forecast from OpenWeather has no list of entries")
    body["list"] = entries[:FORECAST_ENTRIES]
    return body


def geocoding_result(payload, usage):
    # Geocoding answers with a bare list; usage only travels in the headers then.
    if isinstance(payload, list):
        return payload
    return with_usage(payload, usage)


# --- Rotation ---

def _fetch_and_record(key_rotator, fetch, shape, selection):
    payload = fetch(selection.key)
    count = key_rotator.record(selection.index)
    usage = {
        "keyUsed": selection.key_number,
        "callsRemaining": key_rotator.daily_limit - count,
    }
    return shape(payload, usage), usage


def daily_limit_reached():
    return QuotaExhausted("All API keys have reached daily limit", payload={"resetTime": RESET_TIME})


def call_with_rotation(key_rotator, fetch, shape, failure_message, exhausted=daily_limit_reached):
    """
    Runs fetch(api_key) with a key from the rotator, counts the call and
    turns the upstream payload into the response body with shape(payload, usage).

    Local exhaustion is reported with exhausted() before any request goes out.
    When OpenWeather rejects the key for quota, a key is acquired again and the
    call retried exactly once; the rotator only knows about calls it has
    recorded, so the retry may well use the same key. Other upstream failures,
    including a body shape() cannot use, are not retried.

    Returns (body, usage) where usage is the apiUsage block for the response.
    """
    selection = key_rotator.acquire()
    if selection is None:
        logging.warning("All API keys have reached the daily limit; rejecting request.")
        raise exhausted()

    try:
        return _fetch_and_record(key_rotator, fetch, shape, selection)
    except UpstreamQuotaRejected:
        logging.warning(f"Rate limit reported by OpenWeather for key {selection.key_number}; retrying once.")
    except UpstreamError as e:
        logging.error(f"{failure_message}: {e}")
        raise UpstreamError(failure_message) from e

    retry_selection = key_rotator.acquire()
    if retry_selection is None:
        raise QuotaExhausted("All API keys exhausted")
    try:
        return _fetch_and_record(key_rotator, fetch, shape, retry_selection)
    except ProxyError as e:
        logging.error(f"Retry with key {retry_selection.key_number} failed: {e}")
        raise UpstreamQuotaRejected("All API keys rate limited") from e


def proxied_response(body, usage):
    response = jsonify(body)
    response.headers["X-Api-Key-Used"] = str(usage["keyUsed"])
    response.headers["X-Api-Calls-Remaining"] = str(usage["callsRemaining"])
    return response


def create_app(key_rotator=None, weather_client=None):
    """Builds the proxy around the given rotator and upstream client, defaulting both from the environment."""
    if key_rotator is None:
        key_rotator = KeyRotator(load_api_keys(), daily_limit=DAILY_LIMIT)
    if weather_client is None:
        weather_client = WeatherClient(base_url=OPENWEATHER_BASE_URL, timeout=UPSTREAM_TIMEOUT)

    app = Flask(__name__)
    app.json.sort_keys = False
    CORS(app, send_wildcard=True)
    started = time.monotonic()

    def uptime():
        return time.monotonic() - started

    # --- Error handlers ---

    @app.errorhandler(ProxyError)
    def handle_proxy_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def handle_not_found(error):
        return jsonify({"error": "Not found"}), 404

    # --- Routes ---

    @app.route('/weather', methods=['GET'])
    def weather():
        q = request.args.get('q')
        lat = request.args.get('lat')
        lon = request.args.get('lon')
        if not (lat and lon) and not q:
            raise MissingParameters("Missing parameters")

        body, usage = call_with_rotation(
            key_rotator,
            lambda api_key: weather_client.current_weather(api_key, q=q, lat=lat, lon=lon),
            with_usage,
            "Failed to fetch weather data",
        )
        return proxied_response(body, usage)

    @app.route('/forecast', methods=['GET'])
    def forecast():
        lat = request.args.get('lat')
        lon = request.args.get('lon')
        if not lat or not lon:
            raise MissingParameters("Latitude and longitude required")

        body, usage = call_with_rotation(
            key_rotator,
            lambda api_key: weather_client.forecast(api_key, lat, lon),
            limit_forecast,
            "Failed to fetch forecast data",
        )
        return proxied_response(body, usage)

    @app.route('/reverse', methods=['GET'])
    def reverse():
        lat = request.args.get('lat')
        lon = request.args.get('lon')
        if not lat or not lon:
            raise MissingParameters("Latitude and longitude required")

        body, usage = call_with_rotation(
            key_rotator,
            lambda api_key: weather_client.reverse_geocode(api_key, lat, lon),
            geocoding_result,
            "Failed to get location name",
            exhausted=lambda: QuotaExhausted("All API keys exhausted"),
        )
        return proxied_response(body, usage)

    @app.route('/status', methods=['GET'])
    def status():
        body = key_rotator.status()
        body["serverTime"] = iso_now()
        return jsonify(body)

    @app.route('/health', methods=['GET'])
    def health_check():
        """Simple health check endpoint."""
        return jsonify({"status": "healthy", "timestamp": iso_now(), "uptime": uptime()})

    @app.route('/', methods=['GET'])
    def index():
        return jsonify({
            "message": "Weather Proxy Server",
            "version": VERSION,
            "endpoints": {
                "weather": "/weather",
                "forecast": "/forecast",
                "reverse": "/reverse",
                "status": "/status",
                "health": "/health",
            },
            "uptime": uptime(),
        })

    app.extensions["key_rotator"] = key_rotator
    app.extensions["weather_client"] = weather_client
    return app


# --- Run the App ---
if __name__ == '__main__':
    app = create_app()
    key_rotator = app.extensions["key_rotator"]
    logging.info(f"Starting Weather Proxy on {PROXY_HOST}:{PROXY_PORT}")
    logging.info(f"Forwarding to: {OPENWEATHER_BASE_URL}")
    logging.info(f"Daily limit per key: {key_rotator.daily_limit} calls")
    logging.info(f"Total API keys: {len(key_rotator)}")
    logging.info(f"Health check: http://localhost:{PROXY_PORT}/health")
    logging.info(f"Status check: http://localhost:{PROXY_PORT}/status")
    app.run(host=PROXY_HOST, port=PROXY_PORT, threaded=True)
