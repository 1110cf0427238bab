# errors.py - Failures the proxy reports to its callers as JSON


class ProxyError(Exception):
    """Base class for errors rendered as {"error": message, ...} with a status code."""

    status_code = 500

    def __init__(self, message, status_code=None, payload=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload or {}

    def to_dict(self):
        body = {"error": self.message}
        body.update(self.payload)
        return body


class MissingParameters(ProxyError):
    status_code = 400


class QuotaExhausted(ProxyError):
    """No key has calls left today according to local accounting."""

    status_code = 429


class UpstreamQuotaRejected(ProxyError):
    """OpenWeather refused a key for exceeding its quota (HTTP 429)."""

    status_code = 429


class UpstreamError(ProxyError):
    """Any other failure talking to OpenWeather."""

    status_code = 500
