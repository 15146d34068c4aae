import http.client
import json
import os
import ssl
from typing import Optional
from typing import Union
from urllib.parse import urlparse

from llmtrail.internal.logger import get_logger


log = get_logger(__name__)

DEFAULT_TIMEOUT = 5.0

ConnectionType = Union[http.client.HTTPConnection, http.client.HTTPSConnection]


class ProxiedHTTPSConnection(http.client.HTTPSConnection):
    """
    The built-in http.client in Python doesn't respect HTTPS_PROXY (even tho other clients like requests and curl do).

    This implementation simply extends the client with support for basic proxies.
    """

    def __init__(
        self, host: str, port: Optional[int] = None, context: Optional[ssl.SSLContext] = None, **kwargs
    ) -> None:
        if "HTTPS_PROXY" in os.environ:
            tunnel_port = port or 443
            proxy = urlparse(os.environ["HTTPS_PROXY"])
            proxy_host = proxy.hostname or ""
            # Default to 3128 (Squid's default port, de facto standard for HTTP proxies)
            proxy_port = proxy.port or 3128
            super().__init__(proxy_host, proxy_port, context=context, **kwargs)
            self.set_tunnel(host, tunnel_port)
        else:
            super().__init__(host, port, context=context, **kwargs)


def get_connection(url: str, timeout: float = DEFAULT_TIMEOUT) -> ConnectionType:
    """Return an HTTP connection to the given URL."""
    parsed = urlparse(url)
    hostname = parsed.hostname or ""

    if parsed.scheme == "https":
        return ProxiedHTTPSConnection(hostname, parsed.port, timeout=timeout)
    elif parsed.scheme == "http":
        return http.client.HTTPConnection(hostname, parsed.port, timeout=timeout)

    raise ValueError("Unsupported protocol '%s'" % parsed.scheme)


class Response(object):
    """
    Custom API Response object to represent a response from calling the API.

    We do this to ensure we know expected properties will exist, and so we
    can call `resp.read()` and load the body once into an instance before we
    close the HTTPConnection used for the request.
    """

    __slots__ = ["status", "body", "reason"]

    def __init__(self, status=None, body=None, reason=None):
        self.status = status
        self.body = body
        self.reason = reason

    @classmethod
    def from_http_response(cls, resp):
        """
        Build a ``Response`` from the provided ``HTTPResponse`` object.

        This function will call `.read()` to consume the body of the ``HTTPResponse`` object.
        """
        return cls(
            status=resp.status,
            body=resp.read(),
            reason=getattr(resp, "reason", None),
        )

    def get_json(self):
        """Helper to parse the body of this request as JSON"""
        body = self.body
        try:
            if not body:
                log.debug("Empty reply from collector, %r", self)
                return None
            if not isinstance(body, str) and hasattr(body, "decode"):
                body = body.decode("utf-8")
            return json.loads(body)
        except (ValueError, TypeError):
            log.debug("Unable to parse collector JSON response: %r", body, exc_info=True)
            return None

    def __repr__(self):
        return "{0}(status={1!r}, body={2!r}, reason={3!r})".format(
            self.__class__.__name__,
            self.status,
            self.body,
            self.reason,
        )
