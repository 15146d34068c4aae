from http.server import BaseHTTPRequestHandler
from http.server import HTTPServer
import json
import threading
import time

import mock
import pytest

from llmtrail import Tracer
from llmtrail.internal import logger as llmtrail_logger
from tests._utils import TestDeliveryWriter


class CollectorServer(BaseHTTPRequestHandler):
    """A mock collector capturing the requests made by the writer.

    ``statuses`` holds the status codes to answer with, in order; once exhausted every request gets a 202.
    """

    requests = []
    statuses = []

    def do_POST(self) -> None:
        content_length = int(self.headers["Content-Length"])
        body = self.rfile.read(content_length).decode("utf-8")
        self.requests.append({"path": self.path, "headers": dict(self.headers), "body": body})
        status = self.statuses.pop(0) if self.statuses else 202
        self.send_response(status)
        self.end_headers()
        self.wfile.write(b"{}")

    def log_message(self, format, *args):
        pass


@pytest.fixture
def _collector():
    CollectorServer.requests = []
    CollectorServer.statuses = []
    server = HTTPServer(("localhost", 0), CollectorServer)
    server_thread = threading.Thread(target=server.serve_forever)
    server_thread.daemon = True
    server_thread.start()

    server_address = f"http://{server.server_address[0]}:{server.server_address[1]}"

    yield server_address, CollectorServer

    server.shutdown()
    server.server_close()


@pytest.fixture
def collector(_collector):
    url, handler = _collector

    class _Collector:
        base_url = url

        @property
        def requests(self):
            return handler.requests

        def respond_with(self, *statuses):
            handler.statuses.extend(statuses)

        def payloads(self):
            return [json.loads(r["body"]) for r in handler.requests]

        def wait_for_num_requests(self, num, attempts=1000):
            for _ in range(attempts):
                if len(handler.requests) >= num:
                    return self.payloads()
                # time.sleep will yield the GIL so the server can process the request
                time.sleep(0.001)
            raise TimeoutError(f"Expected {num} requests, got {len(handler.requests)}")

    return _Collector()


@pytest.fixture(autouse=True)
def _reset_logging_buckets():
    llmtrail_logger._buckets.clear()
    yield
    llmtrail_logger._buckets.clear()


@pytest.fixture
def writer():
    return TestDeliveryWriter()


@pytest.fixture
def plugins():
    return []


@pytest.fixture
def tracer(writer, plugins):
    t = Tracer(api_key="<not-a-real-api-key>", plugins=plugins, _writer=writer)
    yield t
    t.close()


@pytest.fixture
def disabled_tracer(writer):
    t = Tracer(disabled=True, _writer=writer)
    yield t
    t.close()


@pytest.fixture
def mock_writer_logs():
    with mock.patch("llmtrail._writer.logger") as m:
        yield m


@pytest.fixture
def mock_tracer_logs():
    with mock.patch("llmtrail._tracer.log") as m:
        yield m
        m.reset_mock()


@pytest.fixture
def mock_plugin_logs():
    with mock.patch("llmtrail._plugins.log") as m:
        yield m
