"""Fixtures shared by the somiod-pipeline tests.

Two fakes stand in for the outside world:

* `FakeMiddleware` is an in-memory SOMIOD server, served to `httpx` through
  a `httpx.MockTransport`.
* `FakeMqttClient` mimics the parts of `paho.mqtt.client.Client` that the
  listener uses. Acknowledgements are delivered synchronously, from the
  thread that makes the request.
"""

from __future__ import annotations
import json
from types import SimpleNamespace
from typing import Any, Optional

import httpx
import pytest

from somiod_pipeline.client import DISCOVERY_HEADER, SomiodClient
from somiod_pipeline.config import PipelineConfig
from somiod_pipeline.logs import PIPELINE_LOGGER


BASE_URL = "https://somiod.test"
API_ROOT = "/api/somiod"


class FakeMiddleware:
    """A minimal in-memory middleware, keyed by resource path."""

    def __init__(self) -> None:
        self.resources: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.failures: dict[tuple[str, str], int] = {}
        self.unreachable = False

    def add(self, path: str, **fields: Any) -> None:
        """Add a resource directly, e.g. ``add("app/cont/r1", content=...)``."""
        name = path.split("/")[-1]
        self.resources[f"{API_ROOT}/{path}"] = {"resource_name": name, **fields}

    def fail(self, method: str, path: str, status: int) -> None:
        """Make requests to a path (relative to the API root) fail."""
        self.failures[(method, f"{API_ROOT}/{path}" if path else API_ROOT)] = status

    def requests_to(self, method: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unreachable:
            raise httpx.ConnectError("Connection refused", request=request)
        path = request.url.path
        status = self.failures.get((request.method, path))
        if status is not None:
            return httpx.Response(status, json={"error": "failed"})
        if request.method == "GET":
            if DISCOVERY_HEADER in request.headers:
                prefix = path + "/"
                names = [
                    p[len(prefix) :]
                    for p in self.resources
                    if p.startswith(prefix) and "/" not in p[len(prefix) :]
                ]
                return httpx.Response(200, json=names)
            if path in self.resources:
                return httpx.Response(200, json=self.resources[path])
            return httpx.Response(404, json={"error": "not found"})
        if request.method == "POST":
            parent = path[: -len("/subs")] if path.endswith("/subs") else path
            if parent != API_ROOT and parent not in self.resources:
                return httpx.Response(404, json={"error": "no parent"})
            body = json.loads(request.content)
            child = f"{path}/{body['resource_name']}"
            if child in self.resources:
                return httpx.Response(409, json={"error": "exists"})
            record = {**body, "creation_datetime": "2024-01-01T00:00:00"}
            self.resources[child] = record
            return httpx.Response(201, json=record)
        if request.method == "DELETE":
            doomed = [
                p for p in self.resources if p == path or p.startswith(path + "/")
            ]
            if not doomed:
                return httpx.Response(404, json={"error": "not found"})
            for p in doomed:
                del self.resources[p]
            return httpx.Response(200, json={})
        return httpx.Response(405)

    def http_client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def somiod_client(self) -> SomiodClient:
        return SomiodClient(BASE_URL, client=self.http_client())


class FakeMqttClient:
    """Enough of `paho.mqtt.client.Client` to drive a `.TransportListener`."""

    def __init__(self, settings: SimpleNamespace, *args: Any, **kwargs: Any) -> None:
        self.settings = settings
        self.args = args
        self.client_id = kwargs.get("client_id")
        self.kwargs = kwargs
        self.credentials: Optional[tuple] = None
        self.reconnect_delays: Optional[tuple] = None
        self.connected = False
        self.loop_running = False
        self.loop_stop_calls = 0
        self.subscribed: list[Any] = []
        self.unsubscribed: list[Any] = []
        self.disconnect_calls = 0
        self._mid = 0
        self.on_connect: Any = None
        self.on_disconnect: Any = None
        self.on_message: Any = None
        self.on_subscribe: Any = None

    def username_pw_set(self, username: str, password: Optional[str]) -> None:
        self.credentials = (username, password)

    def reconnect_delay_set(self, min_delay: int, max_delay: int) -> None:
        self.reconnect_delays = (min_delay, max_delay)

    def connect(self, host: str, port: int, keepalive: int) -> int:
        self.address = (host, port, keepalive)
        if self.settings.connect_error is not None:
            raise self.settings.connect_error
        return 0

    def loop_start(self) -> int:
        self.loop_running = True
        if self.settings.acknowledge_connect:
            self.connected = self.settings.connack == 0
            self.on_connect(self, None, {}, self.settings.connack, None)
        return 0

    def loop_stop(self) -> int:
        self.loop_running = False
        self.loop_stop_calls += 1
        return 0

    def is_connected(self) -> bool:
        return self.connected

    def subscribe(self, topic: Any, qos: int = 0) -> tuple[int, Optional[int]]:
        if topic == "":
            raise ValueError("Invalid topic.")
        self.subscribed.append((topic, qos))
        if self.settings.subscribe_result != 0:
            return self.settings.subscribe_result, None
        self._mid += 1
        mid = self._mid
        if self.settings.acknowledge_subscribe:
            codes = self.settings.suback_codes
            if codes is None:
                codes = [qos] if isinstance(topic, str) else [q for _, q in topic]
            self.on_subscribe(self, None, mid, list(codes), None)
        return 0, mid

    def unsubscribe(self, topics: Any) -> tuple[int, int]:
        self.unsubscribed.append(topics)
        return 0, 0

    def disconnect(self) -> int:
        self.disconnect_calls += 1
        was_connected = self.connected
        self.connected = False
        if was_connected and self.on_disconnect is not None:
            self.on_disconnect(self, None, {}, 0, None)
        return 0

    def deliver(self, topic: str, payload: bytes) -> None:
        """Pretend the broker has delivered a message."""
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=payload))

    def drop(self, reason_code: int = 7) -> None:
        """Pretend the connection was lost."""
        self.connected = False
        self.on_disconnect(self, None, {}, reason_code, None)

    def reconnect(self) -> None:
        """Pretend paho has reconnected by itself."""
        self.connected = True
        self.on_connect(self, None, {}, 0, None)


class FakeMqttFactory:
    """Create `FakeMqttClient` objects, and remember them.

    Attributes of ``settings`` control how the next client behaves.
    """

    def __init__(self) -> None:
        self.settings = SimpleNamespace(
            connect_error=None,
            acknowledge_connect=True,
            connack=0,
            subscribe_result=0,
            acknowledge_subscribe=True,
            suback_codes=None,
        )
        self.clients: list[FakeMqttClient] = []

    def __call__(self, *args: Any, **kwargs: Any) -> FakeMqttClient:
        client = FakeMqttClient(self.settings, *args, **kwargs)
        self.clients.append(client)
        return client

    @property
    def latest(self) -> FakeMqttClient:
        return self.clients[-1]


@pytest.fixture
def clean_logger():
    """The pipeline logger, with any handlers added by the test removed after it."""
    logger = PIPELINE_LOGGER
    handlers = logger.handlers[:]
    level = logger.level
    yield logger
    # The [:] copies the list, so it isn't modified while iterating.
    for h in logger.handlers[:]:
        if h not in handlers:
            logger.removeHandler(h)
    logger.setLevel(level)


@pytest.fixture
def middleware():
    """An empty in-memory middleware."""
    return FakeMiddleware()


@pytest.fixture
def sensor_middleware(middleware):
    """A middleware with a sensor application and its readings container."""
    middleware.add("temp-sensor-001")
    middleware.add("temp-sensor-001/readings")
    return middleware


@pytest.fixture
def somiod(middleware):
    """A `.SomiodClient` talking to the in-memory middleware."""
    with middleware.somiod_client() as client:
        yield client


@pytest.fixture
def mqtt_factory():
    """A factory for fake paho clients."""
    return FakeMqttFactory()


@pytest.fixture
def config_dict(tmp_path):
    """A pipeline configuration, as it would be loaded from JSON."""
    return {
        "middleware_url": BASE_URL,
        "owner_app": "dashboard-b",
        "broker": {"connect_timeout": 0.5, "subscribe_timeout": 0.5},
        "subscriptions": [{"application": "temp-sensor-001", "container": "readings"}],
        "archive": {"root": str(tmp_path / "notifications")},
        "control": {"rules": [{"threshold": 25.0, "action": "FAN_ON"}]},
        "enqueue_timeout": 0.5,
    }


@pytest.fixture
def config(config_dict):
    """A validated `.PipelineConfig`."""
    return PipelineConfig.model_validate(config_dict)
