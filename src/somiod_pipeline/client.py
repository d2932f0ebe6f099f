"""A client for the SOMIOD middleware's HTTP API.

The middleware manages a tree of resources::

    /api/somiod/{application}/{container}/{content-instance}
    /api/somiod/{application}/{container}/subs/{subscription}

Resources are created by POSTing a JSON body to their parent. Whether a
POST to a container creates a content-instance or a subscription depends on
the path and the shape of the body. A ``409 Conflict`` response means the
resource already exists: `.SomiodClient` treats this as success and
retrieves the existing resource instead.

Responses are JSON objects with (at least) a ``resource_name`` field. They
are decoded defensively into `.ResourceRecord` objects, in which every field
is optional.
"""

from __future__ import annotations
import logging
from typing import Any, Mapping, Optional
from urllib.parse import quote

import httpx
from typing_extensions import Self
from pydantic import BaseModel, ConfigDict, Field

from .exceptions import MiddlewareError


_LOGGER = logging.getLogger(__name__)

DISCOVERY_HEADER = "somiod-discovery"
EVENT_CREATION = 1
EVENT_DELETION = 2


class ResourceRecord(BaseModel):
    """A middleware resource, as returned by the HTTP API.

    No field is guaranteed to be present. Fields that were missing, or had
    an unexpected type, are ``None``. The full response is kept in ``raw``.
    """

    model_config = ConfigDict(frozen=True)

    resource_name: Optional[str] = None
    creation_datetime: Optional[str] = None
    content_type: Optional[str] = None
    content: Optional[str] = None
    evt: Optional[int] = None
    endpoint: Optional[str] = None
    raw: Mapping[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_response(cls, data: Any) -> ResourceRecord:
        """Decode a response body field by field.

        :param data: the decoded JSON body of a response.

        :return: a record holding whichever known fields were usable.
        """
        if not isinstance(data, Mapping):
            return cls()
        fields: dict[str, Any] = {"raw": dict(data)}
        for name in (
            "resource_name",
            "creation_datetime",
            "content_type",
            "content",
            "endpoint",
        ):
            value = data.get(name)
            if isinstance(value, str):
                fields[name] = value
            elif isinstance(value, (int, float)) and not isinstance(value, bool):
                fields[name] = str(value)
        evt = data.get("evt")
        if isinstance(evt, int) and not isinstance(evt, bool):
            fields["evt"] = evt
        elif isinstance(evt, str) and evt.strip().isdigit():
            fields["evt"] = int(evt)
        return cls(**fields)


def _names_from_listing(data: Any) -> list[str]:
    """Extract resource names from a discovery response.

    The middleware returns a list of names, but a list of resource objects
    is accepted too. Items without a usable name are skipped.
    """
    if not isinstance(data, list):
        raise MiddlewareError(
            f"Expected a list from a discovery request, got {type(data).__name__}"
        )
    names = []
    for item in data:
        if isinstance(item, str):
            names.append(item)
        else:
            record = ResourceRecord.from_response(item)
            if record.resource_name:
                names.append(record.resource_name)
    return names


class SomiodClient:
    """A client for the SOMIOD middleware.

    The client owns an `httpx.Client`, unless one is supplied (which is
    useful for testing). Call `.close` or use the client as a context manager
    to release its connections.
    """

    def __init__(
        self,
        base_url: str,
        root: str = "somiod",
        client: Optional[httpx.Client] = None,
        verify: bool = True,
        timeout: float = 10.0,
    ) -> None:
        """Create a client for a middleware server.

        :param base_url: the server, e.g. ``https://localhost:44346``.
        :param root: the name of the API root, under ``/api/``.
        :param client: an `httpx.Client` to use. If this is given,
            ``verify`` and ``timeout`` are ignored.
        :param verify: whether to check the server's TLS certificate. This
            may need to be ``False`` for a development server.
        :param timeout: the timeout for each request, in seconds.
        """
        self.base_url = base_url.rstrip("/")
        self.root = root
        self._owns_client = client is None
        self.client = client or httpx.Client(
            base_url=self.base_url,
            verify=verify,
            timeout=timeout,
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        """Close the underlying HTTP client, if it was created here."""
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def path(self, *segments: str) -> str:
        """Return the URL of a resource.

        :param segments: the names of the resource and its ancestors.

        :return: a URL such as ``https://localhost:44346/api/somiod/app/container``.

        :raises MiddlewareError: if a name can't be encoded in a URL.
        """
        try:
            quoted = [quote(s, safe="") for s in segments]
        except UnicodeEncodeError as e:
            raise MiddlewareError(f"Invalid resource name in {segments!r}: {e}") from e
        return "/".join([f"{self.base_url}/api/{self.root}", *quoted])

    def _request(
        self,
        method: str,
        path: str,
        description: str,
        json: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        allow_conflict: bool = False,
    ) -> Optional[httpx.Response]:
        """Send a request, converting failures to `.MiddlewareError`.

        :param method: the HTTP method.
        :param path: the full URL, from `.path`.
        :param description: what we are doing, for error messages.
        :param json: a body to send as JSON.
        :param headers: additional headers.
        :param allow_conflict: return ``None`` instead of raising if the
            response is ``409 Conflict``.

        :return: the response, or ``None`` for an allowed conflict.

        :raises MiddlewareError: if the request could not be sent, or the
            response has an error status.
        """
        try:
            r = self.client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            raise MiddlewareError(f"Failed to {description}: {e}") from e
        if allow_conflict and r.status_code == httpx.codes.CONFLICT:
            return None
        try:
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise MiddlewareError(
                f"Failed to {description}: {r.status_code} {r.reason_phrase}",
                status_code=r.status_code,
            ) from e
        return r

    @staticmethod
    def _json(r: httpx.Response, description: str) -> Any:
        try:
            return r.json()
        except ValueError as e:
            raise MiddlewareError(
                f"Failed to {description}: response was not JSON",
                status_code=r.status_code,
            ) from e

    def _get(self, description: str, *segments: str) -> ResourceRecord:
        r = self._request("GET", self.path(*segments), description)
        assert r is not None
        return ResourceRecord.from_response(self._json(r, description))

    def _create(
        self, description: str, body: Mapping[str, Any], *segments: str
    ) -> Optional[ResourceRecord]:
        """POST a new resource, returning ``None`` if it already exists."""
        r = self._request(
            "POST", self.path(*segments), description, json=body, allow_conflict=True
        )
        if r is None:
            return None
        return ResourceRecord.from_response(self._json(r, description))

    def create_application(self, name: str) -> ResourceRecord:
        """Create an application, or retrieve it if it already exists.

        :param name: the application's resource name.

        :return: the application.
        """
        record = self._create("create application", {"resource_name": name})
        if record is None:
            _LOGGER.info("Application '%s' already exists, retrieving it.", name)
            return self.get_application(name)
        return record

    def get_application(self, name: str) -> ResourceRecord:
        """Retrieve an application."""
        return self._get("get application", name)

    def create_container(self, app: str, name: str) -> ResourceRecord:
        """Create a container, or retrieve it if it already exists.

        :param app: the application that owns the container.
        :param name: the container's resource name.

        :return: the container.
        """
        record = self._create("create container", {"resource_name": name}, app)
        if record is None:
            _LOGGER.info("Container '%s/%s' already exists, retrieving it.", app, name)
            return self.get_container(app, name)
        return record

    def get_container(self, app: str, name: str) -> ResourceRecord:
        """Retrieve a container."""
        return self._get("get container", app, name)

    def create_subscription(
        self,
        app: str,
        container: str,
        name: str,
        evt: int = EVENT_CREATION,
        endpoint: str = "mqtt://127.0.0.1:1883",
    ) -> ResourceRecord:
        """Subscribe an endpoint to events on a container.

        If the subscription already exists, it is retrieved instead.

        :param app: the application owning the container.
        :param container: the container to watch.
        :param name: the subscription's resource name.
        :param evt: the event to notify: 1 for creation, 2 for deletion.
        :param endpoint: where to send notifications, e.g.
            ``mqtt://localhost:1883``.

        :return: the subscription.
        """
        body = {"resource_name": name, "evt": evt, "endpoint": endpoint}
        record = self._create("create subscription", body, app, container, "subs")
        if record is None:
            _LOGGER.info("Subscription '%s' already exists, retrieving it.", name)
            return self.get_subscription(app, container, name)
        return record

    def get_subscription(self, app: str, container: str, name: str) -> ResourceRecord:
        """Retrieve a subscription."""
        return self._get("get subscription", app, container, "subs", name)

    def create_content_instance(
        self,
        app: str,
        container: str,
        name: str,
        content_type: str,
        content: str,
    ) -> ResourceRecord:
        """Create a content-instance holding some data.

        Content-instances are never overwritten, so a conflict here is an
        error rather than something to fall back from.

        :param app: the application owning the container.
        :param container: the container to create the content-instance in.
        :param name: the content-instance's resource name.
        :param content_type: the media type of ``content``.
        :param content: the data to store.

        :return: the new content-instance.

        :raises MiddlewareError: if the content-instance could not be created.
        """
        body = {
            "resource_name": name,
            "content_type": content_type,
            "content": content,
        }
        description = "create content-instance"
        r = self._request("POST", self.path(app, container), description, json=body)
        assert r is not None
        return ResourceRecord.from_response(self._json(r, description))

    def get_content_instance(
        self, app: str, container: str, name: str
    ) -> ResourceRecord:
        """Retrieve a content-instance, including its content."""
        return self._get("get content-instance", app, container, name)

    def discover_applications(self) -> list[str]:
        """List the names of all applications."""
        description = "discover applications"
        r = self._request(
            "GET",
            self.path(),
            description,
            headers={DISCOVERY_HEADER: "application"},
        )
        assert r is not None
        return _names_from_listing(self._json(r, description))

    def discover_content_instances(self, app: str, container: str) -> list[str]:
        """List the names of the content-instances in a container."""
        description = "discover content-instances"
        r = self._request(
            "GET",
            self.path(app, container),
            description,
            headers={DISCOVERY_HEADER: "content-instance"},
        )
        assert r is not None
        return _names_from_listing(self._json(r, description))

    def delete_application(self, name: str) -> None:
        """Delete an application and everything it contains."""
        self._request("DELETE", self.path(name), "delete application")

