r"""Decode notifications published by the SOMIOD middleware.

When a resource is created in a container that has a subscription, the
middleware publishes a small JSON document to the broker. This module turns
those payloads into immutable `.Notification` records.

Decoding is lenient about fields and strict about syntax: a payload that is
not a JSON object raises `.DecodeError`\ , but a JSON object missing some
(or all) of the expected keys still produces a `.Notification`\ , with empty
strings in place of the missing values. Partial notifications are common, and
should still be archived even if the control loop can't act on them.
"""

from __future__ import annotations
from enum import Enum
import json
from typing import Any, Union

from pydantic import BaseModel, ConfigDict

from .exceptions import DecodeError


NOTIFICATION_FIELDS = (
    "subscription_name",
    "event_type",
    "resource_name",
    "container_path",
    "timestamp",
)
"""The fields of a notification, in canonical order."""


class EventType(str, Enum):
    """The kind of event that triggered a notification."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> EventType:
        """Interpret the middleware's spelling of an event type.

        Subscriptions are created with a numeric ``evt`` (1 for creation,
        2 for deletion), and notifications may echo either the number or a
        word. Matching is case-insensitive.

        :param value: the ``event_type`` field of a notification.

        :return: the matching event type, or ``UNKNOWN``.
        """
        return _EVENT_ALIASES.get(value.strip().lower(), cls.UNKNOWN)


_EVENT_ALIASES = {
    "1": EventType.CREATE,
    "create": EventType.CREATE,
    "creation": EventType.CREATE,
    "created": EventType.CREATE,
    "2": EventType.DELETE,
    "delete": EventType.DELETE,
    "deletion": EventType.DELETE,
    "deleted": EventType.DELETE,
    "3": EventType.UPDATE,
    "update": EventType.UPDATE,
    "updated": EventType.UPDATE,
}


class Notification(BaseModel):
    """A notification describing an event on a middleware resource.

    All fields are strings. A field that was absent from the payload is an
    empty string, never ``None``.
    """

    model_config = ConfigDict(frozen=True)

    subscription_name: str = ""
    event_type: str = ""
    resource_name: str = ""
    container_path: str = ""
    timestamp: str = ""

    @property
    def event(self) -> EventType:
        """The parsed `.EventType` of this notification."""
        return EventType.parse(self.event_type)

    @property
    def is_creation(self) -> bool:
        """Whether this notification reports a newly created resource."""
        return self.event is EventType.CREATE

    def describe(self) -> str:
        """Identify the notification in log messages.

        :return: a short label including the resource name and timestamp.
        """
        resource = self.resource_name or "<no resource_name>"
        timestamp = self.timestamp or "<no timestamp>"
        return f"resource_name={resource} timestamp={timestamp}"

    def to_document(self) -> dict[str, str]:
        """Return the notification's fields in canonical order."""
        return {field: getattr(self, field) for field in NOTIFICATION_FIELDS}


def _field_to_str(value: Any) -> str:
    """Convert a JSON value to the string stored in a `.Notification`."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, separators=(",", ":"))


def decode(payload: Union[bytes, str]) -> Notification:
    """Parse a raw broker payload into a `.Notification`.

    :param payload: the message body, as delivered by the broker.

    :return: the decoded notification. Missing fields are empty strings.

    :raises DecodeError: if the payload is not UTF-8, is not valid JSON, or
        is valid JSON but not an object.
    """
    try:
        text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Notification payload is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise DecodeError(
            f"Notification payload must be a JSON object, not {type(data).__name__}"
        )
    return Notification(
        **{field: _field_to_str(data.get(field)) for field in NOTIFICATION_FIELDS}
    )


def encode(notification: Notification) -> bytes:
    """Serialise a notification in the format the middleware publishes.

    This is the inverse of `.decode`.

    :param notification: the notification to encode.

    :return: a UTF-8 JSON document.
    """
    return json.dumps(notification.to_document()).encode("utf-8")
