r"""Pydantic models describing the pipeline configuration.

The models in this module allow a `.NotificationPipeline` to be configured
from a dictionary or a JSON file. They are used by the `.cli` module, which
loads them with ``model_validate_json``\ .

A minimal configuration names the application that owns the pipeline and
the sensor container it should watch:

.. code-block:: json

    {
        "middleware_url": "https://localhost:44346",
        "owner_app": "dashboard-b",
        "subscriptions": [
            {"application": "temp-sensor-001", "container": "readings"}
        ],
        "control": {
            "source_app": "temp-sensor-001",
            "container": "readings",
            "rules": [{"threshold": 25.0, "action": "FAN_ON"}]
        }
    }
"""

from __future__ import annotations
from typing import Annotated, Optional, Sequence

from pydantic import BaseModel, Field, field_validator, model_validator


ResourceName = Annotated[
    str,
    Field(min_length=1, pattern=r"^([a-zA-Z0-9\-_]+)$"),
]
"""A name usable as a single segment of a middleware path."""


class BrokerConfig(BaseModel):
    """Where to find the MQTT broker, and how to behave if it goes away."""

    host: str = Field(default="127.0.0.1", description="Broker host name.")
    port: int = Field(default=1883, ge=1, le=65535, description="Broker port.")
    keepalive: int = Field(
        default=60, ge=1, description="MQTT keep-alive interval in seconds."
    )
    client_id_prefix: str = Field(
        default="somiod-listener",
        min_length=1,
        description="Prefix of the random client ID generated per connection.",
    )
    connect_timeout: float = Field(
        default=10.0, gt=0, description="Seconds to wait for the broker's CONNACK."
    )
    subscribe_timeout: float = Field(
        default=10.0, gt=0, description="Seconds to wait for the broker's SUBACK."
    )
    username: Optional[str] = None
    password: Optional[str] = None
    reconnect: bool = Field(
        default=False,
        description=(
            """Reconnect automatically after an unexpected disconnection.

            The owner is told about the loss either way. If this is ``False``
            the listener stops, and the owner must call ``connect`` again.
            """
        ),
    )
    reconnect_min_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=120.0, gt=0)

    @property
    def endpoint(self) -> str:
        """The broker address, as given to the middleware in subscriptions."""
        return f"mqtt://{self.host}:{self.port}"


class SubscriptionConfig(BaseModel):
    """A container whose creation events should be delivered to the pipeline."""

    application: ResourceName
    container: ResourceName
    name: Optional[ResourceName] = Field(
        default=None,
        description="Name of the middleware subscription resource.",
    )
    topic: Optional[str] = Field(
        default=None,
        description="Topic filter to subscribe to. Defaults to `.topic_filter`.",
    )
    qos: int = Field(default=0, ge=0, le=2)

    @property
    def topic_filter(self) -> str:
        """The topic on which the middleware publishes this container's events."""
        return self.topic or f"api/somiod/{self.application}/{self.container}"


class ArchiveConfig(BaseModel):
    """Where notifications are archived, and what they are validated against."""

    root: str = Field(
        default="./notifications",
        description="Folder holding one sub-folder per owning application.",
    )
    schema_path: Optional[str] = Field(
        default=None,
        description=(
            "JSON Schema file for archived notifications. If omitted, the "
            "schema packaged with somiod_pipeline is used."
        ),
    )


class ControlRule(BaseModel):
    """Send ``action`` when a reading is strictly greater than ``threshold``."""

    threshold: float
    action: str = Field(min_length=1)


class ControlConfig(BaseModel):
    """How the control loop fetches readings and where it sends commands."""

    enabled: bool = True
    source_app: Optional[ResourceName] = Field(
        default=None,
        description=(
            "Application owning readings whose topic matches no subscription. "
            "Defaults to the first subscription."
        ),
    )
    container: Optional[ResourceName] = Field(
        default=None,
        description=(
            "Container holding the readings, if not taken from notifications."
        ),
    )
    use_notification_container: bool = Field(
        default=True,
        description="Prefer the notification's container_path over ``container``.",
    )
    rules: Sequence[ControlRule] = Field(default_factory=list)
    command_app: Optional[ResourceName] = Field(
        default=None,
        description="Application receiving commands. Defaults to source_app.",
    )
    command_container: Optional[ResourceName] = Field(
        default=None,
        description=(
            "Container receiving commands. Defaults to the reading's container."
        ),
    )
    command_content_type: str = "application/xml"
    command_prefix: ResourceName = "cmd"


class PipelineConfig(BaseModel):
    r"""The complete configuration of a `.NotificationPipeline`\ ."""

    middleware_url: str = Field(default="https://localhost:44346")
    middleware_root: ResourceName = "somiod"
    verify_tls: bool = Field(
        default=True,
        description="Verify the middleware's TLS certificate.",
    )
    request_timeout: float = Field(default=10.0, gt=0)
    owner_app: ResourceName = Field(
        description="The application this pipeline runs on behalf of.",
    )
    owner_container: Optional[ResourceName] = Field(
        default=None,
        description="A container to create under ``owner_app`` when bootstrapping.",
    )
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    subscriptions: Sequence[SubscriptionConfig] = Field(default_factory=list)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    control: ControlConfig = Field(default_factory=ControlConfig)
    queue_size: int = Field(
        default=100, ge=1, description="Maximum number of undecoded messages held."
    )
    enqueue_timeout: float = Field(
        default=5.0,
        ge=0,
        description="Seconds to wait for queue space before dropping a message.",
    )
    max_in_flight: int = Field(
        default=10,
        ge=1,
        description="Maximum archive and control tasks dispatched but not finished.",
    )

    @field_validator("middleware_url")
    @classmethod
    def strip_trailing_slash(cls, url: str) -> str:
        """Remove any trailing slash, so paths can be appended consistently.

        :param url: the validated URL.

        :return: the URL with no trailing ``/``.
        """
        return url.rstrip("/")

    @model_validator(mode="after")
    def fill_control_defaults(self) -> PipelineConfig:
        """Default the control loop's source to the first subscription.

        :return: the validated model.
        """
        if self.subscriptions:
            first = self.subscriptions[0]
            if self.control.source_app is None:
                self.control.source_app = first.application
            if self.control.container is None:
                self.control.container = first.container
        return self

    @property
    def topic_filters(self) -> list[str]:
        """The topic filters the listener subscribes to."""
        return [s.topic_filter for s in self.subscriptions]
