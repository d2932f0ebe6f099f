r"""Fetch the resource named by a notification, and act on its value.

A notification only says *which* content-instance was created. To react to
a reading, the `.ControlLoop` fetches that content-instance from the
middleware, extracts a number from its content (for example
``<temp>27.3</temp>``\ ), and compares it with the configured
`.ControlRule` thresholds. If a threshold is exceeded, a command is written
back into the middleware as a new content-instance (for example
``<cmd>FAN_ON</cmd>``\ ), which the sensor device will be notified of.

`.ControlLoop.handle` never raises for problems with an individual
notification: failures are logged and reported in the returned
`.ControlOutcome`\ , so that one bad notification doesn't stop the next one
being processed.
"""

from __future__ import annotations
from enum import Enum
import logging
from typing import Optional, Sequence
from xml.etree import ElementTree
from xml.sax.saxutils import escape

import paho.mqtt.client as mqtt
from pydantic import BaseModel

from .client import SomiodClient
from .config import ControlConfig, ControlRule, SubscriptionConfig
from .exceptions import (
    CommandSubmissionError,
    ExtractionError,
    FetchError,
    MiddlewareError,
)
from .notification import Notification
from .utilities import UniqueStamp, is_single_segment


_LOGGER = logging.getLogger(__name__)


class ResourceHandle(BaseModel):
    """The address of a content-instance in the middleware."""

    application: str
    container: str
    resource_name: str

    def __str__(self) -> str:
        return f"{self.application}/{self.container}/{self.resource_name}"


class ControlDecision(BaseModel):
    """The result of applying the control rules to a reading."""

    value: float
    action_required: bool
    command: Optional[str] = None
    rule: Optional[ControlRule] = None


class OutcomeStatus(str, Enum):
    """What the control loop did with a notification."""

    SKIPPED = "skipped"
    """The notification did not describe a created resource."""
    NO_ACTION = "no_action"
    """A value was read, but no rule fired."""
    TRIGGERED = "triggered"
    """A rule fired and its command was sent."""
    FAILED = "failed"
    """The value could not be read, or the command could not be sent."""


class ControlOutcome(BaseModel):
    """A report of what `.ControlLoop.handle` did with one notification."""

    status: OutcomeStatus
    handle: Optional[ResourceHandle] = None
    decision: Optional[ControlDecision] = None
    command_name: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


def extract_value(
    content: Optional[str], content_type: Optional[str] = None
) -> float:
    """Extract a numeric reading from a content-instance's content.

    Readings are normally a single XML element such as ``<temp>27.3</temp>``,
    in which case the element's text is used. Content that isn't XML (and
    isn't declared to be XML) is parsed as a bare number.

    :param content: the ``content`` field of the content-instance.
    :param content_type: the declared media type of ``content``, if known.

    :return: the value, as a float.

    :raises ExtractionError: if there is no content, the XML is not
        well-formed, or the value is not a number.
    """
    if content is None or not content.strip():
        raise ExtractionError("The content-instance has no content")
    text = content.strip()
    is_xml = text.startswith("<") or "xml" in (content_type or "").lower()
    if is_xml:
        try:
            element = ElementTree.fromstring(text)
        except ElementTree.ParseError as e:
            raise ExtractionError(f"Content is not well-formed XML: {e}") from e
        text = "".join(element.itertext()).strip()
        if not text:
            raise ExtractionError(f"<{element.tag}> holds no value")
    try:
        return float(text)
    except ValueError as e:
        raise ExtractionError(f"Value {text!r} is not a number") from e


def decide(value: float, rules: Sequence[ControlRule]) -> ControlDecision:
    """Apply threshold rules to a value.

    A rule fires if the value is strictly greater than its threshold. If
    several rules fire, the one with the highest threshold wins, so at most
    one command results from each value.

    :param value: the reading.
    :param rules: the rules to apply.

    :return: the decision, including the command to send if any.
    """
    fired = [rule for rule in rules if value > rule.threshold]
    if not fired:
        return ControlDecision(value=value, action_required=False)
    rule = max(fired, key=lambda r: r.threshold)
    return ControlDecision(
        value=value, action_required=True, command=rule.action, rule=rule
    )


def render_command(action: str) -> str:
    """Wrap a command in the XML element the sensor device expects."""
    return f"<cmd>{escape(action)}</cmd>"


class ControlLoop:
    """Act on notifications of new readings.

    The loop uses a `.SomiodClient` to fetch readings and to send commands.
    The client is not owned by the loop: whoever created it should close it.
    """

    def __init__(
        self,
        client: SomiodClient,
        config: ControlConfig,
        subscriptions: Sequence[SubscriptionConfig] = (),
    ) -> None:
        """Create a control loop.

        :param client: the middleware client used for fetches and commands.
        :param config: where readings come from, the rules, and where
            commands are sent.
        :param subscriptions: the subscriptions notifications arrive through.
            A notification's topic is matched against these to find the
            application and container it came from.
        """
        self.client = client
        self.config = config
        self.subscriptions = list(subscriptions)
        self._stamp = UniqueStamp()

    def subscription_for(self, topic: Optional[str]) -> Optional[SubscriptionConfig]:
        """Return the first subscription whose topic filter matches a topic."""
        if not topic:
            return None
        for sub in self.subscriptions:
            if mqtt.topic_matches_sub(sub.topic_filter, topic):
                return sub
        return None

    def resource_handle(
        self, notification: Notification, topic: Optional[str] = None
    ) -> ResourceHandle:
        """Work out where the resource named in a notification lives.

        If the topic the notification arrived on matches a subscription, the
        resource belongs to that subscription's application. Otherwise the
        configured ``source_app`` is used.

        The container is the last segment of the notification's
        ``container_path`` if there is one (and the configuration allows
        it). Otherwise it is the matching subscription's container, or the
        configured container.

        :param notification: a notification with a ``resource_name``.
        :param topic: the topic the notification was received on, if known.

        :return: the address of the resource.

        :raises FetchError: if the application or container can't be
            determined.
        """
        sub = self.subscription_for(topic)
        application = sub.application if sub else self.config.source_app
        container = sub.container if sub else self.config.container
        if self.config.use_notification_container and notification.container_path:
            segments = [s for s in notification.container_path.split("/") if s]
            if segments:
                container = segments[-1]
        if not application or not container:
            raise FetchError("No application or container is configured for readings")
        if not is_single_segment(notification.resource_name):
            raise FetchError(f"Invalid resource name {notification.resource_name!r}")
        return ResourceHandle(
            application=application,
            container=container,
            resource_name=notification.resource_name,
        )

    def fetch_value(self, handle: ResourceHandle) -> float:
        """Fetch a content-instance and extract its value.

        :param handle: the content-instance to fetch.

        :return: the value it holds.

        :raises FetchError: if the middleware request fails.
        :raises ExtractionError: if the content holds no usable value.
        """
        try:
            record = self.client.get_content_instance(
                handle.application, handle.container, handle.resource_name
            )
        except MiddlewareError as e:
            raise FetchError(f"Could not fetch {handle}: {e}") from e
        return extract_value(record.content, record.content_type)

    def send_command(
        self,
        action: str,
        container: Optional[str] = None,
        application: Optional[str] = None,
    ) -> str:
        """Create a command content-instance for the sensor device.

        This is used when a rule fires, and may also be called directly to
        send a command manually.

        :param action: the command, e.g. ``FAN_ON``.
        :param container: the container the reading came from. This is used
            if no command container is configured.
        :param application: the application the reading came from. This is
            used if no command application is configured.

        :return: the resource name of the new command.

        :raises CommandSubmissionError: if the target can't be determined or
            the middleware rejects the command.
        """
        app = self.config.command_app or application or self.config.source_app
        target = self.config.command_container or container or self.config.container
        if not app or not target:
            raise CommandSubmissionError("No application or container for commands")
        name = f"{self.config.command_prefix}-{self._stamp.next()}"
        try:
            self.client.create_content_instance(
                app,
                target,
                name,
                self.config.command_content_type,
                render_command(action),
            )
        except MiddlewareError as e:
            raise CommandSubmissionError(f"Could not send {action}: {e}") from e
        _LOGGER.info("Command %s sent to %s/%s as %s", action, app, target, name)
        return name

    def handle(
        self, notification: Notification, topic: Optional[str] = None
    ) -> ControlOutcome:
        r"""Fetch the resource a notification describes, and act on it.

        Notifications without a ``resource_name``\ , or that don't report a
        creation, are skipped: nothing is fetched and nothing is sent.

        :param notification: the decoded notification.
        :param topic: the topic it was received on, used to find the
            application that owns the resource.

        :return: what was done. Failures are reported here rather than
            raised.
        """
        if not self.config.enabled:
            return ControlOutcome(status=OutcomeStatus.SKIPPED)
        if not notification.resource_name or not notification.is_creation:
            _LOGGER.debug("Skipping %s", notification.describe())
            return ControlOutcome(status=OutcomeStatus.SKIPPED)
        if notification.resource_name.startswith(f"{self.config.command_prefix}-"):
            # Commands are written to the container we watch, so we see our own.
            _LOGGER.debug("Skipping command %s", notification.describe())
            return ControlOutcome(status=OutcomeStatus.SKIPPED)
        handle: Optional[ResourceHandle] = None
        decision: Optional[ControlDecision] = None
        try:
            handle = self.resource_handle(notification, topic)
            value = self.fetch_value(handle)
            decision = decide(value, self.config.rules)
            if not decision.action_required:
                _LOGGER.info("Value %s from %s needs no action", value, handle)
                return ControlOutcome(
                    status=OutcomeStatus.NO_ACTION, handle=handle, decision=decision
                )
            assert decision.command is not None
            _LOGGER.warning(
                "Value %s from %s exceeds %s, sending %s",
                value,
                handle,
                decision.rule.threshold if decision.rule else "threshold",
                decision.command,
            )
            name = self.send_command(
                decision.command,
                container=handle.container,
                application=handle.application,
            )
        except (FetchError, ExtractionError, CommandSubmissionError) as e:
            kind = type(e).__name__
            _LOGGER.error("%s (%s): %s", kind, notification.describe(), e)
            return ControlOutcome(
                status=OutcomeStatus.FAILED,
                handle=handle,
                decision=decision,
                error=str(e),
                error_kind=kind,
            )
        return ControlOutcome(
            status=OutcomeStatus.TRIGGERED,
            handle=handle,
            decision=decision,
            command_name=name,
        )
