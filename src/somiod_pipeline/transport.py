r"""Receive notifications from an MQTT broker.

The SOMIOD middleware publishes a message to the broker whenever an event
matches a subscription. `.TransportListener` maintains the connection to the
broker and passes each message to a handler, as ``(topic, payload)``\ .

Messages are received by the `paho.mqtt.client.Client` network thread, which
is started by `.TransportListener.connect`. The handler is called on that
thread, one message at a time, in the order the broker delivered them. It
should return quickly: `.NotificationDispatcher.submit` just puts the
message on a queue.

If the connection drops unexpectedly, the ``on_connection_lost`` callback is
called with a `.ListenerConnectionError`\ . Whether the listener then tries
to reconnect is set by `.BrokerConfig.reconnect`\ .
"""

from __future__ import annotations
import logging
from threading import Event, Lock
from typing import Any, Callable, Optional
import uuid

import paho.mqtt.client as mqtt
from paho.mqtt.reasoncodes import ReasonCode
from typing_extensions import Self

from .config import BrokerConfig
from .exceptions import ListenerConnectionError, SubscriptionError


_LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]
ConnectionLostHandler = Callable[[ListenerConnectionError], None]


def generate_client_id(prefix: str) -> str:
    """Generate a client ID that is unique to one connection attempt.

    Brokers disconnect an existing session if a new client connects with the
    same ID, so each attempt (and each running instance) needs its own.

    :param prefix: a readable prefix, e.g. ``temp-sensor``.

    :return: the prefix followed by 8 random hexadecimal characters.
    """
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def _is_failure(reason_code: Any) -> bool:
    """Check an MQTT reason code (or a plain integer) for failure."""
    if isinstance(reason_code, ReasonCode):
        return reason_code.is_failure
    return int(reason_code) != 0


class TransportListener:
    r"""Listen for messages on one or more MQTT topic filters.

    The listener owns its `paho.mqtt.client.Client`\ . A new client, with a
    new client ID, is created each time `.connect` is called, so a listener
    may be connected again after `.disconnect`\ .
    """

    def __init__(
        self,
        broker: BrokerConfig,
        on_message: MessageHandler,
        on_connection_lost: Optional[ConnectionLostHandler] = None,
        client_factory: Optional[Callable[..., mqtt.Client]] = None,
    ) -> None:
        """Create a listener. This does not connect to the broker.

        :param broker: where the broker is, and the reconnection policy.
        :param on_message: called with ``(topic, payload)`` for each message.
        :param on_connection_lost: called if the connection drops when we
            did not ask it to.
        :param client_factory: creates the paho client. This defaults to
            `paho.mqtt.client.Client` and may be replaced for testing.
        """
        self.broker = broker
        self.on_message = on_message
        self.on_connection_lost = on_connection_lost
        self.client_factory = client_factory or mqtt.Client
        self.client_id: Optional[str] = None
        self.error: Optional[ListenerConnectionError] = None
        self._client: Optional[mqtt.Client] = None
        self._lock = Lock()
        self._connected = Event()
        self._connack: Optional[Any] = None
        self._connack_received = Event()
        self._subscriptions: dict[str, int] = {}
        self._pending_subacks: dict[int, tuple[Event, list]] = {}
        self._subscribing = 0
        self._closing = False

    @property
    def is_connected(self) -> bool:
        """Whether the broker connection is currently established."""
        client = self._client
        if client is None or not self._connected.is_set():
            return False
        return client.is_connected()

    @property
    def topic_filters(self) -> list[str]:
        """The topic filters currently subscribed to."""
        return list(self._subscriptions)

    def _create_client(self) -> mqtt.Client:
        """Create a paho client with our callbacks attached."""
        self.client_id = generate_client_id(self.broker.client_id_prefix)
        client = self.client_factory(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=True,
        )
        if self.broker.username is not None:
            client.username_pw_set(self.broker.username, self.broker.password)
        client.reconnect_delay_set(
            min_delay=max(1, int(self.broker.reconnect_min_delay)),
            max_delay=max(1, int(self.broker.reconnect_max_delay)),
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_subscribe = self._on_subscribe
        return client

    def connect(self) -> None:
        """Connect to the broker and start the network thread.

        If the listener is already connected, this does nothing.

        :raises ListenerConnectionError: if the broker can't be reached,
            refuses the connection, or does not reply in time.
        """
        with self._lock:
            if self.is_connected:
                return
        # Clear up anything left by a previous, failed connection.
        self.disconnect()
        with self._lock:
            self.error = None
            self._closing = False
            self._connack = None
            self._connack_received.clear()
            client = self._create_client()
            self._client = client
        address = f"{self.broker.host}:{self.broker.port}"
        try:
            client.connect(self.broker.host, self.broker.port, self.broker.keepalive)
        except (OSError, ValueError) as e:
            self._discard_client()
            raise ListenerConnectionError(
                f"Could not connect to MQTT broker {address}: {e}"
            ) from e
        client.loop_start()
        if not self._connack_received.wait(self.broker.connect_timeout):
            self._discard_client()
            raise ListenerConnectionError(
                f"MQTT broker {address} did not acknowledge the connection"
            )
        if _is_failure(self._connack):
            reason = self._connack
            self._discard_client()
            raise ListenerConnectionError(
                f"MQTT broker {address} refused the connection: {reason}"
            )
        _LOGGER.info("Connected to MQTT broker %s as %s", address, self.client_id)

    def subscribe(self, topic_filter: str, qos: int = 0) -> None:
        """Subscribe to a topic filter, and wait for the broker to confirm.

        The subscription is remembered, and restored if the listener
        reconnects automatically.

        :param topic_filter: e.g. ``api/somiod/temp-sensor-001/#``.
        :param qos: the MQTT quality of service level.

        :raises SubscriptionError: if we are not connected, the request is
            not accepted, or the broker rejects it or does not reply in time.
        """
        client = self._client
        if client is None or not self.is_connected:
            raise SubscriptionError(
                f"Can't subscribe to {topic_filter}: not connected to a broker"
            )
        with self._lock:
            self._subscribing += 1
        try:
            acked = self._request_subscription(client, topic_filter, qos)
        finally:
            with self._lock:
                self._subscribing -= 1
                if not self._subscribing:
                    self._pending_subacks.clear()
        if acked is None:
            raise SubscriptionError(
                f"MQTT broker did not acknowledge subscription to {topic_filter}"
            )
        failures = [code for code in acked if _is_failure_suback(code)]
        if failures:
            raise SubscriptionError(
                f"MQTT broker rejected subscription to {topic_filter}: {failures[0]}"
            )
        self._subscriptions[topic_filter] = qos
        _LOGGER.info("Subscribed to topic: %s", topic_filter)

    def _request_subscription(
        self, client: mqtt.Client, topic_filter: str, qos: int
    ) -> Optional[list]:
        """Send a SUBSCRIBE, and return the codes in its SUBACK if one arrives."""
        try:
            result, mid = client.subscribe(topic_filter, qos)
        except ValueError as e:
            raise SubscriptionError(
                f"Invalid topic filter {topic_filter!r}: {e}"
            ) from e
        if result != mqtt.MQTT_ERR_SUCCESS or mid is None:
            raise SubscriptionError(
                f"Subscribing to {topic_filter} failed: {mqtt.error_string(result)}"
            )
        return self._await_suback(mid)

    def _await_suback(self, mid: int) -> Optional[list]:
        """Wait for the SUBACK of a subscription request."""
        with self._lock:
            waiter = self._pending_subacks.setdefault(mid, (Event(), []))
        try:
            if not waiter[0].wait(self.broker.subscribe_timeout):
                return None
            return waiter[1]
        finally:
            with self._lock:
                self._pending_subacks.pop(mid, None)

    def disconnect(self) -> None:
        """Unsubscribe, disconnect and stop the network thread.

        This is safe to call more than once, and if `.connect` was never
        called. It may be called while a message is being handled: the
        handler will finish, but no further messages will be delivered.
        """
        with self._lock:
            client = self._client
            self._closing = True
        if client is None:
            return
        if self.is_connected and self._subscriptions:
            client.unsubscribe(list(self._subscriptions))
        client.disconnect()
        self._discard_client()
        _LOGGER.info("Disconnected from MQTT broker")

    def _discard_client(self) -> None:
        """Stop the network thread and forget the client."""
        with self._lock:
            client = self._client
            self._client = None
            self._subscriptions = {}
            self._pending_subacks = {}
            self._closing = True
            self._connected.clear()
        if client is not None:
            client.loop_stop()

    def __enter__(self) -> Self:
        self.connect()
        return self

    def __exit__(self, *args: Any) -> None:
        self.disconnect()

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Record the CONNACK, and restore subscriptions after a reconnect."""
        self._connack = reason_code
        if not _is_failure(reason_code):
            self._connected.set()
            if self._connack_received.is_set() and self._subscriptions:
                # This is a reconnection: clean sessions forget subscriptions.
                _LOGGER.info("Reconnected to MQTT broker, restoring subscriptions")
                client.subscribe(list(self._subscriptions.items()))
        self._connack_received.set()

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Report an unexpected loss of connection to the owner."""
        self._connected.clear()
        if self._closing:
            return
        error = ListenerConnectionError(
            f"Lost connection to MQTT broker {self.broker.host}:{self.broker.port}: "
            f"{reason_code}"
        )
        self.error = error
        if self.broker.reconnect:
            _LOGGER.warning("%s; reconnecting", error)
        else:
            _LOGGER.error("%s", error)
            # Called from the network thread, so this doesn't wait for it.
            client.loop_stop()
        if self.on_connection_lost is not None:
            try:
                self.on_connection_lost(error)
            except Exception:
                _LOGGER.exception("Error in connection-lost handler")

    def _on_message(
        self, client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage
    ) -> None:
        """Pass a message to the handler, without letting it break the loop."""
        try:
            self.on_message(message.topic, message.payload)
        except Exception:
            _LOGGER.exception("Error handling MQTT message on %s", message.topic)

    def _on_subscribe(
        self,
        client: mqtt.Client,
        userdata: Any,
        mid: int,
        reason_codes: list,
        properties: Any = None,
    ) -> None:
        """Wake up the thread waiting for this SUBACK.

        A SUBACK may arrive before `.subscribe` has started waiting for it, so
        one is kept while a subscription is in progress. Others, such as
        those for subscriptions restored after a reconnect, are ignored.
        """
        with self._lock:
            waiter = self._pending_subacks.get(mid)
            if waiter is None:
                if not self._subscribing:
                    return
                waiter = self._pending_subacks[mid] = (Event(), [])
        waiter[1].extend(reason_codes)
        waiter[0].set()


def _is_failure_suback(code: Any) -> bool:
    """Check a SUBACK code: values of 0x80 and over are failures."""
    if isinstance(code, ReasonCode):
        return code.is_failure
    return int(code) >= 0x80
