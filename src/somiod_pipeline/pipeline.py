r"""Assemble and run the complete notification pipeline.

`.NotificationPipeline` owns one of each component and is responsible for
their lifecycle:

* a `.SomiodClient`\ , used to register resources and by the control loop,
* a `.NotificationArchiver`\ ,
* a `.ControlLoop`\ ,
* a `.NotificationDispatcher`\ , and
* a `.TransportListener`\ .

Nothing here is global: a program (or a test) may run several pipelines
side by side, each with its own configuration.

.. code-block:: python

    config = PipelineConfig.model_validate_json(text)
    pipeline = NotificationPipeline(config)
    pipeline.bootstrap()
    with pipeline:
        pipeline.wait()
"""

from __future__ import annotations
import logging
from threading import Event
from typing import Any, Callable, Optional
from typing_extensions import Self

from .archiver import NotificationArchiver
from .client import EVENT_CREATION, ResourceRecord, SomiodClient
from .config import PipelineConfig
from .control import ControlLoop
from .dispatcher import ActedHook, ArchivedHook, NotificationDispatcher
from .exceptions import ListenerConnectionError, PipelineNotRunningError
from .transport import TransportListener


_LOGGER = logging.getLogger(__name__)

ListenerFactory = Callable[..., TransportListener]


class NotificationPipeline:
    """Receive, archive and act on SOMIOD notifications."""

    def __init__(
        self,
        config: PipelineConfig,
        client: Optional[SomiodClient] = None,
        listener_factory: Optional[ListenerFactory] = None,
        on_archived: Optional[ArchivedHook] = None,
        on_acted: Optional[ActedHook] = None,
    ) -> None:
        r"""Create the components of a pipeline. Nothing is started yet.

        :param config: the pipeline configuration.
        :param client: a middleware client to use. If omitted, one is created
            from ``config`` and closed when the pipeline stops.
        :param listener_factory: creates the `.TransportListener`\ . It is
            called with the same arguments as `.TransportListener` and may be
            replaced for testing.
        :param on_archived: passed to the `.NotificationDispatcher`\ .
        :param on_acted: passed to the `.NotificationDispatcher`\ .
        """
        self.config = config
        self._owns_client = client is None
        self.client = client or SomiodClient(
            config.middleware_url,
            root=config.middleware_root,
            verify=config.verify_tls,
            timeout=config.request_timeout,
        )
        self.archiver = NotificationArchiver(
            config.archive.root, schema_path=config.archive.schema_path
        )
        self.control = ControlLoop(self.client, config.control, config.subscriptions)
        self.dispatcher = NotificationDispatcher(
            self.archiver,
            self.control if config.control.enabled else None,
            config.owner_app,
            queue_size=config.queue_size,
            enqueue_timeout=config.enqueue_timeout,
            max_in_flight=config.max_in_flight,
            on_archived=on_archived,
            on_acted=on_acted,
        )
        factory = listener_factory or TransportListener
        self.listener = factory(
            config.broker,
            on_message=self.dispatcher.submit,
            on_connection_lost=self._connection_lost,
        )
        self.error: Optional[ListenerConnectionError] = None
        self._stopped = Event()
        self._running = False

    @property
    def running(self) -> bool:
        """Whether the pipeline has been started and not stopped."""
        return self._running

    def bootstrap(self) -> list[ResourceRecord]:
        """Register this pipeline's resources with the middleware.

        This creates the owning application (and its container, if one is
        configured), then a subscription on every watched container, telling
        the middleware to publish creation events to our broker. Resources
        that already exist are left as they are.

        :return: the resources, in the order they were registered.

        :raises MiddlewareError: if a resource can't be created or retrieved.
        """
        config = self.config
        records = [self.client.create_application(config.owner_app)]
        _LOGGER.info("Application registered: %s", records[-1].resource_name)
        if config.owner_container:
            records.append(
                self.client.create_container(config.owner_app, config.owner_container)
            )
            _LOGGER.info("Container registered: %s", records[-1].resource_name)
        for sub in config.subscriptions:
            name = sub.name or f"sub-{config.owner_app}"
            records.append(
                self.client.create_subscription(
                    sub.application,
                    sub.container,
                    name,
                    evt=EVENT_CREATION,
                    endpoint=config.broker.endpoint,
                )
            )
            _LOGGER.info(
                "Subscription %s registered on %s/%s",
                records[-1].resource_name,
                sub.application,
                sub.container,
            )
        return records

    def start(self) -> None:
        """Start processing, connect to the broker and subscribe.

        If connecting or subscribing fails, everything that was started is
        stopped again before the error propagates.

        :raises ListenerConnectionError: if the broker can't be reached.
        :raises SubscriptionError: if a topic filter can't be subscribed.
        """
        if self._running:
            return
        self.error = None
        self._stopped.clear()
        self.dispatcher.start()
        try:
            self.listener.connect()
            for sub in self.config.subscriptions:
                self.listener.subscribe(sub.topic_filter, sub.qos)
        except BaseException:
            self.listener.disconnect()
            self.dispatcher.stop()
            raise
        self._running = True
        _LOGGER.info("Listening for notifications on %s", self.config.topic_filters)

    def stop(self, wait: bool = True) -> None:
        """Disconnect from the broker and stop processing.

        This is safe to call more than once, and from any thread.

        :param wait: wait for notifications already received to be
            archived and handled.
        """
        self._running = False
        self.listener.disconnect()
        self.dispatcher.stop(wait=wait)
        self._stopped.set()

    def close(self) -> None:
        """Stop the pipeline and release the middleware client."""
        self.stop()
        if self._owns_client:
            self.client.close()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the pipeline stops, or the broker connection is lost.

        :param timeout: the maximum time to wait, in seconds.

        :return: ``True`` if the pipeline stopped, ``False`` on timeout.

        :raises PipelineNotRunningError: if the pipeline was never started.
        :raises ListenerConnectionError: if the connection to the broker was
            lost and the listener will not reconnect.
        """
        if not self._running and not self._stopped.is_set():
            raise PipelineNotRunningError("The pipeline has not been started")
        stopped = self._stopped.wait(timeout)
        if self.error is not None:
            raise self.error
        return stopped

    def send_command(self, action: str) -> str:
        """Send a command to the sensor device straight away.

        :param action: the command, e.g. ``MANUAL_TOGGLE``.

        :return: the resource name of the command.

        :raises CommandSubmissionError: if the command can't be sent.
        """
        return self.control.send_command(action)

    def _connection_lost(self, error: ListenerConnectionError) -> None:
        """Record a lost connection, and stop waiting if it is final."""
        if self.config.broker.reconnect:
            return
        self.error = error
        self._running = False
        self._stopped.set()

    def __enter__(self) -> Self:
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
