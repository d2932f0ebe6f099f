r"""Hand notifications from the transport thread to the archiver and control loop.

The MQTT network thread must not be blocked by slow work, and must never be
stopped by a bad message. `.NotificationDispatcher.submit` is therefore all
the network thread does: it puts the raw message on a bounded queue.

A worker thread takes messages off the queue in order and decodes them. Each
decoded notification is then dispatched to two independent branches, each
of which runs on its own single-threaded executor:

* the archive branch (`.NotificationArchiver.archive`\ ), and
* the control branch (`.ControlLoop.handle`\ ).

Because each branch has a single thread, notifications are archived in the
order they were received, and acted on in the order they were received, but
a slow fetch does not hold up archiving (or vice versa). A semaphore limits
how many branch tasks may be waiting, so the worker stops taking messages off
the queue (and the queue fills up) rather than queueing without limit.

Results are passed to the optional ``on_archived`` and ``on_acted`` hooks.
These are called on the branch threads: if the results update a user
interface, the hook must hand them over to the UI's own thread.
"""

from __future__ import annotations
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
import queue
from threading import BoundedSemaphore, Condition, Event, Lock, Thread
from typing import Any, Callable, Optional

from .archiver import NotificationArchiver, ValidationResult
from .control import ControlLoop, ControlOutcome, OutcomeStatus
from .exceptions import DecodeError, PipelineNotRunningError
from .notification import Notification, decode


_LOGGER = logging.getLogger(__name__)

ArchivedHook = Callable[[Notification, ValidationResult], None]
ActedHook = Callable[[Notification, ControlOutcome], None]

_STOP = object()
_POLL_INTERVAL = 0.1


@dataclass
class DispatcherStats:
    """Counts of what has happened to messages passed to the dispatcher."""

    received: int = 0
    dropped: int = 0
    decoded: int = 0
    decode_errors: int = 0
    archived: int = 0
    invalid: int = 0
    archive_failures: int = 0
    acted: int = 0
    triggered: int = 0
    control_failures: int = 0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def increment(self, name: str) -> None:
        """Add one to a counter, safely from any thread."""
        with self._lock:
            setattr(self, name, getattr(self, name) + 1)

    def as_dict(self) -> dict[str, int]:
        """Return a snapshot of all the counters."""
        with self._lock:
            return {k: v for k, v in vars(self).items() if not k.startswith("_")}


class NotificationDispatcher:
    """Decode queued messages and dispatch them to the archiver and control loop."""

    def __init__(
        self,
        archiver: NotificationArchiver,
        control: Optional[ControlLoop],
        owner_app: str,
        queue_size: int = 100,
        enqueue_timeout: float = 5.0,
        max_in_flight: int = 10,
        on_archived: Optional[ArchivedHook] = None,
        on_acted: Optional[ActedHook] = None,
    ) -> None:
        r"""Set up a dispatcher. Call `.start` before submitting messages.

        :param archiver: archives every decoded notification.
        :param control: acts on notifications. If this is ``None``\ ,
            notifications are only archived.
        :param owner_app: the application notifications are archived under.
        :param queue_size: the number of raw messages that may wait to be
            decoded.
        :param enqueue_timeout: how long `.submit` waits for space in the
            queue before dropping a message.
        :param max_in_flight: how many branch tasks may be dispatched and
            not yet finished, across both branches.
        :param on_archived: called with each notification and its
            `.ValidationResult`\ .
        :param on_acted: called with each notification and its
            `.ControlOutcome`\ .
        """
        self.archiver = archiver
        self.control = control
        self.owner_app = owner_app
        self.enqueue_timeout = enqueue_timeout
        self.on_archived = on_archived
        self.on_acted = on_acted
        self.stats = DispatcherStats()
        self.queue_size = queue_size
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._in_flight = BoundedSemaphore(max_in_flight)
        self._worker: Optional[Thread] = None
        self._stopping = Event()
        self._executors: list[ThreadPoolExecutor] = []
        self._lock = Lock()
        self._running = False
        self._pending = 0
        self._idle = Condition(Lock())

    @property
    def running(self) -> bool:
        """Whether the dispatcher is accepting messages."""
        return self._running

    def start(self) -> None:
        """Start the worker thread and the branch executors.

        Each start gets a new queue and new executors, so a worker left
        behind by `stop(wait=False)` can't take messages meant for the new
        one. Calling this on a running dispatcher does nothing.
        """
        with self._lock:
            if self._running:
                return
            self._queue = queue.Queue(maxsize=self.queue_size)
            self._stopping = Event()
            archive_executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="somiod-archive"
            )
            control_executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="somiod-control"
            )
            self._executors = [archive_executor, control_executor]
            self._worker = Thread(
                target=self._run,
                args=(self._queue, self._stopping, archive_executor, control_executor),
                name="somiod-dispatcher",
                daemon=True,
            )
            self._running = True
            self._worker.start()

    def stop(self, wait: bool = True) -> None:
        r"""Stop accepting messages, and shut down the threads.

        This is safe to call more than once. Messages already queued are
        taken off the queue before the worker stops.

        :param wait: if ``True``\ , wait for queued messages and running
            branch tasks to finish. If ``False``\ , return straight away:
            branch tasks that have not started are cancelled, and messages
            still queued are dropped.
        """
        with self._lock:
            if not self._running:
                return
            self._running = False
            worker = self._worker
            messages = self._queue
            stopping = self._stopping
            executors = self._executors
        stopping.set()
        try:
            messages.put_nowait(_STOP)
        except queue.Full:
            # The worker sees `stopping` once it has emptied the queue.
            pass
        if wait and worker is not None:
            worker.join()
        for executor in executors:
            executor.shutdown(wait=wait, cancel_futures=not wait)

    def submit(self, topic: str, payload: bytes) -> bool:
        """Queue a raw message from the broker.

        This is intended to be the transport's message handler.

        :param topic: the topic the message was published on.
        :param payload: the message body.

        :return: ``True`` if the message was queued, ``False`` if it was
            dropped because the queue stayed full.

        :raises PipelineNotRunningError: if the dispatcher is not running.
        """
        if not self._running:
            raise PipelineNotRunningError("The dispatcher is not running")
        self.stats.increment("received")
        self._begin()
        try:
            self._queue.put((topic, payload), timeout=self.enqueue_timeout)
        except queue.Full:
            self._done()
            self.stats.increment("dropped")
            _LOGGER.error("Notification queue is full, dropping message on %s", topic)
            return False
        return True

    def join(self, timeout: Optional[float] = None) -> bool:
        """Block until every message submitted so far has been fully processed.

        This is mostly useful in tests.

        :param timeout: the maximum time to wait, in seconds.

        :return: ``True`` if everything was processed, ``False`` on timeout.
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def _begin(self) -> None:
        with self._idle:
            self._pending += 1

    def _done(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    def _run(
        self,
        messages: queue.Queue,
        stopping: Event,
        archive_executor: ThreadPoolExecutor,
        control_executor: ThreadPoolExecutor,
    ) -> None:
        """Take messages off the queue until it is empty and we are stopping."""
        while True:
            try:
                item = messages.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if stopping.is_set():
                    return
                continue
            if item is _STOP:
                return
            topic, payload = item
            try:
                self._dispatch(topic, payload, archive_executor, control_executor)
            except Exception:
                _LOGGER.exception("Error dispatching message on %s", topic)
            finally:
                self._done()

    def _dispatch(
        self,
        topic: str,
        payload: bytes,
        archive_executor: ThreadPoolExecutor,
        control_executor: ThreadPoolExecutor,
    ) -> None:
        """Decode one message and start both branches."""
        try:
            notification = decode(payload)
        except DecodeError as e:
            self.stats.increment("decode_errors")
            _LOGGER.warning("DecodeError on %s, notification dropped: %s", topic, e)
            return
        self.stats.increment("decoded")
        _LOGGER.info("Notification received on %s (%s)", topic, notification.describe())
        self._submit_branch(archive_executor, self._archive, notification)
        if self.control is not None:
            self._submit_branch(control_executor, self._act, notification, topic)

    def _submit_branch(
        self, executor: ThreadPoolExecutor, fn: Callable[..., Any], *args: Any
    ) -> None:
        """Run a branch task on its executor, limiting the tasks in flight.

        Each branch task counts as pending work, so `.join` waits for the
        branches as well as for decoding. Its slot is freed when the task
        finishes or is cancelled.
        """
        self._in_flight.acquire()
        self._begin()
        try:
            future = executor.submit(fn, *args)
        except RuntimeError:
            # The executor has been shut down by `stop(wait=False)`.
            self._branch_finished()
            return
        future.add_done_callback(self._branch_finished)

    def _branch_finished(self, future: Optional[Future] = None) -> None:
        self._in_flight.release()
        self._done()

    def _archive(self, notification: Notification) -> None:
        """The archive branch: archive, count, and report."""
        try:
            result = self.archiver.archive(notification, self.owner_app)
        except Exception as e:
            _LOGGER.exception("Archive failed (%s)", notification.describe())
            result = ValidationResult(
                persisted=False, valid=False, errors=[f"Unexpected error: {e}"]
            )
        if not result.persisted:
            self.stats.increment("archive_failures")
        else:
            self.stats.increment("archived")
            if not result.valid:
                self.stats.increment("invalid")
        self._call_hook(self.on_archived, notification, result)

    def _act(self, notification: Notification, topic: str) -> None:
        """The control branch: handle, count, and report."""
        assert self.control is not None
        try:
            outcome = self.control.handle(notification, topic)
        except Exception as e:
            _LOGGER.exception("Control loop failed (%s)", notification.describe())
            outcome = ControlOutcome(
                status=OutcomeStatus.FAILED, error=str(e), error_kind=type(e).__name__
            )
        self.stats.increment("acted")
        if outcome.status is OutcomeStatus.TRIGGERED:
            self.stats.increment("triggered")
        elif outcome.status is OutcomeStatus.FAILED:
            self.stats.increment("control_failures")
        self._call_hook(self.on_acted, notification, outcome)

    @staticmethod
    def _call_hook(hook: Optional[Callable], *args: Any) -> None:
        """Call a result hook, logging rather than propagating its errors."""
        if hook is None:
            return
        try:
            hook(*args)
        except Exception:
            _LOGGER.exception("Error in notification result hook")
