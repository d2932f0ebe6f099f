"""A submodule for custom somiod-pipeline Exceptions."""


# An __all__ for this module is less than helpful, unless we have an
# automated check that everything's included.


class ListenerConnectionError(ConnectionError):
    """The publish/subscribe broker could not be reached.

    This is raised by `.TransportListener.connect` if the broker is unreachable,
    or if it refuses the connection (for example because authentication
    failed). It is also the type of error passed to the ``on_connection_lost``
    callback when an established connection drops unexpectedly.

    This error is fatal to the listener: it is surfaced to the owning process
    rather than being swallowed.
    """


class SubscriptionError(RuntimeError):
    """A topic filter could not be subscribed.

    This is fatal to that specific subscribe attempt only. It is raised if
    the listener is not connected, if the request could not be sent, or if the
    broker rejected the subscription or did not acknowledge it in time.
    """


class DecodeError(ValueError):
    """A notification payload could not be parsed.

    Payloads must be UTF-8 encoded JSON objects. Missing fields are
    tolerated, so this error only indicates a syntax problem: the notification
    is dropped and nothing is archived for it.
    """


class NotificationValidationError(ValueError):
    """An archived notification did not validate against the schema.

    `.NotificationArchiver.archive` never raises this itself: it reports
    problems in a `.ValidationResult`. Call sites that want to treat an
    invalid document as a hard error may call
    `.ValidationResult.raise_for_status`, which raises this error.
    """


class MiddlewareError(RuntimeError):
    """A request to the SOMIOD middleware failed.

    This wraps both transport problems (the middleware could not be reached)
    and HTTP error responses. In the latter case ``status_code`` holds the
    HTTP status code.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """Create the error, optionally recording an HTTP status code.

        :param message: a human-readable description of the failure.
        :param status_code: the HTTP status returned by the middleware, if
            a response was received.
        """
        super().__init__(message)
        self.status_code = status_code


class FetchError(RuntimeError):
    """The content-instance named by a notification could not be fetched.

    The control loop aborts for that notification only, and no command is
    sent.
    """


class ExtractionError(ValueError):
    """A fetched content-instance did not contain a usable value.

    This is raised if the content is empty, is not well-formed, or does
    not hold a number.
    """


class CommandSubmissionError(RuntimeError):
    """A command could not be written back into the middleware.

    There is no retry: the failure is logged and processing continues with the
    next notification.
    """


class PipelineNotRunningError(RuntimeError):
    """An operation needs the pipeline to be running, and it is not.

    For example, `.NotificationDispatcher.submit` may not be called before
    `.NotificationDispatcher.start` or after it has been stopped.
    """
