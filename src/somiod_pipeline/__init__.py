r"""somiod-pipeline.

React to notifications from the SOMIOD middleware: every notification is
archived and validated against a schema, and notifications of new readings
drive a threshold rule that may send a command back to the device.

This module contains a number of convenience imports and is intended to be
imported using:

.. code-block:: python

    import somiod_pipeline as sp

Symbols in the top-level module mostly exist elsewhere in the package, but
should be imported from here as a preference, to ensure code does not break
if modules are rearranged.
"""

from .notification import Notification, EventType, decode, encode
from .archiver import NotificationArchiver, ValidationResult
from .client import SomiodClient, ResourceRecord
from .control import (
    ControlLoop,
    ControlDecision,
    ControlOutcome,
    OutcomeStatus,
    ResourceHandle,
    decide,
    extract_value,
)
from .config import (
    ArchiveConfig,
    BrokerConfig,
    ControlConfig,
    ControlRule,
    PipelineConfig,
    SubscriptionConfig,
)
from .dispatcher import NotificationDispatcher
from .transport import TransportListener
from .pipeline import NotificationPipeline
from .logs import configure_logging
from . import exceptions

# The symbols in __all__ are part of our public API.
# They are imported when using `import somiod_pipeline as sp`.
__all__ = [
    "Notification",
    "EventType",
    "decode",
    "encode",
    "NotificationArchiver",
    "ValidationResult",
    "SomiodClient",
    "ResourceRecord",
    "ControlLoop",
    "ControlDecision",
    "ControlOutcome",
    "OutcomeStatus",
    "ResourceHandle",
    "decide",
    "extract_value",
    "ArchiveConfig",
    "BrokerConfig",
    "ControlConfig",
    "ControlRule",
    "PipelineConfig",
    "SubscriptionConfig",
    "NotificationDispatcher",
    "TransportListener",
    "NotificationPipeline",
    "configure_logging",
    "exceptions",
]
