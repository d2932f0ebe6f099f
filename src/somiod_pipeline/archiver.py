r"""Archive notifications to disk and validate them against a schema.

Every notification received for an application is written to its own file,
in a folder named after that application::

    {root}/{owner_app}/notification_2024-01-01_00-00-00-000000_1704067200000000000.json

The file holds the five notification fields, in canonical order, as a JSON
object. After it has been written, the file is read back and validated
against a JSON Schema. By default, the schema packaged with this module is
used (``schemas/notification.schema.json``\ ).

Archiving is an audit side channel, so `.NotificationArchiver.archive` does
not raise for I/O or validation problems. Instead, it returns a
`.ValidationResult` describing what happened, and it is up to the caller to
decide whether an invalid document is an error.
"""

from __future__ import annotations
from contextlib import suppress
from importlib.resources import files
import json
import logging
import os
from typing import Any, Optional

import jsonschema
from pydantic import BaseModel, Field

from .exceptions import NotificationValidationError
from .notification import Notification
from .utilities import UniqueStamp, is_single_segment


_LOGGER = logging.getLogger(__name__)

FILENAME_PREFIX = "notification_"
FILENAME_SUFFIX = ".json"
MAX_NAME_ATTEMPTS = 5


class ValidationResult(BaseModel):
    """The outcome of archiving one notification."""

    persisted: bool = Field(description="Whether the document was written.")
    valid: bool = Field(description="Whether the written document is valid.")
    errors: list[str] = Field(
        default_factory=list,
        description="Every problem found, in the order it was found.",
    )
    path: Optional[str] = Field(
        default=None, description="Where the document was written."
    )

    def raise_for_status(self) -> None:
        """Raise an exception if the document was not archived and valid.

        This is for call sites that treat an invalid notification as a hard
        error, rather than something to log and move past.

        :raises NotificationValidationError: if the notification was not
            persisted, or failed validation.
        """
        if not (self.persisted and self.valid):
            raise NotificationValidationError("; ".join(self.errors) or "invalid")


def default_schema_path() -> str:
    """Return the location of the schema packaged with this module."""
    schemas = files("somiod_pipeline").joinpath("schemas")
    return str(schemas.joinpath("notification.schema.json"))


def render_document(notification: Notification) -> str:
    """Render a notification as a canonical, human-readable JSON document.

    :param notification: the notification to render.

    :return: a JSON object with the fields in canonical order.
    """
    return json.dumps(notification.to_document(), indent=4, ensure_ascii=False) + "\n"


def format_validation_error(error: jsonschema.ValidationError) -> str:
    """Describe a schema violation, including where in the document it is."""
    location = "/".join(str(p) for p in error.absolute_path) or "<document>"
    return f"{location}: {error.message}"


class NotificationArchiver:
    r"""Write notifications to disk and check them against a schema.

    One archiver may be shared between threads: file names are generated
    from a `.UniqueStamp`\ , and files are created exclusively, so two
    notifications are never written to the same file.
    """

    def __init__(self, root: str, schema_path: Optional[str] = None) -> None:
        r"""Create an archiver.

        :param root: the folder in which each application's folder is made.
        :param schema_path: the JSON Schema file to validate against. If this
            is ``None``\ , the packaged schema is used. The schema is read each
            time a notification is validated, so it may be created or edited
            while the archiver is running.
        """
        self.root = root
        self.schema_path = schema_path or default_schema_path()
        self._stamp = UniqueStamp()

    def application_folder(self, owner_app: str) -> str:
        """Return the folder that holds an application's notifications."""
        return os.path.join(self.root, owner_app)

    def archive(self, notification: Notification, owner_app: str) -> ValidationResult:
        r"""Persist a notification and validate the persisted document.

        Each step may fail without raising an exception. If the document
        can't be written, ``persisted`` is ``False``\ . A missing or broken
        schema is reported as a validation failure, after the document has
        been written.

        :param notification: the notification to archive.
        :param owner_app: the application on whose behalf it was received.
            This must be usable as a folder name.

        :return: a report of what was done and any problems found.
        """
        if not is_single_segment(owner_app):
            return self._failed(
                notification, f"Invalid application name for archiving: {owner_app!r}"
            )
        document = render_document(notification)
        folder = self.application_folder(owner_app)
        try:
            os.makedirs(folder, exist_ok=True)
            path = self._write_once(folder, document)
        except (OSError, UnicodeError) as e:
            return self._failed(notification, f"Could not write notification: {e}")
        _LOGGER.debug("Archived %s to %s", notification.describe(), path)

        errors = self.validate_file(path)
        if errors:
            _LOGGER.warning(
                "Archived notification failed validation (%s): %s",
                notification.describe(),
                "; ".join(errors),
            )
        return ValidationResult(
            persisted=True, valid=not errors, errors=errors, path=path
        )

    def _failed(self, notification: Notification, message: str) -> ValidationResult:
        """Log and report a notification that could not be persisted."""
        _LOGGER.error("Archive failed (%s): %s", notification.describe(), message)
        return ValidationResult(persisted=False, valid=False, errors=[message])

    def _write_once(self, folder: str, document: str) -> str:
        """Write a document to a new, uniquely named file.

        :param folder: the folder to write in. It must exist.
        :param document: the text to write. Characters that can't be encoded
            as UTF-8, such as lone surrogates, are written as JSON escapes.

        :return: the path of the new file.

        :raises FileExistsError: if no unused name could be found, which
            would require another process to be writing the same names.
        :raises OSError: if the file could not be written. No partly
            written file is left behind.
        """
        data = document.encode("utf-8", errors="backslashreplace")
        for _ in range(MAX_NAME_ATTEMPTS):
            filename = f"{FILENAME_PREFIX}{self._stamp.label()}{FILENAME_SUFFIX}"
            path = os.path.join(folder, filename)
            try:
                f = open(path, "xb")
            except FileExistsError:
                continue
            try:
                with f:
                    f.write(data)
            except OSError:
                with suppress(OSError):
                    os.remove(path)
                raise
            return path
        raise FileExistsError(f"Could not find an unused file name in {folder}")

    def load_schema(self) -> dict[str, Any]:
        """Load and check the schema.

        :return: the schema, as a dictionary.

        :raises FileNotFoundError: if the schema file is missing.
        :raises ValueError: if the schema is not valid JSON.
        :raises jsonschema.SchemaError: if the schema is not a valid schema.
        """
        with open(self.schema_path, encoding="utf-8") as f:
            schema = json.load(f)
        jsonschema.Draft7Validator.check_schema(schema)
        return schema

    def validate_file(self, path: str) -> list[str]:
        """Validate a persisted document, collecting every violation.

        :param path: the document to validate.

        :return: a list of problems. An empty list means the document is valid.
        """
        try:
            schema = self.load_schema()
        except FileNotFoundError:
            return [f"Schema not found: {self.schema_path}"]
        except ValueError as e:
            return [f"Schema is not valid JSON: {e}"]
        except jsonschema.SchemaError as e:
            return [f"Schema is invalid: {e.message}"]
        try:
            with open(path, encoding="utf-8") as f:
                instance = json.load(f)
        except (OSError, ValueError) as e:
            return [f"Could not read archived document: {e}"]
        validator = jsonschema.Draft7Validator(schema)
        # Stable sort: errors at the same location keep the order they were found.
        errors = sorted(
            validator.iter_errors(instance),
            key=lambda e: [str(p) for p in e.absolute_path],
        )
        return [format_validation_error(e) for e in errors]
