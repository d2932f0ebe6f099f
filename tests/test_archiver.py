"""Test archiving notifications to disk, and validating the archived files."""

from concurrent.futures import ThreadPoolExecutor
import json
import os

import pytest

from somiod_pipeline.archiver import (
    FILENAME_PREFIX,
    NotificationArchiver,
    ValidationResult,
    default_schema_path,
    render_document,
)
from somiod_pipeline.exceptions import NotificationValidationError
from somiod_pipeline.notification import NOTIFICATION_FIELDS, Notification, decode


@pytest.fixture
def notification():
    return Notification(
        subscription_name="sub-dash",
        event_type="create",
        resource_name="reading-42",
        container_path="readings",
        timestamp="2024-01-01T00:00:00Z",
    )


@pytest.fixture
def archiver(tmp_path):
    """An archiver writing to a temporary folder, with the packaged schema."""
    return NotificationArchiver(str(tmp_path / "archive"))


def write_schema(path, schema):
    with open(path, "w") as f:
        json.dump(schema, f)
    return str(path)


def test_packaged_schema_exists():
    """The schema packaged with the module can be found."""
    assert os.path.isfile(default_schema_path())


def test_archive_valid_notification(archiver, notification, tmp_path):
    """A complete notification is written once, in canonical order, and is valid."""
    result = archiver.archive(notification, "dashboard-b")
    assert result.persisted
    assert result.valid
    assert result.errors == []
    folder = tmp_path / "archive" / "dashboard-b"
    files = os.listdir(folder)
    assert len(files) == 1
    assert files[0].startswith(FILENAME_PREFIX)
    assert files[0].endswith(".json")
    assert result.path == str(folder / files[0])
    with open(result.path) as f:
        document = json.load(f)
    assert list(document) == list(NOTIFICATION_FIELDS)
    assert document["resource_name"] == "reading-42"
    result.raise_for_status()


def test_partial_notification_is_archived(archiver):
    """Empty fields are still strings, so a partial notification validates."""
    result = archiver.archive(Notification(resource_name="r1"), "dashboard-b")
    assert result.persisted
    assert result.valid


def test_render_document_has_all_fields(notification):
    """Every field is rendered, even when empty, and the document ends in a newline."""
    assert json.loads(render_document(Notification())) == {
        k: "" for k in NOTIFICATION_FIELDS
    }
    assert render_document(notification).endswith("\n")


def test_missing_schema(tmp_path, notification):
    """A missing schema is a validation failure, but the document is kept."""
    archiver = NotificationArchiver(
        str(tmp_path / "archive"), schema_path=str(tmp_path / "nope.json")
    )
    result = archiver.archive(notification, "dashboard-b")
    assert result.persisted
    assert not result.valid
    assert len(result.errors) == 1
    assert "Schema not found" in result.errors[0]
    assert os.path.isfile(result.path)
    with pytest.raises(NotificationValidationError, match="Schema not found"):
        result.raise_for_status()


def test_schema_not_json(tmp_path, notification):
    """A schema that isn't JSON makes the document invalid, but it is still written."""
    schema_path = tmp_path / "schema.json"
    schema_path.write_text("{ not json")
    archiver = NotificationArchiver(str(tmp_path / "a"), schema_path=str(schema_path))
    result = archiver.archive(notification, "dashboard-b")
    assert result.persisted
    assert not result.valid
    assert "not valid JSON" in result.errors[0]


def test_invalid_schema(tmp_path, notification):
    """A schema that isn't itself a valid schema is reported."""
    schema_path = write_schema(tmp_path / "schema.json", {"type": 12})
    archiver = NotificationArchiver(str(tmp_path / "a"), schema_path=schema_path)
    result = archiver.archive(notification, "dashboard-b")
    assert result.persisted
    assert not result.valid
    assert "Schema is invalid" in result.errors[0]


def test_all_violations_are_reported(tmp_path, notification):
    """Every violation is listed, with its location in the document."""
    schema = {
        "type": "object",
        "properties": {
            "event_type": {"enum": ["delete"]},
            "timestamp": {"pattern": "^[0-9]+$"},
        },
        "required": ["missing_field"],
    }
    schema_path = write_schema(tmp_path / "schema.json", schema)
    archiver = NotificationArchiver(str(tmp_path / "a"), schema_path=schema_path)
    result = archiver.archive(notification, "dashboard-b")
    assert result.persisted
    assert not result.valid
    assert len(result.errors) == 3
    assert result.errors[0].startswith("<document>: ")
    assert "missing_field" in result.errors[0]
    assert result.errors[1].startswith("event_type: ")
    assert result.errors[2].startswith("timestamp: ")


def test_schema_is_read_each_time(tmp_path, notification):
    """A schema created after the archiver is used straight away."""
    schema_path = tmp_path / "schema.json"
    archiver = NotificationArchiver(str(tmp_path / "a"), schema_path=str(schema_path))
    assert not archiver.archive(notification, "dashboard-b").valid
    write_schema(schema_path, {"type": "object"})
    assert archiver.archive(notification, "dashboard-b").valid


@pytest.mark.parametrize("owner", ["", "a/b", "..", ".", "a\\b"])
def test_invalid_owner(archiver, notification, owner, tmp_path):
    """Application names that aren't a single path segment are refused."""
    result = archiver.archive(notification, owner)
    assert not result.persisted
    assert not result.valid
    assert "Invalid application name" in result.errors[0]
    assert result.path is None
    assert not os.path.exists(tmp_path / "archive")


def test_unwritable_root(tmp_path, notification):
    """If the folder can't be created, the notification isn't persisted."""
    blocker = tmp_path / "file"
    blocker.write_text("in the way")
    archiver = NotificationArchiver(str(blocker))
    result = archiver.archive(notification, "dashboard-b")
    assert not result.persisted
    assert "Could not write notification" in result.errors[0]


def test_rapid_archiving_never_collides(archiver, notification, tmp_path):
    """Many notifications in quick succession all get their own file."""
    paths = [archiver.archive(notification, "dashboard-b").path for _ in range(1000)]
    assert len(set(paths)) == 1000
    assert len(os.listdir(tmp_path / "archive" / "dashboard-b")) == 1000


def test_concurrent_archiving_never_collides(archiver, notification, tmp_path):
    """A shared archiver is safe to use from several threads."""
    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(
            executor.map(
                lambda _: archiver.archive(notification, "dashboard-b"), range(200)
            )
        )
    assert all(r.persisted and r.valid for r in results)
    assert len(os.listdir(tmp_path / "archive" / "dashboard-b")) == 200


def test_applications_are_kept_apart(archiver, notification, tmp_path):
    """Each application gets its own folder."""
    archiver.archive(notification, "app-a")
    archiver.archive(notification, "app-b")
    assert sorted(os.listdir(tmp_path / "archive")) == ["app-a", "app-b"]


def test_raise_for_status_unpersisted():
    """An unpersisted result raises, with the reason in the message."""
    result = ValidationResult(persisted=False, valid=False, errors=["disk full"])
    with pytest.raises(NotificationValidationError, match="disk full"):
        result.raise_for_status()


def test_unencodable_text_is_escaped(archiver, tmp_path):
    """A lone surrogate in a payload is archived as a JSON escape, in one file."""
    notification = decode(b'{"event_type": "create", "resource_name": "\\ud800"}')
    result = archiver.archive(notification, "dashboard-b")
    assert result.persisted
    assert result.valid
    assert len(os.listdir(tmp_path / "archive" / "dashboard-b")) == 1
    with open(result.path, "rb") as f:
        raw = f.read()
    assert b'"\\ud800"' in raw
    assert json.loads(raw.decode("utf-8"))["resource_name"] == "\ud800"


def test_failed_write_leaves_no_file(archiver, notification, tmp_path, monkeypatch):
    """If writing fails part way, the half-written file is removed."""

    class FailingFile:
        def __init__(self, f):
            self.f = f

        def __enter__(self):
            return self

        def __exit__(self, *args):
            self.f.close()

        def write(self, data):
            self.f.write(data[:10])
            raise OSError(28, "No space left on device")

    real_open = open
    monkeypatch.setattr(
        "builtins.open",
        lambda path, mode="r", *a, **k: (
            FailingFile(real_open(path, mode, *a, **k))
            if mode == "xb"
            else real_open(path, mode, *a, **k)
        ),
    )
    result = archiver.archive(notification, "dashboard-b")
    assert not result.persisted
    assert "No space left" in result.errors[0]
    assert os.listdir(tmp_path / "archive" / "dashboard-b") == []
