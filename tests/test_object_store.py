"""Tests for the S3-compatible object-store tracker."""

import hashlib
import io
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from conftest import wait_for
from replicat.config import ObjectStoreConfig, TrackerConfig
from replicat.events import EventName
from replicat.trackers import CountingChangeListener, ObjectStoreTracker, TrackerError
from replicat.trackers.object_store import HASH_KEY, MOD_TIME_KEY, NOTIFICATION_EVENTS
from replicat.tree import Entry, hash_bytes, md5_stream

T0 = datetime(2024, 3, 4, 5, 6, 7, 891011, tzinfo=timezone.utc)


def _missing(operation: str) -> ClientError:
    return ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, operation)


class FakeS3:
    """Just enough of the boto3 S3 client for the tracker."""

    def __init__(self):
        self.buckets: set[str] = set()
        self.objects: dict[str, dict] = {}

    def put(self, key: str, data: bytes, metadata: dict | None = None) -> None:
        self.objects[key] = {
            "Body": data,
            "Metadata": dict(metadata or {}),
            "ETag": hashlib.md5(data).hexdigest(),
            "LastModified": T0,
        }

    def head_bucket(self, Bucket):
        if Bucket not in self.buckets:
            raise _missing("HeadBucket")
        return {}

    def create_bucket(self, Bucket):
        self.buckets.add(Bucket)
        return {}

    def head_object(self, Bucket, Key):
        obj = self.objects.get(Key)
        if obj is None:
            raise _missing("HeadObject")
        return {
            "ContentLength": len(obj["Body"]),
            "ETag": f'"{obj["ETag"]}"',
            "LastModified": obj["LastModified"],
            "Metadata": dict(obj["Metadata"]),
        }

    def get_object(self, Bucket, Key):
        obj = self.objects.get(Key)
        if obj is None:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": io.BytesIO(obj["Body"])}

    def put_object(self, Bucket, Key, Body, Metadata=None):
        self.put(Key, Body, Metadata)
        return {}

    def copy_object(self, Bucket, Key, CopySource, MetadataDirective="COPY", Metadata=None):
        source = self.objects[CopySource["Key"]]
        metadata = Metadata if MetadataDirective == "REPLACE" else source["Metadata"]
        self.put(Key, source["Body"], metadata)
        return {}

    def delete_object(self, Bucket, Key):
        self.objects.pop(Key, None)
        return {}

    def get_paginator(self, operation):
        assert operation == "list_objects_v2"
        return self

    def paginate(self, Bucket, Prefix=""):
        contents = [
            {"Key": key, "ETag": f'"{obj["ETag"]}"', "Size": len(obj["Body"])}
            for key, obj in sorted(self.objects.items())
            if key.startswith(Prefix)
        ]
        yield {"Contents": contents} if contents else {}


@pytest.fixture
def s3():
    return FakeS3()


@pytest.fixture
def transport():
    return MagicMock()


@pytest.fixture
def listener():
    return CountingChangeListener()


@pytest.fixture
def tracker(s3, transport, listener):
    tracker = ObjectStoreTracker(
        "alpha",
        TrackerConfig(backend="object_store", retry_backoff=0),
        listener=listener,
        transport=transport,
        store_config=ObjectStoreConfig(bucket="b", poll_interval=3600),
        client=s3,
    )
    tracker.initialize("b")
    yield tracker
    tracker.cleanup()


class FakeNotifier:
    """Stands in for the MinIO client's notification stream."""

    def __init__(self):
        self.subscriptions: list[tuple] = []

    def listen_bucket_notification(self, bucket, prefix="", suffix="", events=()):
        self.subscriptions.append((bucket, prefix, tuple(events)))
        return self

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def __iter__(self):
        return iter(())


def notification(event_name: str, key: str, etag: str = "") -> dict:
    return {"Records": [{"eventName": event_name, "s3": {"object": {"key": key, "eTag": etag}}}]}


def broadcast_events(transport: MagicMock) -> list:
    return [c.args[0] for c in transport.broadcast.call_args_list]


class TestSetup:
    """Tests for bucket validation and the initial scan."""

    def test_creates_missing_bucket(self, tracker, s3):
        assert "b" in s3.buckets
        assert tracker.root == "b"

    def test_no_bucket_configured(self, s3):
        tracker = ObjectStoreTracker("alpha", client=s3)
        with pytest.raises(TrackerError):
            tracker.initialize("")

    def test_prefix_scoping(self, s3):
        s3.buckets.add("b")
        s3.put("team/docs/a.txt", b"a")
        s3.put("elsewhere/b.txt", b"b")
        tracker = ObjectStoreTracker(
            "alpha",
            store_config=ObjectStoreConfig(bucket="b", prefix="team", poll_interval=3600),
            client=s3,
        )
        tracker.initialize("")
        try:
            assert [e.relative_path for e in tracker.tree.snapshot()] == ["docs/a.txt"]
            assert tracker.get_entry("docs/a.txt").content_hash == hash_bytes(b"a")
        finally:
            tracker.cleanup()


class TestPolling:
    """Tests for changes made by other bucket clients."""

    def test_create_detected(self, tracker, s3, transport, listener):
        s3.put("new.txt", b"hello")
        tracker.poll()

        entry = tracker.get_entry("new.txt")
        assert entry.content_hash == hash_bytes(b"hello")
        assert entry.mod_time == T0
        assert listener.files_created == 1
        (event,) = broadcast_events(transport)
        assert event.name == EventName.CREATE

    def test_write_detected(self, tracker, s3, transport):
        s3.put("a.txt", b"one")
        tracker.poll()
        s3.put("a.txt", b"two, longer")
        tracker.poll()

        assert tracker.get_entry("a.txt").content_hash == hash_bytes(b"two, longer")
        assert broadcast_events(transport)[-1].name == EventName.WRITE

    def test_remove_detected(self, tracker, s3, transport):
        s3.put("a.txt", b"one")
        tracker.poll()
        s3.delete_object(Bucket="b", Key="a.txt")
        tracker.poll()

        assert "a.txt" not in tracker.tree
        assert broadcast_events(transport)[-1].name == EventName.REMOVE

    def test_rename_paired_by_etag(self, tracker, s3, transport):
        s3.put("happy.txt", b"content")
        tracker.poll()
        s3.copy_object(Bucket="b", Key="behappy.txt", CopySource={"Bucket": "b", "Key": "happy.txt"})
        s3.delete_object(Bucket="b", Key="happy.txt")
        tracker.poll()

        event = broadcast_events(transport)[-1]
        assert event.name == EventName.REPLICAT_RENAME
        assert event.source_path == "happy.txt"
        assert event.path == "behappy.txt"
        assert [e.relative_path for e in tracker.tree.snapshot()] == ["behappy.txt"]

    def test_ignored_names_skipped(self, tracker, s3, transport):
        s3.put("docs/.DS_Store", b"junk")
        tracker.poll()

        transport.broadcast.assert_not_called()


class TestDirectives:
    """Tests for directives applied to the bucket."""

    def test_folders_are_implicit(self, tracker, s3):
        assert tracker.create_path("docs", True) is None
        assert s3.objects == {}

    def test_create_file(self, tracker, s3):
        entry = tracker.create_path("docs/a.txt", False)

        assert entry.size == 0
        assert "docs/a.txt" in s3.objects
        assert "docs" not in tracker.tree

    def test_rename_prefix(self, tracker, s3):
        tracker.create_path("docs/a.txt", False)
        tracker.create_path("docs/b.txt", False)

        tracker.rename("docs", "notes", True)

        assert sorted(s3.objects) == ["notes/a.txt", "notes/b.txt"]
        assert [e.relative_path for e in tracker.tree.snapshot()] == [
            "notes/a.txt",
            "notes/b.txt",
        ]

    def test_delete_prefix(self, tracker, s3):
        tracker.create_path("docs/a.txt", False)
        tracker.delete("docs")

        assert s3.objects == {}

    def test_receive_file_stores_mod_time(self, tracker, s3):
        data = b"uploaded"
        entry = Entry("in/r.txt", size=len(data), mod_time=T0, content_hash=hash_bytes(data))

        assert tracker.receive_file(entry, md5_stream(io.BytesIO(data)), io.BytesIO(data))

        metadata = s3.objects["in/r.txt"]["Metadata"]
        assert metadata[HASH_KEY] == hash_bytes(data).hex()
        assert tracker.get_entry("in/r.txt").mod_time == T0
        assert MOD_TIME_KEY in metadata

    def test_open_missing(self, tracker):
        with pytest.raises(FileNotFoundError):
            tracker.open_file("ghost.txt")


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def notified(s3, transport, notifier):
    tracker = ObjectStoreTracker(
        "alpha",
        TrackerConfig(backend="object_store", retry_backoff=0),
        transport=transport,
        store_config=ObjectStoreConfig(bucket="b", poll_interval=0.05),
        client=s3,
        notifier=notifier,
    )
    tracker.initialize("b")
    yield tracker
    tracker.cleanup()


class TestNotifications:
    """Tests for changes reported by the bucket's notification stream."""

    def test_subscribes_with_event_filter(self, notified, notifier):
        assert wait_for(lambda: bool(notifier.subscriptions))
        assert notifier.subscriptions[0] == ("b", "", NOTIFICATION_EVENTS)

    def test_plain_s3_falls_back_to_polling(self, tracker):
        assert tracker.notifier is None

    def test_create(self, notified, s3, transport):
        s3.put("new.txt", b"hello")
        notified.handle_notification(notification("s3:ObjectCreated:Put", "new.txt"))

        assert notified.get_entry("new.txt").content_hash == hash_bytes(b"hello")
        (event,) = broadcast_events(transport)
        assert event.name == EventName.CREATE

    def test_key_is_url_decoded(self, notified, s3):
        s3.put("my notes.txt", b"x")
        notified.handle_notification(notification("s3:ObjectCreated:Put", "my+notes.txt"))

        assert "my notes.txt" in notified.tree

    def test_overwrite_is_a_write(self, notified, s3, transport):
        s3.put("a.txt", b"one")
        notified.handle_notification(notification("s3:ObjectCreated:Put", "a.txt"))
        s3.put("a.txt", b"two, longer")
        notified.handle_notification(notification("s3:ObjectCreated:Put", "a.txt"))

        assert notified.get_entry("a.txt").content_hash == hash_bytes(b"two, longer")
        assert [e.name for e in broadcast_events(transport)] == [EventName.CREATE, EventName.WRITE]

    def test_short_lived_object_seen(self, notified, s3, transport):
        """A create followed quickly by a delete still produces both events."""
        s3.put("blip.txt", b"x")
        notified.handle_notification(notification("s3:ObjectCreated:Put", "blip.txt"))
        s3.delete_object(Bucket="b", Key="blip.txt")
        notified.handle_notification(notification("s3:ObjectRemoved:Delete", "blip.txt"))

        assert [e.name for e in broadcast_events(transport)] == [EventName.CREATE, EventName.REMOVE]
        assert "blip.txt" not in notified.tree

    def test_copy_then_delete_is_rename(self, notified, s3, transport):
        s3.put("happy.txt", b"content")
        notified.handle_notification(notification("s3:ObjectCreated:Put", "happy.txt"))
        etag = s3.objects["happy.txt"]["ETag"]

        s3.copy_object(Bucket="b", Key="behappy.txt", CopySource={"Bucket": "b", "Key": "happy.txt"})
        notified.handle_notification(notification("s3:ObjectCreated:Copy", "behappy.txt", etag))
        s3.delete_object(Bucket="b", Key="happy.txt")
        notified.handle_notification(notification("s3:ObjectRemoved:Delete", "happy.txt"))

        event = broadcast_events(transport)[-1]
        assert event.name == EventName.REPLICAT_RENAME
        assert event.source_path == "happy.txt"
        assert event.path == "behappy.txt"
        assert [e.relative_path for e in notified.tree.snapshot()] == ["behappy.txt"]

    def test_access_changes_nothing(self, notified, s3, transport):
        s3.put("a.txt", b"one")
        notified.handle_notification(notification("s3:ObjectCreated:Put", "a.txt"))
        notified.handle_notification(notification("s3:ObjectAccessed:Get", "a.txt"))

        assert len(broadcast_events(transport)) == 1

    def test_ignored_names_skipped(self, notified, s3, transport):
        s3.put("docs/.DS_Store", b"junk")
        notified.handle_notification(notification("s3:ObjectCreated:Put", "docs/.DS_Store"))

        transport.broadcast.assert_not_called()
