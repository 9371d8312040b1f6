"""Object-store storage tracker for S3-compatible buckets.

Folders are implicit in key prefixes and are not tracked as entries.
Object operations go through boto3. Changes made by other bucket clients
arrive as bucket notifications from a MinIO-compatible endpoint, filtered to
create, access and remove. Plain S3 endpoints have no notification stream,
so there the listing is polled and diffed against the previous one; a key
that disappears while another with the same ETag appears is a rename.
"""

import io
import logging
import threading
from datetime import datetime
from typing import Any, BinaryIO, Iterator
from urllib.parse import unquote_plus, urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from minio import Minio
from minio.error import MinioException

from ..config import ObjectStoreConfig
from ..tree import (
    Entry,
    format_time,
    hash_bytes,
    hash_stream,
    is_descendant,
    parse_time,
    utc_now,
)
from .base import StorageTracker, TrackerError

logger = logging.getLogger(__name__)

MOD_TIME_KEY = "mod-time"
HASH_KEY = "blake2b"

_MISSING_CODES = ("404", "NoSuchKey", "NotFound", "NoSuchBucket")

NOTIFICATION_EVENTS = (
    "s3:ObjectCreated:*",
    "s3:ObjectAccessed:*",
    "s3:ObjectRemoved:*",
)


def _is_missing(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in _MISSING_CODES


class ObjectStoreTracker(StorageTracker):
    """Tracks the objects under a bucket prefix."""

    tracks_directories = False
    transient_errors = (OSError, BotoCoreError, ClientError)

    def __init__(
        self,
        *args,
        store_config: ObjectStoreConfig | None = None,
        client: Any = None,
        notifier: Any = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.store_config = store_config or ObjectStoreConfig()
        self.bucket = self.store_config.bucket
        self.prefix = self.store_config.prefix.strip("/")
        self._client = client
        self._notifier = notifier
        # path -> (etag, size) as of the last poll
        self._listing: dict[str, tuple[str, int]] = {}
        self._stop = threading.Event()
        self._poller: threading.Thread | None = None

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.store_config.endpoint_url,
                region_name=self.store_config.region,
                aws_access_key_id=self.store_config.access_key,
                aws_secret_access_key=self.store_config.secret_key,
            )
        return self._client

    @property
    def notifier(self) -> Any:
        """MinIO client for bucket notifications, or None to fall back to polling."""
        config = self.store_config
        if self._notifier is None and config.notifications and config.endpoint_url:
            endpoint = urlparse(config.endpoint_url)
            self._notifier = Minio(
                endpoint.netloc or endpoint.path,
                access_key=config.access_key,
                secret_key=config.secret_key,
                secure=endpoint.scheme == "https",
                region=config.region,
            )
        return self._notifier

    # ==================== Keys ====================

    def _key(self, path: str) -> str:
        return f"{self.prefix}/{path}" if self.prefix else path

    def _path(self, key: str) -> str:
        if self.prefix:
            return key[len(self.prefix) + 1:]
        return key

    def _validate_root(self, root: str) -> str:
        bucket = root or self.store_config.bucket
        if not bucket:
            raise TrackerError("No bucket configured")
        self.bucket = bucket
        try:
            self.client.head_bucket(Bucket=bucket)
        except ClientError as e:
            if not _is_missing(e):
                raise TrackerError(f"Cannot access bucket {bucket}: {e}") from e
            logger.info(f"Creating bucket {bucket}")
            self.client.create_bucket(Bucket=bucket)
        return bucket

    def _list(self, path_prefix: str = "") -> dict[str, dict[str, Any]]:
        """Objects below path_prefix, keyed by tree path."""
        list_prefix = self._key(path_prefix) if path_prefix else self.prefix
        if list_prefix:
            list_prefix += "/"
        objects = {}
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=list_prefix):
            for obj in page.get("Contents", []):
                key = obj["Key"]
                if key.endswith("/"):
                    continue
                objects[self._path(key)] = obj
        return objects

    # ==================== Primitives ====================

    def _stat(self, path: str) -> Entry | None:
        try:
            head = self.client.head_object(Bucket=self.bucket, Key=self._key(path))
        except ClientError as e:
            if _is_missing(e):
                return None
            raise

        metadata = head.get("Metadata", {})
        mod_time = parse_time(metadata.get(MOD_TIME_KEY)) or head.get("LastModified")
        if metadata.get(HASH_KEY):
            content_hash = bytes.fromhex(metadata[HASH_KEY])
        else:
            body = self.client.get_object(Bucket=self.bucket, Key=self._key(path))["Body"]
            content_hash = hash_stream(body)
        return Entry(
            relative_path=path,
            size=head.get("ContentLength", 0),
            mod_time=mod_time,
            content_hash=content_hash,
            object_id=head.get("ETag", "").strip('"'),
        )

    def _scan(self, prefix: str = "") -> Iterator[Entry]:
        for path in sorted(self._list(prefix)):
            entry = self._stat(path)
            if entry is not None:
                yield entry

    def _put(self, path: str, data: bytes, mod_time: datetime | None) -> None:
        self.client.put_object(
            Bucket=self.bucket,
            Key=self._key(path),
            Body=data,
            Metadata={
                MOD_TIME_KEY: format_time(mod_time or utc_now()),
                HASH_KEY: hash_bytes(data).hex(),
            },
        )

    def _make_path(self, path: str, is_directory: bool) -> None:
        if is_directory:
            return
        if self._stat(path) is None:
            self._put(path, b"", None)

    def _move(self, source: str, destination: str) -> None:
        moving = [p for p in self._list(source) if is_descendant(p, source)]
        if self._stat(source) is not None:
            moving.append(source)
        if not moving:
            raise FileNotFoundError(source)
        for path in moving:
            target = destination + path[len(source):]
            self.client.copy_object(
                Bucket=self.bucket,
                Key=self._key(target),
                CopySource={"Bucket": self.bucket, "Key": self._key(path)},
                MetadataDirective="COPY",
            )
            self.client.delete_object(Bucket=self.bucket, Key=self._key(path))

    def _remove(self, path: str) -> None:
        for child in self._list(path):
            self.client.delete_object(Bucket=self.bucket, Key=self._key(child))
        self.client.delete_object(Bucket=self.bucket, Key=self._key(path))

    def _write(self, path: str, stream: BinaryIO, mod_time: datetime | None) -> None:
        self._put(path, stream.read(), mod_time)

    def _set_mod_time(self, path: str, mod_time: datetime) -> None:
        key = self._key(path)
        head = self.client.head_object(Bucket=self.bucket, Key=key)
        metadata = dict(head.get("Metadata", {}))
        metadata[MOD_TIME_KEY] = format_time(mod_time)
        self.client.copy_object(
            Bucket=self.bucket,
            Key=key,
            CopySource={"Bucket": self.bucket, "Key": key},
            Metadata=metadata,
            MetadataDirective="REPLACE",
        )

    def _open(self, path: str) -> BinaryIO:
        try:
            body = self.client.get_object(Bucket=self.bucket, Key=self._key(path))["Body"]
        except ClientError as e:
            if _is_missing(e):
                raise FileNotFoundError(path) from e
            raise
        return io.BytesIO(body.read())

    # ==================== Watching ====================

    def _start_watching(self) -> None:
        self._stop.clear()
        if self.notifier is not None:
            target, mode = self._listen_loop, "Listening for notifications on"
        else:
            self._listing = self._snapshot_listing()
            target, mode = self._poll_loop, "Polling"
        self._poller = threading.Thread(
            target=target, name=f"watch-{self.node_name}", daemon=True
        )
        self._poller.start()
        logger.info(f"{mode} bucket {self.bucket}")

    def _stop_watching(self) -> None:
        self._stop.set()
        if self._poller is not None:
            # The listener only sees the stop flag between records
            self._poller.join(timeout=5)
            self._poller = None

    def _listen_loop(self) -> None:
        prefix = f"{self.prefix}/" if self.prefix else ""
        while not self._stop.is_set():
            try:
                with self.notifier.listen_bucket_notification(
                    self.bucket, prefix=prefix, events=NOTIFICATION_EVENTS
                ) as notifications:
                    for notification in notifications:
                        if self._stop.is_set():
                            return
                        self.handle_notification(notification)
            except (MinioException, OSError) as e:
                logger.warning(f"Notification stream for {self.bucket} failed: {e}")
            self._stop.wait(self.store_config.poll_interval)

    def handle_notification(self, notification: dict[str, Any]) -> None:
        """Apply one bucket notification, which may carry several records."""
        for record in notification.get("Records") or []:
            name = record.get("eventName", "")
            obj = record.get("s3", {}).get("object", {})
            key = unquote_plus(obj.get("key", ""))
            if not key or key.endswith("/"):
                continue
            if self.prefix and not key.startswith(f"{self.prefix}/"):
                continue
            path = self._path(key)
            if self._ignored(path):
                continue
            etag = obj.get("eTag", "").strip('"')
            logger.debug(f"{name}: {path}")

            if name.startswith("s3:ObjectCreated:"):
                self._on_object_created(path, etag)
            elif name.startswith("s3:ObjectRemoved:"):
                self._on_object_removed(path)

    def _on_object_created(self, path: str, etag: str) -> None:
        with self.lock:
            if path in self.tree:
                self._on_written(path)
                return
            copied = etag and any(
                e.object_id == etag for e in self.tree.snapshot() if not e.is_directory
            )
            if copied:
                # Renames are a copy followed by a delete of the source
                self.renames.add_destination(etag, path, self._stat(path))
            else:
                self._on_created(path)

    def _on_object_removed(self, path: str) -> None:
        with self.lock:
            entry = self.tree.get(path)
            if entry is not None and any(
                r.object_id == entry.object_id and r.destination_path is not None
                for r in self.renames.pending()
            ):
                self.renames.add_source(entry.object_id, path, entry.copy())
            else:
                self._on_removed(path)

    # ==================== Polling ====================

    def _snapshot_listing(self) -> dict[str, tuple[str, int]]:
        return {
            path: (obj.get("ETag", "").strip('"'), obj.get("Size", 0))
            for path, obj in self._list().items()
            if not self._ignored(path)
        }

    def _poll_loop(self) -> None:
        while not self._stop.wait(self.store_config.poll_interval):
            try:
                self.poll()
            except (BotoCoreError, ClientError) as e:
                logger.warning(f"Polling {self.bucket} failed: {e}")

    def poll(self) -> None:
        """Diff the bucket listing against the previous poll and apply changes."""
        current = self._snapshot_listing()
        previous, self._listing = self._listing, current

        removed = [p for p in previous if p not in current]
        added = [p for p in current if p not in previous]
        changed = [p for p in current if p in previous and previous[p] != current[p]]

        added_etags = {current[p][0] for p in added}
        removed_etags = {previous[p][0] for p in removed}

        for path in removed:
            etag = previous[path][0]
            if etag and etag in added_etags:
                with self.lock:
                    entry = self.tree.get(path)
                    if entry is not None:
                        self.renames.add_source(etag, path, entry.copy())
            else:
                self._on_removed(path)

        for path in added:
            etag = current[path][0]
            if etag and etag in removed_etags:
                with self.lock:
                    if path not in self.tree:
                        self.renames.add_destination(etag, path, self._stat(path))
            else:
                self._on_created(path)

        for path in changed:
            self._on_written(path)
