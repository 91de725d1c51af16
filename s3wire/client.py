"""Bucket and object operations for S3-compatible storage.

StorageClient is the explicit handle every operation goes through;
there is no module-level session. Use connect() to build one from plain
values, or StorageClient.from_config() from a ClientConfig.
"""

import io
import json
import logging
import os
from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import BinaryIO, Callable, Iterator, Optional, Sequence, Union

import httpx

from s3wire import xmlutil
from s3wire.config import ClientConfig, ConfigError
from s3wire.directory import DirectoryEntry, plan_directory_upload
from s3wire.download import MultipartDownloadManager
from s3wire.errors import StorageError, TransferError
from s3wire.models import (
    BucketInfo,
    BucketStats,
    DownloadResult,
    ObjectDescriptor,
    PartInfo,
    StorageStats,
    TransferOptions,
    UploadResult,
)
from s3wire.progress import ProgressCollector, ProgressConsumer
from s3wire.resume import ResumeStore
from s3wire.signer import MAX_PRESIGN_EXPIRY, MIN_PRESIGN_EXPIRY, uri_encode
from s3wire.transport import BUFFER_SIZE, ProgressCallback, Transport, error_from_response
from s3wire.upload import MultipartUploadManager

logger = logging.getLogger(__name__)

# ListObjectsV2 page size (the S3 maximum)
LIST_PAGE_SIZE = 1000

DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_REGION = "us-east-1"

ProgressSink = Union[ProgressCollector, ProgressConsumer, None]


def strip_etag(etag: Optional[str]) -> Optional[str]:
    """Remove the quotes S3 puts around ETags."""
    return etag.strip('"') if etag else etag


def _parse_http_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def _metadata_headers(metadata: Optional[dict[str, str]]) -> dict[str, str]:
    return {f"x-amz-meta-{name.lower()}": str(value) for name, value in (metadata or {}).items()}


def _stream_length(stream: BinaryIO) -> int:
    """Remaining bytes in a seekable stream."""
    try:
        position = stream.tell()
        end = stream.seek(0, os.SEEK_END)
        stream.seek(position)
    except (AttributeError, OSError, ValueError) as e:
        raise ValueError("length is required for non-seekable streams") from e
    return end - position


def _raise_embedded_error(response: httpx.Response, root, bucket: str, key: str) -> None:
    # Some operations answer 200 and report failure in the body
    if xmlutil.local_name(root.tag) == "Error":
        error = error_from_response(response, bucket, key)
        logger.debug("Error returned in a 200 response: %s", error)
        raise error


class StorageClient:
    """Client for one S3-compatible endpoint.

    Can be used as a context manager to close the connection pool.
    """

    def __init__(
        self,
        transport: Transport,
        config: ClientConfig,
        resume_store: Optional[ResumeStore] = None,
    ):
        """Initialize the client.

        Args:
            transport: Signed HTTP transport for the endpoint.
            config: Transfer defaults (chunk size, parallelism, retries).
            resume_store: Where interrupted transfers are persisted.
        """
        self.transport = transport
        self.config = config
        self.resume_store = resume_store or ResumeStore(config.resume_dir)

    @classmethod
    def from_config(
        cls,
        config: ClientConfig,
        http_transport: Optional[httpx.BaseTransport] = None,
        clock=None,
        resume_store: Optional[ResumeStore] = None,
    ) -> "StorageClient":
        """Build a client (and its transport) from a configuration."""
        transport = Transport(
            config.credentials(),
            timeout=config.timeout,
            addressing_style=config.addressing_style,
            http_transport=http_transport,
            clock=clock,
        )
        return cls(transport, config, resume_store)

    # Buckets

    def list_buckets(self) -> list[BucketInfo]:
        """List all buckets owned by the credentials."""
        response = self.transport.request("GET")
        root = xmlutil.parse(response.content)
        buckets = []
        for container in xmlutil.children(root, "Buckets"):
            for node in xmlutil.children(container, "Bucket"):
                buckets.append(
                    BucketInfo(
                        name=xmlutil.child_text(node, "Name", ""),
                        creation_date=xmlutil.parse_timestamp(
                            xmlutil.child_text(node, "CreationDate")
                        ),
                    )
                )
        return buckets

    def bucket_exists(self, bucket: str) -> bool:
        """Check whether a bucket exists. 404 answers False."""
        try:
            self.transport.request("HEAD", bucket)
        except StorageError as e:
            if e.not_found:
                return False
            raise
        return True

    def create_bucket(self, bucket: str, region: Optional[str] = None) -> None:
        """Create a bucket, with a LocationConstraint outside us-east-1."""
        region = region or self.config.region
        body = None
        headers = {}
        if region and region != DEFAULT_REGION:
            body = xmlutil.build_flat(
                "CreateBucketConfiguration", [("LocationConstraint", region)]
            )
            headers["Content-Type"] = "application/xml"
        self.transport.request("PUT", bucket, headers=headers, body=body)
        logger.info("Created bucket %s", bucket)

    def delete_bucket(self, bucket: str) -> None:
        self.transport.request("DELETE", bucket)
        logger.info("Deleted bucket %s", bucket)

    # Listing

    def iter_objects(
        self,
        bucket: str,
        prefix: Optional[str] = None,
        recursive: bool = True,
        max_keys: Optional[int] = None,
    ) -> Iterator[ObjectDescriptor]:
        """Yield objects under a prefix, paging with ListObjectsV2.

        Args:
            bucket: Bucket to list.
            prefix: Only keys starting with this prefix.
            recursive: When False, group keys at the next ``/`` and yield
                       the groups as ``is_prefix`` descriptors.
            max_keys: Stop after this many entries.

        Yields:
            ObjectDescriptor entries in backend (lexicographic) order.
        """
        if max_keys is not None and max_keys <= 0:
            return

        yielded = 0
        token: Optional[str] = None
        while True:
            query: dict[str, Optional[str]] = {"list-type": "2"}
            if prefix:
                query["prefix"] = prefix
            if not recursive:
                query["delimiter"] = "/"
            if token:
                query["continuation-token"] = token
            page_size = LIST_PAGE_SIZE
            if max_keys is not None:
                page_size = min(page_size, max_keys - yielded)
            query["max-keys"] = str(page_size)

            response = self.transport.request("GET", bucket, query=query)
            root = xmlutil.parse(response.content)

            entries = [
                ObjectDescriptor(
                    bucket=bucket,
                    key=xmlutil.child_text(node, "Key", ""),
                    size=int(xmlutil.child_text(node, "Size", "0") or 0),
                    etag=strip_etag(xmlutil.child_text(node, "ETag")),
                    last_modified=xmlutil.parse_timestamp(
                        xmlutil.child_text(node, "LastModified")
                    ),
                    storage_class=xmlutil.child_text(node, "StorageClass"),
                )
                for node in xmlutil.children(root, "Contents")
            ]
            entries += [
                ObjectDescriptor(
                    bucket=bucket,
                    key=xmlutil.child_text(node, "Prefix", ""),
                    is_prefix=True,
                )
                for node in xmlutil.children(root, "CommonPrefixes")
            ]
            entries.sort(key=lambda d: d.key)

            for entry in entries:
                yield entry
                yielded += 1
                if max_keys is not None and yielded >= max_keys:
                    return

            truncated = (xmlutil.child_text(root, "IsTruncated", "false") or "").lower() == "true"
            token = xmlutil.child_text(root, "NextContinuationToken")
            if not truncated or not token:
                return

    def list_objects(
        self,
        bucket: str,
        prefix: Optional[str] = None,
        recursive: bool = True,
        max_keys: Optional[int] = None,
    ) -> list[ObjectDescriptor]:
        """List objects under a prefix. See iter_objects."""
        return list(self.iter_objects(bucket, prefix, recursive, max_keys))

    # Objects

    def head_object(self, bucket: str, key: str) -> Optional[ObjectDescriptor]:
        """Fetch object metadata.

        Returns:
            The descriptor, or None if the object does not exist.
        """
        try:
            response = self.transport.request("HEAD", bucket, key)
        except StorageError as e:
            if e.not_found:
                return None
            raise

        headers = response.headers
        metadata = {
            name[len("x-amz-meta-"):]: value
            for name, value in headers.items()
            if name.lower().startswith("x-amz-meta-")
        }
        return ObjectDescriptor(
            bucket=bucket,
            key=key,
            size=int(headers.get("content-length", "0")),
            etag=strip_etag(headers.get("etag")),
            last_modified=_parse_http_date(headers.get("last-modified")),
            content_type=headers.get("content-type"),
            storage_class=headers.get("x-amz-storage-class"),
            metadata=metadata,
        )

    def object_exists(self, bucket: str, key: str) -> bool:
        return self.head_object(bucket, key) is not None

    def put_object(
        self,
        bucket: str,
        key: str,
        stream: Union[BinaryIO, bytes],
        length: Optional[int] = None,
        content_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[str]:
        """Upload an object in a single streamed request.

        Args:
            bucket: Target bucket.
            key: Target key.
            stream: Bytes or a readable binary stream.
            length: Bytes to send; defaults to what remains in the stream.
            content_type: Content-Type of the object.
            metadata: User metadata (sent as x-amz-meta-*).
            on_progress: Called with bytes sent so far.

        Returns:
            ETag of the new object.
        """
        if isinstance(stream, (bytes, bytearray)):
            stream = io.BytesIO(stream)
        if length is None:
            length = _stream_length(stream)

        headers = {"Content-Type": content_type or DEFAULT_CONTENT_TYPE}
        headers.update(_metadata_headers(metadata))
        response = self.transport.upload_stream(
            "PUT", bucket, key, stream, length, headers=headers, on_progress=on_progress
        )
        return strip_etag(response.headers.get("etag"))

    def get_range(
        self,
        bucket: str,
        key: str,
        destination: BinaryIO,
        start: int,
        end: int,
        if_match: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Stream the byte range ``[start, end)`` into ``destination``.

        Never writes more than ``end - start`` bytes.

        Returns:
            Number of bytes written.

        Raises:
            TransferError: If the backend ignores the Range header or
                           sends more data than requested.
            StorageError: On non-2xx (412 when ``if_match`` no longer holds).
        """
        length = end - start
        headers = {"Range": f"bytes={start}-{end - 1}"}
        if if_match:
            headers["If-Match"] = f'"{strip_etag(if_match)}"'

        written = 0
        with self.transport.stream("GET", bucket, key, headers=headers) as response:
            if response.status_code != 206 and start != 0:
                raise TransferError(f"Range request for {key} was not honoured")
            for block in response.iter_bytes(BUFFER_SIZE):
                if written + len(block) > length:
                    raise TransferError(
                        f"Received more than the {length} bytes requested for {key}"
                    )
                destination.write(block)
                written += len(block)
                if on_progress is not None:
                    on_progress(written)
        return written

    def get_object(
        self,
        bucket: str,
        key: str,
        destination: Union[str, os.PathLike, BinaryIO],
        on_progress: Optional[ProgressCallback] = None,
        byte_range: Optional[tuple[int, int]] = None,
    ) -> int:
        """Download an object (or an inclusive byte range of it).

        Args:
            bucket: Source bucket.
            key: Source key.
            destination: File path or writable binary file object.
            on_progress: Called with bytes received so far.
            byte_range: Optional (first, last) byte offsets, inclusive.

        Returns:
            Number of bytes written.
        """
        if isinstance(destination, (str, os.PathLike)):
            with open(destination, "wb") as f:
                return self.get_object(bucket, key, f, on_progress, byte_range)

        if byte_range is not None:
            first, last = byte_range
            return self.get_range(
                bucket, key, destination, first, last + 1, on_progress=on_progress
            )
        return self.transport.download_to(bucket, key, destination, on_progress=on_progress)

    def delete_object(self, bucket: str, key: str) -> None:
        self.transport.request("DELETE", bucket, key)

    def copy_object(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> Optional[str]:
        """Server-side copy.

        Args:
            metadata: Replaces the source's user metadata when given.

        Returns:
            ETag of the copy.
        """
        headers = {
            "x-amz-copy-source": f"/{src_bucket}/{uri_encode(src_key, encode_slash=False)}"
        }
        if metadata is not None:
            headers["x-amz-metadata-directive"] = "REPLACE"
            headers.update(_metadata_headers(metadata))

        response = self.transport.request("PUT", dst_bucket, dst_key, headers=headers)
        root = xmlutil.parse(response.content)
        _raise_embedded_error(response, root, dst_bucket, dst_key)
        return strip_etag(xmlutil.child_text(root, "ETag"))

    def create_folder(self, bucket: str, prefix: str) -> str:
        """Create a zero-byte "folder" object.

        Returns:
            The folder key (always ends in ``/``).
        """
        key = prefix if prefix.endswith("/") else f"{prefix}/"
        self.put_object(bucket, key, b"", content_type="application/x-directory")
        return key

    def delete_prefix(self, bucket: str, prefix: str) -> int:
        """Delete every object under a prefix.

        Returns:
            Number of objects deleted.
        """
        keys = [d.key for d in self.iter_objects(bucket, prefix=prefix)]
        for key in keys:
            self.delete_object(bucket, key)
        logger.info("Deleted %d object(s) under %s/%s", len(keys), bucket, prefix)
        return len(keys)

    # Policies

    def get_bucket_policy(self, bucket: str) -> Optional[str]:
        """Return the bucket policy JSON, or None if none is set."""
        try:
            response = self.transport.request("GET", bucket, query={"policy": ""})
        except StorageError as e:
            if e.code == "NoSuchBucketPolicy":
                return None
            raise
        return response.text

    def set_bucket_policy(self, bucket: str, policy: Union[str, dict]) -> None:
        if isinstance(policy, dict):
            policy = json.dumps(policy)
        self.transport.request(
            "PUT",
            bucket,
            query={"policy": ""},
            headers={"Content-Type": "application/json"},
            body=policy.encode("utf-8"),
        )

    def delete_bucket_policy(self, bucket: str) -> None:
        self.transport.request("DELETE", bucket, query={"policy": ""})

    # Presigned URLs

    def presigned_url(
        self,
        method: str,
        bucket: str,
        key: str,
        expires: Union[int, timedelta] = 3600,
    ) -> str:
        """Generate a presigned URL.

        Args:
            method: HTTP method the URL is valid for.
            bucket: Bucket name.
            key: Object key.
            expires: Lifetime in seconds or as a timedelta (1 s to 7 days).

        Raises:
            ValueError: If the lifetime is out of range.
        """
        seconds = int(expires.total_seconds()) if isinstance(expires, timedelta) else int(expires)
        if not MIN_PRESIGN_EXPIRY <= seconds <= MAX_PRESIGN_EXPIRY:
            raise ValueError(
                f"Expiry must be between {MIN_PRESIGN_EXPIRY} second and "
                f"{MAX_PRESIGN_EXPIRY // 86400} days, got {seconds} seconds"
            )
        return self.transport.presign(method, bucket, key, seconds)

    # Multipart primitives

    def create_multipart_upload(
        self,
        bucket: str,
        key: str,
        content_type: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        """Start a multipart upload.

        Returns:
            The upload id.
        """
        headers = {"Content-Type": content_type or DEFAULT_CONTENT_TYPE}
        headers.update(_metadata_headers(metadata))
        response = self.transport.request(
            "POST", bucket, key, query={"uploads": ""}, headers=headers
        )
        root = xmlutil.parse(response.content)
        upload_id = xmlutil.child_text(root, "UploadId")
        if not upload_id:
            raise StorageError(
                "CreateMultipartUpload response has no UploadId",
                status_code=response.status_code,
            )
        logger.debug("Initiated multipart upload %s for %s/%s", upload_id, bucket, key)
        return upload_id

    def upload_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        stream: BinaryIO,
        length: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Stream ``length`` bytes from ``stream`` as one part.

        Returns:
            ETag of the part.
        """
        response = self.transport.upload_stream(
            "PUT",
            bucket,
            key,
            stream,
            length,
            query={"partNumber": str(part_number), "uploadId": upload_id},
            on_progress=on_progress,
        )
        etag = strip_etag(response.headers.get("etag"))
        if not etag:
            raise StorageError(
                f"UploadPart response for part {part_number} has no ETag",
                status_code=response.status_code,
            )
        return etag

    def complete_multipart_upload(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        parts: Sequence[tuple[int, str]],
    ) -> Optional[str]:
        """Assemble uploaded parts into the final object.

        Args:
            parts: (part number, ETag) pairs; sent in ascending order.

        Returns:
            ETag of the assembled object.

        Raises:
            ValueError: If no parts are given or a part number repeats.
            StorageError: On failure, including errors in a 200 body.
        """
        ordered = sorted(parts)
        numbers = [number for number, _ in ordered]
        if not ordered:
            raise ValueError("At least one part is required")
        if len(set(numbers)) != len(numbers):
            raise ValueError("Part numbers must be unique")

        body = xmlutil.build(
            "CompleteMultipartUpload",
            [
                ("Part", [("PartNumber", str(number)), ("ETag", f'"{strip_etag(etag)}"')])
                for number, etag in ordered
            ],
        )
        response = self.transport.request(
            "POST",
            bucket,
            key,
            query={"uploadId": upload_id},
            headers={"Content-Type": "application/xml"},
            body=body,
        )
        root = xmlutil.parse(response.content)
        _raise_embedded_error(response, root, bucket, key)
        return strip_etag(xmlutil.child_text(root, "ETag"))

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        self.transport.request("DELETE", bucket, key, query={"uploadId": upload_id})
        logger.debug("Aborted multipart upload %s for %s/%s", upload_id, bucket, key)

    def list_parts(self, bucket: str, key: str, upload_id: str) -> list[PartInfo]:
        """List the parts stored so far for a multipart upload."""
        parts = []
        marker: Optional[str] = None
        while True:
            query: dict[str, Optional[str]] = {"uploadId": upload_id}
            if marker:
                query["part-number-marker"] = marker
            response = self.transport.request("GET", bucket, key, query=query)
            root = xmlutil.parse(response.content)
            for node in xmlutil.children(root, "Part"):
                parts.append(
                    PartInfo(
                        part_number=int(xmlutil.child_text(node, "PartNumber", "0")),
                        etag=strip_etag(xmlutil.child_text(node, "ETag", "")),
                        size=int(xmlutil.child_text(node, "Size", "0") or 0),
                        last_modified=xmlutil.parse_timestamp(
                            xmlutil.child_text(node, "LastModified")
                        ),
                    )
                )
            truncated = (xmlutil.child_text(root, "IsTruncated", "false") or "").lower() == "true"
            marker = xmlutil.child_text(root, "NextPartNumberMarker")
            if not truncated or not marker:
                return parts

    # Transfers

    def upload_file(
        self,
        bucket: str,
        key: str,
        path: str,
        options: Optional[TransferOptions] = None,
        progress: ProgressSink = None,
    ) -> UploadResult:
        """Upload a local file, in parallel parts when it is large.

        Blocks until the transfer finishes. Failures are reported in the
        result, not raised.
        """
        manager = MultipartUploadManager(self, self.resume_store, progress=progress)
        return manager.upload(bucket, key, path, options)

    def download_file(
        self,
        bucket: str,
        key: str,
        path: str,
        options: Optional[TransferOptions] = None,
        progress: ProgressSink = None,
    ) -> DownloadResult:
        """Download an object to a local file, in parallel ranges when large.

        Blocks until the transfer finishes. Failures are reported in the
        result, not raised.
        """
        manager = MultipartDownloadManager(self, self.resume_store, progress=progress)
        return manager.download(bucket, key, path, options)

    def upload_directory(
        self,
        bucket: str,
        directory: str,
        prefix: Optional[str] = None,
        recursive: bool = True,
        flatten: bool = False,
        max_depth: Optional[int] = None,
        include: Sequence[str] = (),
        exclude: Sequence[str] = (),
        options: Optional[TransferOptions] = None,
        progress: ProgressSink = None,
        on_file_start: Optional[Callable[[DirectoryEntry], None]] = None,
        on_file_complete: Optional[Callable[[UploadResult], None]] = None,
    ) -> list[UploadResult]:
        """Upload the files of a local directory tree under a key prefix.

        Files go up one at a time through upload_file, each with its
        own resume state. A failed file does not stop the others, and
        a cancel stops before the next file.

        Raises:
            NotADirectoryError: If ``directory`` is not a directory.
            ValueError: If two files would upload to the same key.
        """
        entries = plan_directory_upload(
            directory,
            prefix=prefix,
            recursive=recursive,
            flatten=flatten,
            max_depth=max_depth,
            include=include,
            exclude=exclude,
        )
        logger.info(
            "Uploading %d file(s) (%d bytes) from %s to %s",
            len(entries), sum(e.size for e in entries), directory, bucket,
        )

        cancel_event = options.cancel_event if options else None
        results = []
        for entry in entries:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Directory upload cancelled before %s", entry.path)
                break
            if on_file_start is not None:
                on_file_start(entry)
            result = self.upload_file(bucket, entry.key, entry.path, options, progress)
            results.append(result)
            if on_file_complete is not None:
                on_file_complete(result)

        failed = sum(1 for r in results if not r.success)
        if failed:
            logger.warning("%d of %d file(s) from %s failed", failed, len(results), directory)
        return results

    def get_stats(self, bucket: Optional[str] = None, max_objects: Optional[int] = None) -> StorageStats:
        """Count buckets, objects and stored bytes.

        Lists every object, so it is slow on large buckets.

        Args:
            bucket: Limit the totals to one bucket.
            max_objects: Count at most this many objects per bucket.
        """
        names = [bucket] if bucket else [b.name for b in self.list_buckets()]
        stats = StorageStats(endpoint=self.config.endpoint, secure=self.config.secure)

        for name in names:
            entry = BucketStats(name=name)
            try:
                for descriptor in self.iter_objects(name, recursive=True, max_keys=max_objects):
                    if descriptor.is_prefix:
                        continue
                    entry.object_count += 1
                    entry.total_size += descriptor.size
            except StorageError as e:
                if bucket:
                    raise
                logger.warning("Could not list bucket %s: %s", name, e)
                entry.error = str(e)
            stats.buckets.append(entry)

        logger.debug(
            "%d bucket(s), %d object(s), %d bytes",
            stats.bucket_count, stats.object_count, stats.total_size,
        )
        return stats

    def close(self) -> None:
        self.transport.close()

    def __enter__(self) -> "StorageClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False


def connect(
    endpoint: str,
    access_key: str,
    secret_key: str,
    http_transport: Optional[httpx.BaseTransport] = None,
    clock=None,
    resume_store: Optional[ResumeStore] = None,
    **options,
) -> StorageClient:
    """Connect to an S3-compatible endpoint.

    Args:
        endpoint: host[:port], or a URL whose scheme sets the TLS flag.
        access_key: Access key id.
        secret_key: Secret access key.
        http_transport: Optional httpx transport (tests inject a mock).
        clock: Optional signing clock.
        resume_store: Optional resume store.
        **options: Any other ClientConfig field (region, timeout, ...).

    Raises:
        ConfigError: If the options are invalid.
    """
    try:
        config = ClientConfig(
            endpoint=endpoint, access_key=access_key, secret_key=secret_key, **options
        )
    except TypeError as e:
        raise ConfigError(f"Unknown connection option: {e}") from e

    problems = config.validate()
    if problems:
        raise ConfigError("; ".join(problems))
    return StorageClient.from_config(
        config, http_transport=http_transport, clock=clock, resume_store=resume_store
    )
