"""Tests for download module."""

import os
import threading
import time

import pytest

from s3wire.download import PART_SUFFIX, MultipartDownloadManager, partial_path, remote_fingerprint
from s3wire.errors import StorageError, TransferError
from s3wire.models import ChunkStatus, ObjectDescriptor, ProgressEventKind, TransferDirection, TransferOptions

MiB = 1024 * 1024

RANGES = ["bytes=0-4194303", "bytes=4194304-8388607", "bytes=8388608-10485759"]


def ranged_options(**kwargs) -> TransferOptions:
    """10 MiB objects split into 4+4+2 MiB chunks, one at a time by default."""
    defaults = dict(chunk_size=4 * MiB, max_parallel=1, max_retries=0)
    defaults.update(kwargs)
    return TransferOptions(**defaults)


def range_headers(fake_s3) -> list[str]:
    return [r.headers["range"] for r in fake_s3.calls("GET") if "range" in r.headers]


@pytest.fixture
def remote(fake_s3):
    """A 10 MiB object named ``big.bin``."""
    data = os.urandom(10 * MiB)
    fake_s3.put("bucket", "big.bin", data)
    return data


class TestRemoteFingerprint:
    def test_uses_size_etag_and_date(self, client, fake_s3, remote):
        descriptor = client.head_object("bucket", "big.bin")

        fingerprint = remote_fingerprint(descriptor)

        assert fingerprint.size == 10 * MiB
        assert fingerprint.etag == fake_s3.buckets["bucket"]["big.bin"].etag
        assert fingerprint.last_modified == "2013-05-24T00:00:00+00:00"

    def test_without_date(self):
        fingerprint = remote_fingerprint(ObjectDescriptor(bucket="b", key="k", size=3, etag="e"))

        assert fingerprint.last_modified is None


class TestSingleDownload:
    """Objects no larger than one chunk use one GET."""

    def test_small_object(self, client, fake_s3, tmp_path):
        fake_s3.put("bucket", "small.txt", b"hello")
        target = tmp_path / "small.txt"

        result = client.download_file("bucket", "small.txt", str(target))

        assert result.success, result.error
        assert result.multipart is False
        assert result.bytes_transferred == 5
        assert target.read_bytes() == b"hello"
        assert not os.path.exists(partial_path(str(target)))
        assert range_headers(fake_s3) == []

    def test_progress_delivered_while_body_streams(self, client, fake_s3, tmp_path):
        """Byte progress reaches the consumer before the file is moved into place."""
        fake_s3.put("bucket", "medium.bin", os.urandom(256 * 1024))
        target = tmp_path / "medium.bin"
        target_existed = []

        result = client.download_file(
            "bucket", "medium.bin", str(target),
            progress=lambda e: target_existed.append(target.exists()),
        )

        assert result.success, result.error
        assert target_existed[0] is False
        assert target_existed[-1] is True

    def test_empty_object(self, client, fake_s3, tmp_path):
        fake_s3.put("bucket", "empty", b"")
        target = tmp_path / "empty"

        result = client.download_file("bucket", "empty", str(target))

        assert result.success
        assert target.read_bytes() == b""

    def test_missing_object(self, client, tmp_path):
        target = tmp_path / "out"

        result = client.download_file("bucket", "missing", str(target))

        assert result.success is False
        assert isinstance(result.error, StorageError)
        assert result.error.code == "NoSuchKey"
        assert not target.exists()

    def test_short_body_is_retried(self, client, fake_s3, tmp_path):
        fake_s3.put("bucket", "small.txt", b"0123456789")
        fake_s3.add_fault(method="GET", key="small.txt", truncate_to=4)
        target = tmp_path / "small.txt"

        result = client.download_file("bucket", "small.txt", str(target))

        assert result.success, result.error
        assert target.read_bytes() == b"0123456789"
        assert len(fake_s3.calls("GET")) == 2


class TestMultipartDownload:
    """Tests for parallel ranged downloads."""

    def test_ranges_and_offsets(self, client, fake_s3, remote, tmp_path, resume_store):
        """10 MiB at 4 MiB chunks: three ranges written at their offsets."""
        target = tmp_path / "big.bin"

        result = client.download_file("bucket", "big.bin", str(target), ranged_options(max_parallel=3))

        assert result.success, result.error
        assert result.multipart is True
        assert result.total_chunks == 3
        assert result.bytes_transferred == 10 * MiB
        assert sorted(range_headers(fake_s3)) == RANGES
        assert target.read_bytes() == remote
        assert not os.path.exists(str(target) + PART_SUFFIX)
        assert resume_store.list_files() == []

    def test_ranges_carry_if_match(self, client, fake_s3, remote, tmp_path):
        client.download_file("bucket", "big.bin", str(tmp_path / "out"), ranged_options())

        etag = fake_s3.buckets["bucket"]["big.bin"].etag
        assert {r.headers["if-match"] for r in fake_s3.calls("GET")} == {f'"{etag}"'}

    def test_progress_reaches_calling_thread(self, client, remote, tmp_path):
        events = []
        caller = threading.get_ident()

        client.download_file(
            "bucket", "big.bin", str(tmp_path / "out"), ranged_options(max_parallel=3),
            progress=lambda e: events.append((e, threading.get_ident())),
        )

        assert {thread for _, thread in events} == {caller}
        kinds = [e.kind for e, _ in events]
        assert kinds.count(ProgressEventKind.CHUNK_STARTED) == 3
        assert kinds.count(ProgressEventKind.CHUNK_COMPLETED) == 3
        assert kinds[-1] == ProgressEventKind.TRANSFER_COMPLETED

    def test_truncated_chunk_is_retried(self, client, fake_s3, remote, tmp_path):
        """A short range read is transient: the chunk is fetched again."""
        fake_s3.add_fault(method="GET", range_start=4 * MiB, truncate_to=1000)
        target = tmp_path / "big.bin"

        result = client.download_file("bucket", "big.bin", str(target), ranged_options(max_retries=2))

        assert result.success, result.error
        assert range_headers(fake_s3).count(RANGES[1]) == 2
        assert target.read_bytes() == remote

    def test_failure_keeps_partial_file_and_state(self, client, fake_s3, remote, tmp_path, resume_store):
        fake_s3.add_fault(method="GET", range_start=8 * MiB, status=503, code="SlowDown")
        target = tmp_path / "big.bin"

        result = client.download_file("bucket", "big.bin", str(target), ranged_options())

        assert result.success is False
        assert isinstance(result.error, TransferError)
        assert not target.exists()
        assert os.path.getsize(partial_path(str(target))) == 10 * MiB

        state = resume_store.load("bucket", "big.bin", str(target), TransferDirection.DOWNLOAD)
        assert [c.status for c in state.chunks] == [
            ChunkStatus.COMPLETED, ChunkStatus.COMPLETED, ChunkStatus.FAILED,
        ]
        assert state.get(0).checksum is not None

    def test_resume_fetches_only_missing_ranges(self, client, fake_s3, remote, tmp_path, resume_store):
        fake_s3.add_fault(method="GET", range_start=8 * MiB)
        target = tmp_path / "big.bin"
        client.download_file("bucket", "big.bin", str(target), ranged_options())
        before = len(range_headers(fake_s3))

        result = client.download_file("bucket", "big.bin", str(target), ranged_options())

        assert result.success, result.error
        assert result.resumed is True
        assert range_headers(fake_s3)[before:] == [RANGES[2]]
        assert target.read_bytes() == remote
        assert resume_store.list_files() == []

    def test_resumed_progress_counts_earlier_ranges(self, client, fake_s3, remote, tmp_path):
        """Progress after a resume starts from the ranges already on disk."""
        fake_s3.add_fault(method="GET", range_start=8 * MiB)
        target = tmp_path / "big.bin"
        client.download_file("bucket", "big.bin", str(target), ranged_options())
        events = []

        result = client.download_file(
            "bucket", "big.bin", str(target), ranged_options(), progress=events.append
        )

        assert result.resumed is True
        assert result.bytes_transferred == 2 * MiB
        started = [e for e in events if e.kind == ProgressEventKind.CHUNK_STARTED]
        assert started[0].bytes_transferred == 8 * MiB
        assert events[-1].kind == ProgressEventKind.TRANSFER_COMPLETED
        assert events[-1].bytes_transferred == events[-1].total_bytes == 10 * MiB

    def test_changed_object_starts_over(self, client, fake_s3, remote, tmp_path):
        """A new ETag on the remote object invalidates stored progress."""
        fake_s3.add_fault(method="GET", range_start=8 * MiB)
        target = tmp_path / "big.bin"
        client.download_file("bucket", "big.bin", str(target), ranged_options())
        new_data = os.urandom(10 * MiB)
        fake_s3.put("bucket", "big.bin", new_data)
        before = len(range_headers(fake_s3))

        result = client.download_file("bucket", "big.bin", str(target), ranged_options())

        assert result.success, result.error
        assert result.resumed is False
        assert range_headers(fake_s3)[before:] == RANGES
        assert target.read_bytes() == new_data

    def test_missing_partial_file_starts_over(self, client, fake_s3, remote, tmp_path):
        fake_s3.add_fault(method="GET", range_start=8 * MiB)
        target = tmp_path / "big.bin"
        client.download_file("bucket", "big.bin", str(target), ranged_options())
        os.remove(partial_path(str(target)))

        result = client.download_file("bucket", "big.bin", str(target), ranged_options())

        assert result.success
        assert result.resumed is False
        assert target.read_bytes() == remote

    def test_object_replaced_mid_download(self, client, fake_s3, remote, tmp_path):
        """If-Match turns a replaced object into a fatal 412."""
        def replace_object(request):
            if request.headers.get("range", "").startswith(f"bytes={4 * MiB}-"):
                fake_s3.put("bucket", "big.bin", b"replaced" * 10)

        fake_s3.hook = replace_object
        target = tmp_path / "big.bin"

        result = client.download_file("bucket", "big.bin", str(target), ranged_options(max_retries=3))

        assert result.success is False
        cause = result.error.__cause__
        assert isinstance(cause, StorageError)
        assert cause.status_code == 412
        assert range_headers(fake_s3).count(RANGES[1]) == 1
        assert not target.exists()

    def test_resume_disabled_persists_nothing(self, client, fake_s3, remote, tmp_path, resume_store):
        fake_s3.add_fault(method="GET", range_start=8 * MiB)

        result = client.download_file("bucket", "big.bin", str(tmp_path / "out"), ranged_options(resume=False))

        assert result.success is False
        assert resume_store.list_files() == []

    def test_cancel_stops_remaining_chunks(self, client, fake_s3, remote, tmp_path, resume_store):
        cancel = threading.Event()

        def cancel_on_first_range(request):
            if "range" in request.headers:
                cancel.set()
                time.sleep(0.2)

        fake_s3.hook = cancel_on_first_range
        manager = MultipartDownloadManager(client, drain_interval=0.01)

        result = manager.download(
            "bucket", "big.bin", str(tmp_path / "out"), ranged_options(cancel_event=cancel)
        )

        assert result.success is False
        assert "cancelled" in str(result.error)
        state = resume_store.load("bucket", "big.bin", str(tmp_path / "out"), TransferDirection.DOWNLOAD)
        assert state.pending_indices() == [1, 2]
