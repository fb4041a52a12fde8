"""End-to-end transfers through S3ObjectStoreClient against an in-memory S3."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError

from datamover.domain.block_ids import encode_block_id
from datamover.infra.storage.client import NotFoundError, TransportError
from datamover.infra.storage.s3_client import (
    MIN_PART_SIZE,
    S3ObjectStoreClient,
    plan_parts,
)
from datamover.services.base import CommitError
from datamover.services.multipart import MultipartState
from datamover.services.transfer_service import TransferService
from tests.infra.fake_s3 import FakeS3Client

STAGING = ".datamover-blocks/"


@pytest.fixture()
def fake_s3():
    fake = FakeS3Client()
    with patch.object(S3ObjectStoreClient, "_build_client", return_value=fake):
        yield fake


@pytest.fixture()
def s3_store(fake_s3, settings):
    return S3ObjectStoreClient(settings=settings)


@pytest.fixture()
def service(s3_store, settings):
    return TransferService(s3_store, settings=settings)


def _content(fake: FakeS3Client, location, key: str) -> bytes:
    return fake.objects[(location.bucket, key)]


def _staged_keys(fake: FakeS3Client) -> list[str]:
    return sorted(key for _, key in fake.objects if key.startswith(STAGING))


class TestPlanParts:
    def test_small_blocks_merge_until_minimum(self):
        sizes = {"a": 1, "b": 2, "c": 3, "d": 1}

        parts = plan_parts(["a", "b", "c", "d"], sizes, min_part_size=4)

        assert parts == [["a", "b", "c"], ["d"]]

    def test_large_blocks_stand_alone(self):
        sizes = {"a": 4, "b": 5, "c": 1}

        parts = plan_parts(["a", "b", "c"], sizes, min_part_size=4)

        assert parts == [["a"], ["b"], ["c"]]

    def test_pending_small_block_absorbs_next_large_one(self):
        sizes = {"a": 1, "b": 8, "c": 1}

        parts = plan_parts(["a", "b", "c"], sizes, min_part_size=4)

        assert parts == [["a", "b"], ["c"]]

    def test_every_part_but_last_reaches_minimum(self):
        tokens = [str(i) for i in range(20)]
        sizes = {token: (i % 3) + 1 for i, token in enumerate(tokens)}

        parts = plan_parts(tokens, sizes, min_part_size=5)

        assert [token for part in parts for token in part] == tokens
        assert all(sum(sizes[t] for t in part) >= 5 for part in parts[:-1])


class TestCommitContent:
    def test_small_blocks_commit_in_call_order(self, service, fake_s3, location):
        session = service.multipart_upload_init("obj", location)
        session.stage_block(0, b"AAAA")
        session.stage_block(1, b"BBBB")

        session.commit()

        assert session.state is MultipartState.COMMITTED
        assert _content(fake_s3, location, "obj") == b"AAAABBBB"
        assert "create_multipart_upload" not in fake_s3.calls
        assert _staged_keys(fake_s3) == []

    def test_out_of_order_staging_is_committed_as_staged(
        self, service, fake_s3, location
    ):
        session = service.multipart_upload_init("obj", location)
        session.stage_block(1, b"BB")
        session.stage_block(0, b"AA")

        session.commit()

        assert _content(fake_s3, location, "obj") == b"BBAA"

    def test_sort_on_commit_restores_sequence_order(self, service, fake_s3, location):
        session = service.multipart_upload_init("obj", location, sort_on_commit=True)
        session.stage_block(1, b"BB")
        session.stage_block(0, b"AA")

        session.commit()

        assert _content(fake_s3, location, "obj") == b"AABB"

    def test_single_block(self, service, fake_s3, location):
        session = service.multipart_upload_init("obj", location)
        session.stage_block(7, b"solo")

        session.commit()

        assert _content(fake_s3, location, "obj") == b"solo"
        assert fake_s3.completed_parts == [[4]]

    def test_large_blocks_are_copied_server_side(self, service, fake_s3, location):
        first, second = b"A" * MIN_PART_SIZE, b"B" * MIN_PART_SIZE
        session = service.multipart_upload_init("big", location)
        session.stage_block(0, first)
        session.stage_block(1, second)
        session.stage_block(2, b"tail")

        session.commit()

        assert _content(fake_s3, location, "big") == first + second + b"tail"
        assert fake_s3.completed_parts == [[MIN_PART_SIZE, MIN_PART_SIZE, 4]]
        assert fake_s3.calls.count("upload_part_copy") == 3
        assert "upload_part" not in fake_s3.calls

    def test_small_blocks_are_merged_into_valid_parts(
        self, service, fake_s3, location
    ):
        large = b"L" * MIN_PART_SIZE
        session = service.multipart_upload_init("mixed", location)
        session.stage_block(0, b"xy")
        session.stage_block(1, large)
        session.stage_block(2, b"zz")

        session.commit()

        assert _content(fake_s3, location, "mixed") == b"xy" + large + b"zz"
        assert fake_s3.completed_parts == [[MIN_PART_SIZE + 2, 2]]
        assert "upload_part" in fake_s3.calls

    def test_empty_block_list_writes_empty_object(self, service, fake_s3, location):
        session = service.multipart_upload_init("empty", location)

        session.commit()

        assert _content(fake_s3, location, "empty") == b""

    def test_missing_block_fails_without_writing(
        self, service, s3_store, fake_s3, location
    ):
        session = service.multipart_upload_init("obj", location)
        token = session.stage_block(0, b"AAAA")
        session.stage_block(1, b"BBBB")
        del fake_s3.objects[(location.bucket, s3_store.staging_key("obj", token))]

        with pytest.raises(CommitError) as excinfo:
            session.commit()

        assert isinstance(excinfo.value.__cause__, NotFoundError)
        assert session.state is MultipartState.STAGING
        assert (location.bucket, "obj") not in fake_s3.objects

    def test_failed_multipart_commit_can_be_retried(self, service, fake_s3, location):
        complete = fake_s3.complete_multipart_upload
        failures = [
            ClientError(
                {"Error": {"Code": "InternalError", "Message": "boom"}},
                "CompleteMultipartUpload",
            )
        ]

        def flaky_complete(**kwargs):
            if failures:
                raise failures.pop()
            return complete(**kwargs)

        fake_s3.complete_multipart_upload = flaky_complete
        first = b"A" * MIN_PART_SIZE
        session = service.multipart_upload_init("obj", location)
        session.stage_block(0, first)
        session.stage_block(1, b"BB")

        with pytest.raises(CommitError) as excinfo:
            session.commit()
        assert isinstance(excinfo.value.__cause__, TransportError)
        assert "abort_multipart_upload" in fake_s3.calls
        assert fake_s3.uploads == {}
        assert len(_staged_keys(fake_s3)) == 2

        session.commit()

        assert _content(fake_s3, location, "obj") == first + b"BB"
        assert _staged_keys(fake_s3) == []


class TestStagingIsolation:
    def test_commit_keeps_blocks_of_nested_keys(
        self, service, s3_store, fake_s3, location
    ):
        child = service.multipart_upload_init("a/b", location)
        child.stage_block(0, b"child")
        parent = service.multipart_upload_init("a", location)
        parent.stage_block(0, b"parent")

        parent.commit()
        assert _staged_keys(fake_s3) == [
            s3_store.staging_key("a/b", encode_block_id(0)),
        ]
        child.commit()

        assert _content(fake_s3, location, "a") == b"parent"
        assert _content(fake_s3, location, "a/b") == b"child"
        assert _staged_keys(fake_s3) == []

    def test_commit_discards_unused_blocks_of_its_key(
        self, service, s3_store, fake_s3, location
    ):
        conn = s3_store.authenticate(
            location.endpoint, location.access_key, location.secret_key
        )
        s3_store.put_block(
            conn,
            bucket=location.bucket,
            key="obj",
            token=encode_block_id(-1),
            data=b"unused",
        )
        session = service.multipart_upload_init("obj", location)
        session.stage_block(0, b"used")

        session.commit()

        assert _content(fake_s3, location, "obj") == b"used"
        assert _staged_keys(fake_s3) == []

    def test_listing_hides_staged_blocks(self, service, fake_s3, location):
        fake_s3.objects[(location.bucket, "visible")] = b"v"
        session = service.multipart_upload_init("pending", location)
        session.stage_block(0, b"hidden")

        keys = [item.key for item in service.list_objects(location)]

        assert keys == ["visible"]


class TestWholeObjectAndRanges:
    def test_upload_then_download(self, service, fake_s3, location):
        service.upload("obj", location, b"payload")
        buffer = bytearray(16)

        size = service.download("obj", location, buffer)

        assert bytes(buffer[:size]) == b"payload"

    def test_download_range_spans_chunks(self, service, fake_s3, location):
        source = bytes(range(100))
        fake_s3.objects[(location.bucket, "obj")] = source
        buffer = bytearray(10)

        count = service.download_range("obj", location, buffer, 10, 19)

        assert count == 10
        assert bytes(buffer) == source[10:20]

    def test_delete_removes_object_only(self, service, fake_s3, location):
        fake_s3.objects[(location.bucket, "obj")] = b"x"
        fake_s3.objects[(location.bucket, "obj-2")] = b"y"

        service.delete("obj", location)

        assert (location.bucket, "obj") not in fake_s3.objects
        assert fake_s3.objects[(location.bucket, "obj-2")] == b"y"

    @pytest.mark.parametrize("code", ["NotImplemented", "AccessDenied"])
    def test_delete_without_version_listing(self, service, fake_s3, location, code):
        fake_s3.version_listing_error = code
        fake_s3.objects[(location.bucket, "obj")] = b"x"

        service.delete("obj", location)

        assert (location.bucket, "obj") not in fake_s3.objects
        assert "delete_object" in fake_s3.calls
