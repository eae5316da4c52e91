"""Tests for buffering, part flushing and finalization in BufferedUploadStore."""

import asyncio
import base64
import os

import pytest

from buffered_tus.errors import DurableStoreError
from buffered_tus.errors import LockTimeout
from buffered_tus.errors import OffsetMismatch
from buffered_tus.errors import SessionNotFound
from buffered_tus.errors import UploadLengthExceeded
from buffered_tus.store import META_COMPLETED
from buffered_tus.store import META_MULTIPART_UPLOAD_ID
from tests.unit.mocks.mock_object_store import MockObjectStore


async def chunks(*parts: bytes):
    for part in parts:
        yield part


class TestSmallUploads:
    """Uploads that never reach the part threshold."""

    @pytest.mark.asyncio
    async def test_single_append_finalizes_with_one_put(self, store, object_store):
        upload_id = await store.create_upload(3)

        accepted = await store.append_data(upload_id, b"abc")

        assert accepted == 3
        assert object_store.objects[store.file_key(upload_id)] == b"abc"
        assert "initiate_multipart" not in object_store.operations()
        assert object_store.operations().count("put_object") == 2  # metadata object + file
        assert await store.get_offset(upload_id) == 3

    @pytest.mark.asyncio
    async def test_small_upload_across_appends_never_starts_multipart(self, store, object_store):
        upload_id = await store.create_upload(4)

        await store.append_data(upload_id, b"ab")
        assert store.file_key(upload_id) not in object_store.objects
        assert await store.get_offset(upload_id) == 2

        await store.append_data(upload_id, b"cd")

        assert object_store.objects[store.file_key(upload_id)] == b"abcd"
        assert "initiate_multipart" not in object_store.operations()
        session = await store.state.get_session(upload_id)
        assert session.multipart_upload_id is None

    @pytest.mark.asyncio
    async def test_zero_length_upload_is_finalized_on_create(self, store, object_store):
        upload_id = await store.create_upload(0)

        assert object_store.objects[store.file_key(upload_id)] == b""
        assert await store.get_offset(upload_id) == 0
        assert object_store.metadata[store.metadata_key(upload_id)][META_COMPLETED] == "true"

    @pytest.mark.asyncio
    async def test_content_type_comes_from_metadata(self, store, object_store):
        header = "contentType " + base64.b64encode(b"text/plain").decode()
        upload_id = await store.create_upload(2, header)

        await store.append_data(upload_id, b"hi")

        assert object_store.content_types[store.file_key(upload_id)] == "text/plain"


class TestMultipartUploads:
    """Uploads large enough to be flushed as parts."""

    @pytest.mark.asyncio
    async def test_reference_scenario_twelve_million_bytes(self, make_store):
        object_store = MockObjectStore(min_part_size=5_000_000)
        store = make_store(object_store=object_store, min_part_size_bytes=5_000_000)
        payload = os.urandom(12_000_000)
        upload_id = await store.create_upload(12_000_000)

        await store.append_data(upload_id, payload[:4_000_000])
        assert await store.get_offset(upload_id) == 4_000_000
        assert "initiate_multipart" not in object_store.operations()

        await store.append_data(upload_id, payload[4_000_000:7_000_000])
        assert await store.get_offset(upload_id) == 7_000_000
        assert await store.state.get_committed(upload_id) == 5_000_000
        assert await store.state.buffer_length(upload_id) == 2_000_000
        parts = await store.state.get_parts(upload_id)
        assert [p.part_number for p in parts] == [1]

        await store.append_data(upload_id, payload[7_000_000:])

        key = store.file_key(upload_id)
        assert object_store.objects[key] == payload
        assert await store.state.get_committed(upload_id) == 12_000_000
        assert await store.get_offset(upload_id) == 12_000_000
        completed = object_store.completed_parts[key]
        assert [p.part_number for p in completed] == [1, 2, 3]
        assert object_store.part_sizes[key] == [5_000_000, 5_000_000, 2_000_000]

    @pytest.mark.asyncio
    async def test_parts_are_contiguous_and_at_least_min_size(self, store, object_store):
        payload = bytes(range(23))
        upload_id = await store.create_upload(len(payload))

        for start in range(0, len(payload), 3):
            await store.append_data(upload_id, payload[start : start + 3])

        key = store.file_key(upload_id)
        completed = object_store.completed_parts[key]
        assert [p.part_number for p in completed] == list(range(1, len(completed) + 1))
        assert all(size >= 5 for size in object_store.part_sizes[key][:-1])
        assert object_store.objects[key] == payload
        assert "initiate_multipart" in object_store.operations()
        assert object_store.operations().count("initiate_multipart") == 1

    @pytest.mark.asyncio
    async def test_exact_multiple_of_part_size_completes_without_empty_tail(self, store, object_store):
        payload = b"0123456789"
        upload_id = await store.create_upload(len(payload))

        await store.append_data(upload_id, payload)

        key = store.file_key(upload_id)
        assert [p.part_number for p in object_store.completed_parts[key]] == [1, 2]
        assert object_store.objects[key] == payload
        assert object_store.operations().count("upload_part") == 2

    @pytest.mark.asyncio
    async def test_multipart_id_is_mirrored_and_completion_marked(self, store, object_store):
        upload_id = await store.create_upload(12)

        await store.append_data(upload_id, b"abcdef")
        session = await store.state.get_session(upload_id)
        mirrored = object_store.metadata[store.metadata_key(upload_id)]
        assert mirrored[META_MULTIPART_UPLOAD_ID] == session.multipart_upload_id
        assert META_COMPLETED not in mirrored

        await store.append_data(upload_id, b"ghijkl")

        assert object_store.metadata[store.metadata_key(upload_id)][META_COMPLETED] == "true"

    @pytest.mark.asyncio
    async def test_finalization_keeps_session_and_drops_transfer_state(self, store):
        upload_id = await store.create_upload(7)

        await store.append_data(upload_id, b"abcdefg")

        assert await store.exists(upload_id)
        assert await store.get_upload_length(upload_id) == 7
        assert await store.state.get_parts(upload_id) == []
        assert await store.state.buffer_length(upload_id) == 0


class TestAppendInvariants:
    """Offsets, chunking equivalence and rejected appends."""

    @pytest.mark.asyncio
    async def test_one_byte_appends_match_single_append(self, make_store, object_store):
        payload = os.urandom(17)
        store = make_store()

        single = await store.create_upload(len(payload))
        await store.append_data(single, payload)

        chunked = await store.create_upload(len(payload))
        for i in range(len(payload)):
            await store.append_data(chunked, payload[i : i + 1])

        assert object_store.objects[store.file_key(single)] == payload
        assert object_store.objects[store.file_key(chunked)] == payload

    @pytest.mark.asyncio
    async def test_offset_is_monotonic_and_never_premature(self, store, object_store):
        payload = os.urandom(13)
        upload_id = await store.create_upload(len(payload))
        offsets = []

        for start in range(0, len(payload), 2):
            await store.append_data(upload_id, payload[start : start + 2])
            offset = await store.get_offset(upload_id)
            offsets.append(offset)
            if offset < len(payload):
                assert "complete_multipart" not in object_store.operations()
                assert store.file_key(upload_id) not in object_store.objects

        assert offsets == sorted(offsets)
        assert offsets[-1] == len(payload)

    @pytest.mark.asyncio
    async def test_offset_read_during_flush_never_runs_ahead(self, store):
        upload_id = await store.create_upload(20)
        await store.append_data(upload_id, b"abcd")
        seen = []
        commit_part = store.state.commit_part

        async def commit_part_then_read_offset(*args, **kwargs):
            await commit_part(*args, **kwargs)
            seen.append(await store.get_offset(upload_id))

        store.state.commit_part = commit_part_then_read_offset
        await store.append_data(upload_id, b"efg")

        assert seen == [5]
        assert await store.get_offset(upload_id) == 7

    @pytest.mark.asyncio
    async def test_async_iterator_payload(self, store, object_store):
        upload_id = await store.create_upload(6)

        accepted = await store.append_data(upload_id, chunks(b"ab", b"", b"cdef"))

        assert accepted == 6
        assert object_store.objects[store.file_key(upload_id)] == b"abcdef"

    @pytest.mark.asyncio
    async def test_empty_payload_is_a_no_op(self, store):
        upload_id = await store.create_upload(10)

        assert await store.append_data(upload_id, b"") == 0
        assert await store.get_offset(upload_id) == 0

    @pytest.mark.asyncio
    async def test_unknown_upload_raises_session_not_found(self, store):
        with pytest.raises(SessionNotFound):
            await store.append_data("missing", b"abc")

    @pytest.mark.asyncio
    async def test_offset_mismatch_rejected_without_mutation(self, store):
        upload_id = await store.create_upload(10)
        await store.append_data(upload_id, b"abc")

        with pytest.raises(OffsetMismatch) as exc_info:
            await store.append_data(upload_id, b"def", expected_offset=0)

        assert exc_info.value.actual == 3
        assert await store.get_offset(upload_id) == 3

    @pytest.mark.asyncio
    async def test_matching_expected_offset_is_accepted(self, store):
        upload_id = await store.create_upload(10)
        await store.append_data(upload_id, b"abc", expected_offset=0)

        await store.append_data(upload_id, b"def", expected_offset=3)

        assert await store.get_offset(upload_id) == 6

    @pytest.mark.asyncio
    async def test_append_past_declared_length_rejected_without_mutation(self, store, object_store):
        upload_id = await store.create_upload(4)
        await store.append_data(upload_id, b"ab")

        with pytest.raises(UploadLengthExceeded):
            await store.append_data(upload_id, b"cdef")

        assert await store.get_offset(upload_id) == 2
        assert store.file_key(upload_id) not in object_store.objects

    @pytest.mark.asyncio
    async def test_negative_length_rejected(self, store):
        with pytest.raises(ValueError):
            await store.create_upload(-1)


class TestConcurrencyAndFailures:
    """Lock contention and object store failures during appends."""

    @pytest.mark.asyncio
    async def test_lock_timeout_leaves_state_untouched(self, store, lock_service, object_store):
        upload_id = await store.create_upload(10)
        await lock_service.try_acquire(f"tus:{upload_id}", 30)
        calls_before = list(object_store.calls)

        with pytest.raises(LockTimeout):
            await store.append_data(upload_id, b"abc")

        assert await store.get_offset(upload_id) == 0
        assert object_store.calls == calls_before

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_serialized(self, make_store, object_store):
        store = make_store(lock_timeout_seconds=2)
        upload_id = await store.create_upload(20)

        results = await asyncio.gather(*(store.append_data(upload_id, b"x" * 4) for _ in range(5)))

        assert results == [4] * 5
        assert await store.get_offset(upload_id) == 20
        assert object_store.objects[store.file_key(upload_id)] == b"x" * 20

    @pytest.mark.asyncio
    async def test_concurrent_appends_with_same_expected_offset_one_wins(self, make_store):
        store = make_store(lock_timeout_seconds=2)
        upload_id = await store.create_upload(20)

        results = await asyncio.gather(
            store.append_data(upload_id, b"aaaa", expected_offset=0),
            store.append_data(upload_id, b"bbbb", expected_offset=0),
            return_exceptions=True,
        )

        assert sum(1 for r in results if r == 4) == 1
        assert sum(1 for r in results if isinstance(r, OffsetMismatch)) == 1
        assert await store.get_offset(upload_id) == 4

    @pytest.mark.asyncio
    async def test_part_upload_failure_propagates_and_keeps_buffer(self, store, object_store):
        upload_id = await store.create_upload(12)
        await store.append_data(upload_id, b"abc")
        object_store.fail_on("upload_part")

        with pytest.raises(DurableStoreError):
            await store.append_data(upload_id, b"defg")

        assert await store.get_offset(upload_id) == 3
        assert await store.state.get_committed(upload_id) == 0

        await store.append_data(upload_id, b"defghijkl")
        assert object_store.objects[store.file_key(upload_id)] == b"abcdefghijkl"

    @pytest.mark.asyncio
    async def test_mirror_failure_does_not_fail_finalization(self, store, object_store):
        upload_id = await store.create_upload(3)
        object_store.fail_on("set_object_metadata")

        await store.append_data(upload_id, b"abc")

        assert object_store.objects[store.file_key(upload_id)] == b"abc"
        assert await store.get_offset(upload_id) == 3
