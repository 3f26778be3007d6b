from __future__ import annotations

from pathlib import Path

import pytest

from upload_server.services.errors import InvalidRequestError, MissingChunkError
from upload_server.services.storage import ChunkStore


async def _collect(store: ChunkStore, session_id: str, index: int, block_size: int = 3) -> bytes:
    return b"".join([block async for block in store.stream(session_id, index, block_size)])


@pytest.mark.asyncio
async def test_put_creates_session_area_and_lists_sorted(chunk_store: ChunkStore) -> None:
    assert not chunk_store.session_dir("s1").exists()

    await chunk_store.put("s1", 2, b"C")
    await chunk_store.put("s1", 0, b"AAA")
    await chunk_store.put("s1", 10, b"later")

    assert chunk_store.session_dir("s1").is_dir()
    assert await chunk_store.list("s1") == [0, 2, 10]
    assert await chunk_store.chunk_sizes("s1") == {0: 3, 2: 1, 10: 5}


@pytest.mark.asyncio
async def test_unknown_session_lists_nothing_and_is_not_created(chunk_store: ChunkStore) -> None:
    assert await chunk_store.list("never-seen") == []
    assert not chunk_store.session_dir("never-seen").exists()


@pytest.mark.asyncio
async def test_retry_overwrites_payload(chunk_store: ChunkStore) -> None:
    await chunk_store.put("s1", 0, b"first")
    await chunk_store.put("s1", 0, b"second try")

    assert await chunk_store.list("s1") == [0]
    assert await _collect(chunk_store, "s1", 0) == b"second try"


@pytest.mark.asyncio
async def test_in_flight_temp_files_are_not_listed(chunk_store: ChunkStore) -> None:
    await chunk_store.put("s1", 0, b"AAA")
    session_dir = chunk_store.session_dir("s1")
    (session_dir / "chunk_00000001.part.5f3c.tmp").write_bytes(b"half")
    (session_dir / "notes.txt").write_text("ignored")

    assert await chunk_store.list("s1") == [0]
    assert not await chunk_store.exists("s1", 1)


@pytest.mark.asyncio
async def test_stream_yields_blocks_in_order(chunk_store: ChunkStore) -> None:
    await chunk_store.put("s1", 0, b"abcdefgh")

    blocks = [block async for block in chunk_store.stream("s1", 0, 3)]

    assert blocks == [b"abc", b"def", b"gh"]


@pytest.mark.asyncio
async def test_stream_of_missing_chunk_raises(chunk_store: ChunkStore) -> None:
    with pytest.raises(MissingChunkError) as excinfo:
        await _collect(chunk_store, "s1", 4)
    assert excinfo.value.index == 4


@pytest.mark.asyncio
async def test_remove_is_idempotent(chunk_store: ChunkStore) -> None:
    await chunk_store.put("s1", 0, b"AAA")

    assert await chunk_store.remove("s1", 0) is True
    assert await chunk_store.remove("s1", 0) is True
    assert await chunk_store.list("s1") == []


@pytest.mark.asyncio
async def test_purge_session_is_recursive_and_idempotent(chunk_store: ChunkStore) -> None:
    await chunk_store.put("s1", 0, b"AAA")
    (chunk_store.session_dir("s1") / "nested").mkdir()
    (chunk_store.session_dir("s1") / "nested" / "leftover").write_bytes(b"x")

    await chunk_store.purge_session("s1")
    await chunk_store.purge_session("s1")

    assert not chunk_store.session_dir("s1").exists()


@pytest.mark.asyncio
async def test_adopt_moves_already_persisted_bytes(chunk_store: ChunkStore, tmp_path: Path) -> None:
    source = tmp_path / "incoming.bin"
    source.write_bytes(b"from disk")

    size = await chunk_store.adopt("s1", 0, source)

    assert size == len(b"from disk")
    assert not source.exists()
    assert await _collect(chunk_store, "s1", 0) == b"from disk"


@pytest.mark.asyncio
async def test_list_sessions(chunk_store: ChunkStore) -> None:
    await chunk_store.put("b-session", 0, b"x")
    await chunk_store.put("a-session", 0, b"y")
    (chunk_store.tmp_dir / "stray-file").write_bytes(b"")

    assert await chunk_store.list_sessions() == ["a-session", "b-session"]


@pytest.mark.parametrize("session_id", ["", ".", "..", "../escape", "a/b", "a\\b", "nul\x00byte", "x" * 256])
@pytest.mark.asyncio
async def test_invalid_session_ids_are_rejected_before_writing(chunk_store: ChunkStore, session_id: str) -> None:
    with pytest.raises(InvalidRequestError):
        await chunk_store.put(session_id, 0, b"data")
    assert await chunk_store.list_sessions() == []


@pytest.mark.parametrize("index", [-1, True, "3", 1.5])
@pytest.mark.asyncio
async def test_invalid_indices_are_rejected(chunk_store: ChunkStore, index: object) -> None:
    with pytest.raises(InvalidRequestError):
        await chunk_store.put("s1", index, b"data")  # type: ignore[arg-type]


def test_percent_encoded_session_ids_are_plain_names(chunk_store: ChunkStore) -> None:
    path = chunk_store.chunk_path("%ED%95%9C.mp4_1048576", 7)
    assert path.parent.name == "%ED%95%9C.mp4_1048576"
    assert path.name == "chunk_00000007.part"
