import asyncio
import hashlib
import os
import sys
from unittest.mock import patch

import pytest
from fastapi import HTTPException
from starlette.requests import ClientDisconnect

# Add the parent directory to sys.path so we can import the app package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app.services import repository as repository_module
from app.services.quota import QuotaManager
from app.services.repository import (
    ObjectRef,
    Repository,
    cleanup_temp_files,
    is_valid_name,
    parse_path,
    parse_range,
)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


async def chunks(*parts, delay=0.0):
    for part in parts:
        if delay:
            await asyncio.sleep(delay)
        yield part


@pytest.mark.parametrize("path, ref", [
    ("", ObjectRef()),
    ("config", ObjectRef(obj_type="config")),
    ("data/abc", ObjectRef(obj_type="data", name="abc")),
    ("data/", ObjectRef(obj_type="data", listing=True)),
    ("user/repo/keys/k1", ObjectRef(repo=["user", "repo"], obj_type="keys", name="k1")),
    ("user/repo/config", ObjectRef(repo=["user", "repo"], obj_type="config")),
    ("user/repo/", ObjectRef(repo=["user", "repo"])),
    ("user/repo/snapshots", ObjectRef(repo=["user", "repo"], obj_type="snapshots", listing=True)),
])
def test_parse_path(path, ref):
    assert parse_path(path) == ref


@pytest.mark.parametrize("name, valid", [
    ("a" * 64, True),
    ("lock-1.tmp_x", True),
    ("", False),
    (".", False),
    ("..", False),
    ("bad@name", False),
    (".snap.tmp", False),
    (".hidden", False),
    ("a" * 201, False),
])
def test_is_valid_name(name, valid):
    assert is_valid_name(name) is valid


@pytest.mark.parametrize("header, size, expected", [
    (None, 10, None),
    ("bytes=2-5", 10, (2, 5)),
    ("bytes=2-", 10, (2, 9)),
    ("bytes=-3", 10, (7, 9)),
    ("bytes=5-100", 10, (5, 9)),
    ("bytes=-30", 10, (0, 9)),
    ("bytes=0-1,4-5", 10, None),
    ("items=0-1", 10, None),
])
def test_parse_range(header, size, expected):
    assert parse_range(header, size) == expected


@pytest.mark.parametrize("header, size", [
    ("bytes=10-", 10),
    ("bytes=5-2", 10),
    ("bytes=-0", 10),
    ("bytes=0-", 0),
])
def test_parse_range_unsatisfiable(header, size):
    with pytest.raises(HTTPException) as exc_info:
        parse_range(header, size)
    assert exc_info.value.status_code == 416


def test_object_path_layout(tmp_path):
    repo = Repository(tmp_path)
    assert repo.object_path("config") == tmp_path / "config"
    assert repo.object_path("data") == tmp_path / "data"
    assert repo.object_path("data", "abcdef") == tmp_path / "data" / "ab" / "abcdef"
    assert repo.object_path("locks", "abcdef") == tmp_path / "locks" / "abcdef"


def test_cleanup_temp_files(tmp_path):
    (tmp_path / "data" / "ab").mkdir(parents=True)
    stale = tmp_path / "data" / "ab" / ".abcd.0011223344556677.tmp"
    stale.write_bytes(b"partial")
    kept = tmp_path / "data" / "ab" / "abcd"
    kept.write_bytes(b"data")

    assert cleanup_temp_files(tmp_path) == 1
    assert not stale.exists()
    assert kept.exists()


@pytest.mark.asyncio
async def test_create_builds_layout(tmp_path):
    repo = Repository(tmp_path / "repo")
    await repo.create()

    for obj_type in ("data", "index", "keys", "locks", "snapshots"):
        assert (tmp_path / "repo" / obj_type).is_dir()
    assert (tmp_path / "repo" / "data" / "00").is_dir()
    assert (tmp_path / "repo" / "data" / "ff").is_dir()

    # still no config, creating again is allowed
    await repo.create()


@pytest.mark.asyncio
async def test_create_conflicts_with_existing_repository(tmp_path):
    repo = Repository(tmp_path)
    await repo.create()
    await repo.save_object("config", chunks(b"cfg"))

    with pytest.raises(HTTPException) as exc_info:
        await repo.create()
    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_concurrent_uploads_of_same_id(tmp_path):
    repo = Repository(tmp_path)
    await repo.create()
    data = b"same content"
    name = sha256_hex(data)

    results = await asyncio.gather(
        repo.save_object("data", chunks(data[:4], data[4:], delay=0.05), name),
        repo.save_object("data", chunks(data[:4], data[4:], delay=0.05), name),
        return_exceptions=True,
    )

    successes = [r for r in results if r == len(data)]
    failures = [r for r in results if isinstance(r, HTTPException)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert failures[0].status_code == 403
    assert repo.object_path("data", name).read_bytes() == data
    assert os.listdir(repo.object_path("data", name).parent) == [name]


async def interrupted(part, error):
    yield part
    raise error


@pytest.mark.asyncio
async def test_interrupted_upload_leaves_nothing(tmp_path):
    quota = QuotaManager(tmp_path, 100)
    quota.initialize()
    repo = Repository(tmp_path, quota=quota)
    await repo.create()
    used_before = quota.space_used

    with pytest.raises(HTTPException) as exc_info:
        await repo.save_object("snapshots", interrupted(b"partial", ConnectionResetError()),
                               "a" * 64, content_length=12)

    assert exc_info.value.status_code == 500
    assert os.listdir(tmp_path / "snapshots") == []
    assert quota.space_used == used_before


@pytest.mark.asyncio
async def test_client_disconnect_discards_upload(tmp_path):
    quota = QuotaManager(tmp_path, 100)
    quota.initialize()
    repo = Repository(tmp_path, quota=quota)
    await repo.create()

    with patch.object(repository_module.logger, "error") as log_error:
        with pytest.raises(HTTPException) as exc_info:
            await repo.save_object("locks", interrupted(b"part", ClientDisconnect()),
                                   "b" * 64, content_length=12)
        log_error.assert_not_called()

    assert exc_info.value.status_code == 400
    assert os.listdir(tmp_path / "locks") == []
    assert quota.space_used == 0


@pytest.mark.asyncio
async def test_rejected_upload_leaves_nothing(tmp_path):
    repo = Repository(tmp_path)
    await repo.create()
    data = b"lock"

    with pytest.raises(HTTPException) as exc_info:
        await repo.save_object("locks", chunks(data + b"broken"), sha256_hex(data))
    assert exc_info.value.status_code == 400
    assert os.listdir(tmp_path / "locks") == []


@pytest.mark.asyncio
async def test_quota_reservation_released_on_failure(tmp_path):
    quota = QuotaManager(tmp_path, 100)
    quota.initialize()
    repo = Repository(tmp_path, quota=quota)
    await repo.create()

    data = b"x" * 60
    assert await repo.save_object("data", chunks(data), sha256_hex(data), content_length=len(data)) == 60
    assert quota.space_used == 60

    # no Content-Length, the limit is hit while streaming
    big = b"y" * 30 + b"z" * 30
    with pytest.raises(HTTPException) as exc_info:
        await repo.save_object("data", chunks(big[:30], big[30:]), sha256_hex(big))
    assert exc_info.value.status_code == 403
    assert quota.space_used == 60
    assert not repo.object_path("data", sha256_hex(big)).exists()

    # Content-Length larger than the actual body, the unused part is returned
    small = b"s" * 10
    await repo.save_object("data", chunks(small), sha256_hex(small), content_length=40)
    assert quota.space_used == 70

    await repo.delete_object("data", sha256_hex(data))
    assert quota.space_used == 10


@pytest.mark.asyncio
async def test_iter_object_range(tmp_path):
    repo = Repository(tmp_path, verify_upload=False)
    await repo.create()
    await repo.save_object("index", chunks(b"0123456789"), "idx")

    body = b"".join([chunk async for chunk in repo.iter_object("index", "idx", 3, 4)])
    assert body == b"3456"
