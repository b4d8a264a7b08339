import asyncio
import hashlib
import os
import re
import secrets
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple

import aiofiles
import aiofiles.os
from fastapi import HTTPException
from starlette.requests import ClientDisconnect

import config
from app.services.path_resolver import join
from app.services.quota import QuotaManager
from logger_config import setup_logger

logger = setup_logger()

CONFIG = "config"
OBJECT_TYPES = ("data", "index", "keys", "locks", "snapshots")
# Deletable even in append-only mode
APPEND_ONLY_DELETABLE = ("locks",)

NAME_PATTERN = re.compile(r'^[a-zA-Z0-9_-][a-zA-Z0-9._-]*$')
RANGE_PATTERN = re.compile(r'^bytes=(\d*)-(\d*)$')


@dataclass
class ObjectRef:
    """Target of a request: repository path segments, object type and name."""
    repo: List[str] = field(default_factory=list)
    obj_type: Optional[str] = None
    name: Optional[str] = None
    listing: bool = False


def parse_path(path: str) -> ObjectRef:
    """Split a URL path such as "user/repo/data/<id>" into an ObjectRef."""
    segments = [segment for segment in path.split("/") if segment]
    if not segments:
        return ObjectRef()
    if segments[-1] == CONFIG:
        return ObjectRef(repo=segments[:-1], obj_type=CONFIG)
    if len(segments) >= 2 and segments[-2] in OBJECT_TYPES:
        return ObjectRef(repo=segments[:-2], obj_type=segments[-2], name=segments[-1])
    if segments[-1] in OBJECT_TYPES:
        return ObjectRef(repo=segments[:-1], obj_type=segments[-1], listing=True)
    return ObjectRef(repo=segments)


def is_valid_name(name: str) -> bool:
    """Check if the object name can be used verbatim as a filename."""
    if not name or len(name) > config.MAX_ID_LENGTH:
        return False
    return bool(NAME_PATTERN.match(name))


def validate_name(name: str):
    """Validate the object name and raise HTTPException if invalid."""
    if not is_valid_name(name):
        raise HTTPException(status_code=400, detail="Invalid object name")


def parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """Parse a single "bytes=" range into an inclusive (start, end) pair.

    Returns None when the whole object should be sent. Raises 416 when the
    range cannot be satisfied.
    """
    if not header:
        return None
    match = RANGE_PATTERN.match(header.strip())
    if not match or match.group(1) == match.group(2) == "":
        # Unsupported or malformed ranges are ignored
        return None

    first, last = match.groups()
    if first == "":
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise HTTPException(status_code=416, detail="Requested range not satisfiable",
                                headers={"content-range": f"bytes */{size}"})
        return max(size - suffix, 0), size - 1

    start = int(first)
    end = int(last) if last else size - 1
    if start >= size or end < start:
        raise HTTPException(status_code=416, detail="Requested range not satisfiable",
                            headers={"content-range": f"bytes */{size}"})
    return start, min(end, size - 1)


def cleanup_temp_files(root: Path) -> int:
    """Remove upload files left behind by an interrupted server."""
    files_removed = 0
    for folder_path, _, files in os.walk(root):
        for file in files:
            if file.startswith(".") and file.endswith(config.TEMP_SUFFIX):
                (Path(folder_path) / file).unlink(missing_ok=True)
                files_removed += 1
    logger.info(f"Cleaned temporary upload files, removed {files_removed} files")
    return files_removed


def _scan_objects(directory: Path, fan_out: bool) -> List[Tuple[str, int]]:
    directories = [directory]
    if fan_out:
        directories = sorted(entry.path for entry in os.scandir(directory) if entry.is_dir())

    objects = []
    for current in directories:
        for entry in os.scandir(current):
            if entry.name.startswith(".") or not entry.is_file():
                continue
            objects.append((entry.name, entry.stat().st_size))
    return sorted(objects)


class Repository:
    """Object storage of one repository directory."""

    def __init__(
        self,
        path: Path,
        append_only: bool = False,
        verify_upload: bool = True,
        quota: Optional[QuotaManager] = None,
    ):
        self.path = Path(path)
        self.append_only = append_only
        self.verify_upload = verify_upload
        self.quota = quota

    def object_path(self, obj_type: str, name: Optional[str] = None) -> Path:
        """Get the path of an object, or of the type directory when name is None."""
        base = str(self.path)
        if obj_type == CONFIG:
            return Path(join(base, CONFIG))
        if name is None:
            return Path(join(base, obj_type))
        if obj_type == "data":
            # data/<first two characters of the id>/<id>
            return Path(join(base, obj_type, name[:2], name))
        return Path(join(base, obj_type, name))

    async def create(self):
        """Create the type directories; refuses when a config already exists."""
        if await aiofiles.os.path.exists(self.object_path(CONFIG)):
            raise HTTPException(status_code=409, detail="Repository already exists")

        try:
            for obj_type in OBJECT_TYPES:
                await aiofiles.os.makedirs(self.object_path(obj_type), exist_ok=True)
            data_dir = self.object_path("data")
            for i in range(256):
                await aiofiles.os.makedirs(data_dir / f"{i:02x}", exist_ok=True)
        except OSError as e:
            logger.error(f"Error creating repository {self.path}: {str(e)}", exc_info=True)
            raise HTTPException(status_code=500, detail="Error creating repository")

        logger.info(f"Created repository at {self.path}")

    async def stat_object(self, obj_type: str, name: Optional[str] = None) -> int:
        """Return the size of an object, raising 404 if it does not exist."""
        path = self.object_path(obj_type, name)
        try:
            st = await aiofiles.os.stat(path)
        except (FileNotFoundError, NotADirectoryError):
            raise HTTPException(status_code=404, detail=f"{obj_type} {name or ''} not found".strip())
        if not stat.S_ISREG(st.st_mode):
            raise HTTPException(status_code=404, detail=f"{obj_type} {name or ''} not found".strip())
        return st.st_size

    async def iter_object(
        self,
        obj_type: str,
        name: Optional[str] = None,
        start: int = 0,
        length: Optional[int] = None,
    ) -> AsyncIterator[bytes]:
        """Stream an object, optionally a slice of it, in chunks."""
        path = self.object_path(obj_type, name)
        remaining = length
        async with aiofiles.open(path, 'rb') as file:
            if start:
                await file.seek(start)
            while remaining is None or remaining > 0:
                size = config.CHUNK_SIZE if remaining is None else min(config.CHUNK_SIZE, remaining)
                chunk = await file.read(size)
                if not chunk:
                    break
                if remaining is not None:
                    remaining -= len(chunk)
                yield chunk

    async def list_objects(self, obj_type: str) -> List[Tuple[str, int]]:
        """List (name, size) of the objects of one type."""
        directory = self.object_path(obj_type)
        if not await aiofiles.os.path.isdir(directory):
            raise HTTPException(status_code=404, detail=f"{obj_type} not found")
        try:
            return await asyncio.to_thread(_scan_objects, directory, obj_type == "data")
        except OSError as e:
            logger.error(f"Error listing {obj_type} in {self.path}: {str(e)}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Error listing {obj_type}")

    async def save_object(
        self,
        obj_type: str,
        body: AsyncIterator[bytes],
        name: Optional[str] = None,
        content_length: Optional[int] = None,
    ) -> int:
        """Store an object that does not exist yet and return its size.

        The data goes to a temporary file next to the target and is linked
        into place only once complete and verified; the link fails if another
        upload created the object first.
        """
        path = self.object_path(obj_type, name)
        label = f"{obj_type} {name}" if name else obj_type

        # Early rejection only, the link below decides
        if await aiofiles.os.path.exists(path):
            raise HTTPException(status_code=403, detail=f"{label} already exists")

        reserved = 0
        if self.quota is not None and content_length:
            if not await self.quota.admit(content_length):
                raise HTTPException(status_code=403, detail="Repository size limit exceeded")
            reserved = content_length

        temp_path = path.parent / f".{path.name}.{secrets.token_hex(8)}{config.TEMP_SUFFIX}"
        hasher = hashlib.sha256()
        size = 0
        committed = False

        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)

            async with aiofiles.open(temp_path, 'xb') as f:
                async for chunk in body:
                    if not chunk:
                        continue
                    size += len(chunk)
                    if self.quota is not None and size > reserved:
                        if not await self.quota.admit(size - reserved):
                            raise HTTPException(status_code=403, detail="Repository size limit exceeded")
                        reserved = size
                    hasher.update(chunk)
                    await f.write(chunk)
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())

            if obj_type != CONFIG and self.verify_upload and hasher.hexdigest() != name:
                logger.info(f"Rejected upload of {label}: content does not match its id")
                raise HTTPException(status_code=400, detail="Uploaded data does not match the object id")

            try:
                await aiofiles.os.link(str(temp_path), str(path))
            except FileExistsError:
                raise HTTPException(status_code=403, detail=f"{label} already exists")
            committed = True

        except HTTPException:
            raise
        except ClientDisconnect:
            logger.warning(f"Client disconnected while uploading {label} to {self.path}, upload discarded")
            raise HTTPException(status_code=400, detail="Client disconnected during upload")
        except Exception as e:
            logger.error(f"Error saving {label} in {self.path}: {str(e)}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Error saving {obj_type}")

        finally:
            # Clean up the temporary file, on success it is a second link to the object
            try:
                await aiofiles.os.unlink(str(temp_path))
            except FileNotFoundError:
                pass
            if self.quota is not None:
                unused = reserved - size if committed else reserved
                if unused:
                    await self.quota.release(unused)

        logger.debug(f"Saved {label} ({size} bytes) in {self.path}")
        return size

    async def delete_object(self, obj_type: str, name: Optional[str] = None) -> int:
        """Delete an object and return the number of bytes freed."""
        label = f"{obj_type} {name}" if name else obj_type
        if obj_type == CONFIG:
            raise HTTPException(status_code=403, detail="config cannot be deleted")
        if self.append_only and obj_type not in APPEND_ONLY_DELETABLE:
            raise HTTPException(status_code=403, detail=f"Cannot delete {label} in append-only mode")

        path = self.object_path(obj_type, name)
        try:
            size = (await aiofiles.os.stat(path)).st_size
            await aiofiles.os.unlink(str(path))
        except (FileNotFoundError, NotADirectoryError):
            raise HTTPException(status_code=404, detail=f"{label} not found")
        except OSError as e:
            logger.error(f"Error deleting {label} in {self.path}: {str(e)}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Error deleting {obj_type}")

        if self.quota is not None:
            await self.quota.release(size)

        logger.debug(f"Deleted {label} ({size} bytes) in {self.path}")
        return size
