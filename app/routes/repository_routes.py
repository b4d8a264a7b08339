from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from app.routes.auth import check_auth, unauthorized
from app.services.path_resolver import is_user_path, join
from app.services.repository import CONFIG, ObjectRef, Repository, parse_path, parse_range, validate_name
from logger_config import setup_logger

logger = setup_logger()

router = APIRouter()

API_V2 = "application/vnd.x.restic.rest.v2"


def get_content_length(request: Request):
    """Parse the Content-Length header if present."""
    content_length = request.headers.get("content-length")
    if content_length is None:
        return None
    try:
        value = int(content_length)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid Content-Length header")
    if value < 0:
        raise HTTPException(status_code=400, detail="Invalid Content-Length header")
    return value


def describe(ref: ObjectRef) -> str:
    return f"{ref.obj_type} {ref.name}" if ref.name else ref.obj_type


def open_repository(request: Request, ref: ObjectRef) -> Repository:
    server_config = request.app.state.config
    repo_path = join(str(server_config.data_path), *ref.repo)
    return Repository(
        Path(repo_path),
        append_only=server_config.append_only,
        verify_upload=not server_config.no_verify_upload,
        quota=request.app.state.quota,
    )


@router.api_route("/{path:path}", methods=["GET", "HEAD", "POST", "DELETE"])
async def repository_request(path: str, request: Request, username: str = Depends(check_auth)):
    """Dispatch a request against a repository, its config or one of its objects."""
    server_config = request.app.state.config
    if server_config.private_repos and not is_user_path(username, "/" + path):
        logger.info(f"User {username} denied access to /{path}")
        raise unauthorized()

    ref = parse_path(path)
    repo = open_repository(request, ref)
    repo_name = "/".join(ref.repo)
    method = request.method

    if ref.obj_type is None:
        if method != "POST":
            raise HTTPException(status_code=405, detail="Method not allowed", headers={"Allow": "POST"})
        return await create_repository(request, repo, repo_name)

    if ref.listing:
        if method != "GET":
            raise HTTPException(status_code=405, detail="Method not allowed", headers={"Allow": "GET"})
        return await list_objects(request, repo, ref.obj_type)

    if ref.obj_type != CONFIG:
        validate_name(ref.name)

    if method == "HEAD":
        size = await repo.stat_object(ref.obj_type, ref.name)
        return Response(headers={"content-length": str(size), "accept-ranges": "bytes"})
    if method == "GET":
        return await get_object(request, repo, ref, username, repo_name)
    if method == "POST":
        return await save_object(request, repo, ref, username, repo_name)
    return await delete_object(request, repo, ref, username, repo_name)


async def create_repository(request: Request, repo: Repository, repo_name: str):
    if request.query_params.get("create") != "true":
        raise HTTPException(status_code=400, detail="Missing create=true")
    logger.info(f"Receiving create request for repository: /{repo_name}")
    await repo.create()
    return {"success": True, "message": f"Repository /{repo_name} created"}


async def list_objects(request: Request, repo: Repository, obj_type: str):
    objects = await repo.list_objects(obj_type)
    if API_V2 in request.headers.get("accept", ""):
        return JSONResponse(
            [{"name": name, "size": size} for name, size in objects],
            media_type=API_V2,
        )
    return [name for name, _ in objects]


async def get_object(request: Request, repo: Repository, ref: ObjectRef, username: str, repo_name: str):
    """Retrieve an object, honouring a single byte range."""
    size = await repo.stat_object(ref.obj_type, ref.name)

    status_code = 200
    start, length = 0, size
    headers = {"accept-ranges": "bytes"}
    byte_range = parse_range(request.headers.get("range"), size)
    if byte_range is not None:
        start, end = byte_range
        length = end - start + 1
        status_code = 206
        headers["content-range"] = f"bytes {start}-{end}/{size}"
    headers["content-length"] = str(length)

    request.app.state.metrics.record_read(username, repo_name, ref.obj_type, length)
    return StreamingResponse(
        repo.iter_object(ref.obj_type, ref.name, start, length),
        status_code=status_code,
        media_type="application/octet-stream",
        headers=headers,
    )


async def save_object(request: Request, repo: Repository, ref: ObjectRef, username: str, repo_name: str):
    """Upload an object that must not exist yet."""
    logger.info(f"Receiving upload request for {describe(ref)} in /{repo_name}")
    content_length = get_content_length(request)

    size = await repo.save_object(ref.obj_type, request.stream(), ref.name, content_length)

    request.app.state.metrics.record_write(username, repo_name, ref.obj_type, size)
    return {"success": True, "message": f"{describe(ref)} uploaded successfully"}


async def delete_object(request: Request, repo: Repository, ref: ObjectRef, username: str, repo_name: str):
    logger.info(f"Receiving delete request for {describe(ref)} in /{repo_name}")

    size = await repo.delete_object(ref.obj_type, ref.name)

    request.app.state.metrics.record_delete(username, repo_name, ref.obj_type, size)
    return {"success": True, "message": f"{describe(ref)} deleted"}
