import asyncio
import base64
import binascii
import signal
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.responses import Response

from app.routes.auth import check_auth
from app.routes.repository_routes import router
from app.services.htpasswd import HtpasswdError, HtpasswdFile
from app.services.metrics import Metrics
from app.services.quota import QuotaManager
from app.services.repository import cleanup_temp_files
from config import ServerConfig
from logger_config import setup_access_logger, setup_logger

# Logger setup
logger = setup_logger()


def load_htpasswd(server_config: ServerConfig) -> HtpasswdFile:
    try:
        return HtpasswdFile(server_config.htpasswd_path)
    except (OSError, HtpasswdError) as e:
        raise RuntimeError(f"cannot load {server_config.htpasswd_path} (use --no-auth to disable): {e}") from e


def install_reload_signal(htpasswd: HtpasswdFile) -> bool:
    """Reload the htpasswd file on SIGHUP where the platform allows it."""
    if not hasattr(signal, "SIGHUP"):
        return False
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGHUP, htpasswd.handle_reload_signal)
    except (NotImplementedError, RuntimeError, ValueError) as e:
        # only possible from the main thread
        logger.debug(f"SIGHUP reload is not available: {e}")
        return False
    return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    server_config: ServerConfig = app.state.config
    data_path = server_config.data_path
    data_path.mkdir(parents=True, exist_ok=True)
    cleanup_temp_files(data_path)

    htpasswd = None
    if not server_config.no_auth:
        htpasswd = load_htpasswd(server_config)

    quota = None
    if server_config.max_size > 0:
        quota = QuotaManager(data_path, server_config.max_size)
        quota.initialize()

    app.state.htpasswd = htpasswd
    app.state.quota = quota

    tasks = []
    reload_signal = False
    if htpasswd is not None:
        tasks.append(asyncio.create_task(htpasswd.throttle_timer()))
        tasks.append(asyncio.create_task(htpasswd.expiry_timer()))
        reload_signal = install_reload_signal(htpasswd)

    yield

    if reload_signal:
        asyncio.get_running_loop().remove_signal_handler(signal.SIGHUP)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def basic_auth_username(authorization: str) -> str:
    """Username from a Basic Authorization header, for the access log only."""
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return "-"
    try:
        decoded = base64.b64decode(encoded).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return "-"
    username, _, _ = decoded.partition(":")
    return username or "-"


def add_logging_middleware(app: FastAPI, server_config: ServerConfig):
    if server_config.debug:
        @app.middleware("http")
        async def debug_log(request: Request, call_next):
            logger.info(f"{request.method} {request.url}")
            return await call_next(request)

    if server_config.log:
        access_logger = setup_access_logger(server_config.log)

        @app.middleware("http")
        async def access_log(request: Request, call_next):
            response = await call_next(request)
            client = request.client.host if request.client else "-"
            user = basic_auth_username(request.headers.get("authorization", ""))
            timestamp = datetime.now(timezone.utc).strftime("%d/%b/%Y:%H:%M:%S %z")
            target = request.url.path + (f"?{request.url.query}" if request.url.query else "")
            size = response.headers.get("content-length", "-")
            access_logger.info(
                f'{client} - {user} [{timestamp}] "{request.method} {target} HTTP/{request.scope.get("http_version", "1.1")}" '
                f'{response.status_code} {size} "{request.headers.get("referer", "-")}" "{request.headers.get("user-agent", "-")}"'
            )
            return response


def create_app(server_config: ServerConfig) -> FastAPI:
    """Build the server application for server_config."""
    app = FastAPI(title="REST Server", lifespan=lifespan)
    app.state.config = server_config
    app.state.metrics = Metrics()
    app.state.htpasswd = None
    app.state.quota = None

    if server_config.prometheus:
        dependencies = [] if server_config.prometheus_no_auth else [Depends(check_auth)]

        @app.get("/metrics", dependencies=dependencies)
        async def metrics(request: Request):
            body, content_type = request.app.state.metrics.render()
            return Response(content=body, media_type=content_type)

    app.include_router(router)
    add_logging_middleware(app, server_config)
    return app


app = create_app(ServerConfig())


if __name__ == "__main__":
    server_config = ServerConfig.from_args()
    app = create_app(server_config)

    logger.info("Starting REST server...")
    logger.info(f"Data directory: {server_config.data_path}")
    if server_config.no_auth:
        logger.info("Authentication disabled")
    else:
        logger.info(f"Authentication enabled, htpasswd file: {server_config.htpasswd_path}")
    if server_config.append_only:
        logger.info("Append only mode enabled")
    if server_config.private_repos:
        logger.info("Private repositories enabled")
    if server_config.max_size:
        logger.info(f"Maximum repository size: {server_config.max_size / (1024*1024):.2f} MB")

    host, port = server_config.listen_host_port()
    ssl_options = {}
    if server_config.tls:
        ssl_options = {"ssl_certfile": server_config.tls_cert, "ssl_keyfile": server_config.tls_key}
    uvicorn.run(app, host=host, port=port, log_level="debug" if server_config.debug else "info", **ssl_options)
