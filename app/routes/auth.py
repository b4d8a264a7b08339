from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

AUTH_HEADERS = {"WWW-Authenticate": 'Basic realm="restic"'}

security = HTTPBasic(auto_error=False)


def unauthorized() -> HTTPException:
    return HTTPException(status_code=401, detail="Unauthorized", headers=AUTH_HEADERS)


def check_auth(
    request: Request,
    credentials: Optional[HTTPBasicCredentials] = Depends(security),
) -> str:
    """Return the authenticated username, or "" when auth is disabled."""
    if request.app.state.config.no_auth:
        return ""
    if credentials is None:
        raise unauthorized()
    if not request.app.state.htpasswd.validate(credentials.username, credentials.password):
        raise unauthorized()
    return credentials.username
