"""FastAPI dependencies for the API layer."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from app.core.security import user_id_from_token
from freetalk.realtime.hub import Hub

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def get_current_user_id(token: str = Depends(oauth2_scheme)) -> str:
    """Retrieve the current user id from the JWT token."""

    return user_id_from_token(token)


def get_hub(request: Request) -> Hub:
    """Return the process hub stored on the application state."""

    hub = getattr(request.app.state, "hub", None)
    if hub is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Realtime hub is not running",
        )
    return hub
