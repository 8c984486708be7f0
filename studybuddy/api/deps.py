import jwt
from botocore.client import BaseClient
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from studybuddy.core.aws import get_cognito_client, get_dynamodb_client
from studybuddy.core.config import Settings, get_settings
from studybuddy.core.database import get_db
from studybuddy.core.errors import NotFoundError
from studybuddy.schemas.users import UserOut
from studybuddy.services.notification_service import EmailSender, build_email_sender
from studybuddy.storage import Storage, build_dynamodb_storage, build_sql_storage
from studybuddy.storage.users import CognitoUserStore, SqlUserStore, UserStore


def get_user_store(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> UserStore:
    if settings.user_store == "cognito":
        return CognitoUserStore(get_cognito_client(request), settings)
    return SqlUserStore(db, settings)


def get_storage(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Storage:
    if settings.group_store == "dynamodb":
        return build_dynamodb_storage(get_dynamodb_client(request), settings)
    return build_sql_storage(db, settings)


def get_email_sender(
    request: Request, settings: Settings = Depends(get_settings)
) -> EmailSender:
    sender = getattr(request.app.state, "email_sender", None)
    if sender is None:
        ses_client: BaseClient | None = getattr(request.app.state, "ses_client", None)
        sender = build_email_sender(settings, ses_client=ses_client)
    return sender


def _extract_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None

    scheme, _, param = auth_header.strip().partition(" ")
    if scheme.lower() != "bearer" or not param:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header",
        )
    return param.strip()


def _authenticate_token(
    raw_token: str, users: UserStore, settings: Settings
) -> UserOut:
    try:
        payload = jwt.decode(
            raw_token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algo],
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired",
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )

    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    try:
        return users.get(user_id)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )


def get_current_user(
    request: Request,
    users: UserStore = Depends(get_user_store),
    settings: Settings = Depends(get_settings),
) -> UserOut:
    last_error: HTTPException | None = None

    for raw_token in (
        _extract_bearer_token(request),
        request.cookies.get("access_token"),
    ):
        if not raw_token:
            continue
        try:
            return _authenticate_token(raw_token, users, settings)
        except HTTPException as exc:
            last_error = exc

    if last_error:
        raise last_error

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
    )


def require_super_admin(user: UserOut = Depends(get_current_user)) -> UserOut:
    if not user.is_super_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super admin access required",
        )
    return user
