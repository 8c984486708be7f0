from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse

from studybuddy.api.deps import get_current_user, get_user_store
from studybuddy.core.config import get_settings
from studybuddy.core.security import create_access
from studybuddy.schemas.users import (
    AuthOut,
    CheckEmailIn,
    CheckEmailOut,
    LoginIn,
    SignupIn,
    UserOut,
    VerifyOut,
)
from studybuddy.storage.users import UserStore

router = APIRouter(prefix="/auth", tags=["auth"])
settings = get_settings()


def _issue_session(response: Response, user: UserOut) -> AuthOut:
    access = create_access(user.user_id, user.role)
    response.headers["Cache-Control"] = "no-store"
    response.set_cookie(
        key="access_token",
        value=access,
        httponly=True,
        secure=settings.app_env == "production",
        samesite="lax",
        max_age=settings.access_min * 60,
        path="/",
    )
    return AuthOut(access_token=access, user=user)


@router.post("/signup", response_model=AuthOut, status_code=status.HTTP_201_CREATED)
def signup(
    payload: SignupIn,
    response: Response,
    users: UserStore = Depends(get_user_store),
) -> AuthOut:
    user = users.create(payload)
    return _issue_session(response, user)


@router.post("/signin", response_model=AuthOut)
def signin(
    payload: LoginIn,
    response: Response,
    users: UserStore = Depends(get_user_store),
) -> AuthOut:
    user = users.authenticate(payload.email, payload.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials"
        )
    return _issue_session(response, user)


@router.get("/profile", response_model=UserOut)
def profile(user: UserOut = Depends(get_current_user)) -> UserOut:
    return user


@router.post("/verify", response_model=VerifyOut)
def verify(user: UserOut = Depends(get_current_user)) -> VerifyOut:
    return VerifyOut(valid=True, user=user)


@router.post("/check-email", response_model=CheckEmailOut)
def check_email(
    payload: CheckEmailIn, users: UserStore = Depends(get_user_store)
) -> CheckEmailOut:
    return CheckEmailOut(exists=users.get_by_email(payload.email) is not None)


@router.post("/logout")
def logout():
    resp = JSONResponse({"message": "ok"})
    resp.headers["Cache-Control"] = "no-store"
    resp.delete_cookie(key="access_token", path="/")
    return resp
