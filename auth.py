import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Depends, HTTPException, Request, Response
from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db
from models import User, UserRole
from schemas import IdentityProfile
from services import UserService

logger = logging.getLogger(__name__)

SESSION_COOKIE = "expenses_session"


class AccessDenied(Exception):
    pass


def _serializer(salt: str = "session-token") -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt=salt)


def issue_session_token(user: User) -> str:
    return _serializer().dumps({"u": user.id})


def read_session_token(token: str) -> Optional[int]:
    """Return the user id carried by a valid, unexpired token, else None."""
    max_age = get_settings().session_max_age_hours * 3600
    try:
        data = _serializer().loads(token, max_age=max_age)
    except BadSignature:
        return None
    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        return None
    return user_id


def start_session(response: Response, user: User) -> None:
    settings = get_settings()
    response.set_cookie(
        SESSION_COOKIE,
        issue_session_token(user),
        max_age=settings.session_max_age_hours * 3600,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def end_session(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE)


class AuthService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def sign_in(self, profile: IdentityProfile) -> User:
        users = UserService(self.session)
        user = users.get_by_external_id(profile.object_id)
        matched_by = "external_id"
        if user is None:
            user = users.get_by_email(profile.email)
            matched_by = "email"
            if user is None:
                logger.warning("sign_in_refused: reason=unknown_user")
                raise AccessDenied(
                    "Access denied. Your email is not authorized. "
                    "Please contact the administrator to request access."
                )
        if not user.is_active:
            logger.warning(f"sign_in_refused: reason=inactive user_id={user.id}")
            raise AccessDenied(
                "Your account is not active. Please contact the administrator."
            )
        if matched_by == "email":
            user.external_id = profile.object_id
            if profile.display_name:
                user.name = profile.display_name.strip()
        user.last_login_at = datetime.utcnow()
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"sign_in: user_id={user.id} matched_by={matched_by}")
        return user


@dataclass(frozen=True)
class RequestContext:
    user: User

    @property
    def is_admin(self) -> bool:
        return self.user.role == UserRole.admin


def _token_from_request(request: Request) -> Optional[str]:
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        return token
    header = request.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def require_user(request: Request, db: Session = Depends(get_db)) -> RequestContext:
    token = _token_from_request(request)
    user_id = read_session_token(token) if token else None
    if user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="Authentication required")
    return RequestContext(user=user)


def require_admin(ctx: RequestContext = Depends(require_user)) -> RequestContext:
    if not ctx.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return ctx
