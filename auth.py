from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request
from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db
from models import User
from services import NotFoundError, UserService


@dataclass(frozen=True)
class Identity:
    subject: str
    email: Optional[str] = None


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.auth_secret, salt="auth-token")


def issue_token(subject: str, email: Optional[str] = None) -> str:
    return _serializer().dumps({"sub": subject, "email": email})


def verify_token(token: str) -> Optional[Identity]:
    settings = get_settings()
    try:
        data = _serializer().loads(token, max_age=settings.auth_max_age_secs)
    except BadSignature:
        return None
    if not isinstance(data, dict) or not data.get("sub"):
        return None
    return Identity(subject=str(data["sub"]), email=data.get("email"))


def _unauthenticated(detail: str) -> HTTPException:
    return HTTPException(
        status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"}
    )


def get_identity(request: Request) -> Identity:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthenticated("Not authenticated")
    identity = verify_token(token.strip())
    if identity is None:
        raise _unauthenticated("Invalid or expired token")
    return identity


def get_current_user(
    identity: Identity = Depends(get_identity), db: Session = Depends(get_db)
) -> User:
    try:
        return UserService(db).get_by_external_id(identity.subject)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
