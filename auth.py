import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import jwt
from fastapi import Depends, Request
from passlib.context import CryptContext

from config import ACCESS_TOKEN_EXPIRE_MINUTES, BCRYPT_ROUNDS, JWT_ALG, JWT_SECRET
from errors import AuthError, ConflictError, DuplicateEmail, ForbiddenError, InvalidCredentials
from schemas import User as UserSchema, UserRegister
from store import Store

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)

PRIVATE_USER_FIELDS = ("passwordHash", "settledOrders")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")


def public_user(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    return {k: v for k, v in doc.items() if k not in PRIVATE_USER_FIELDS}


def user_summary(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    return {"id": doc["id"], "name": doc.get("name"), "surname": doc.get("surname"), "avatar": doc.get("avatar")}


def profile_view(doc: dict, viewer: Optional[dict]) -> dict:
    """Public profile; balance and block list only for the owner and admins."""
    view = public_user(doc)
    if viewer and (viewer["id"] == doc["id"] or viewer.get("role") == "ADMIN"):
        return view
    for field in ("balance", "blockedUsers", "banReason"):
        view.pop(field, None)
    return view


class AuthService:
    def __init__(self, store: Store):
        self.store = store

    def _issue(self, user: dict) -> str:
        return create_access_token({"user_id": user["id"], "role": user["role"]})

    def register(self, body: UserRegister) -> Tuple[str, dict]:
        email = body.email.lower()
        if self.store.find_one("user", {"email": email}):
            raise DuplicateEmail()
        user = UserSchema(
            name=body.name,
            surname=body.surname,
            phone=body.phone,
            email=email,
            password_hash=hash_password(body.password),
            role=body.role,
            skills=body.skills,
            hourly_rate=body.hourly_rate,
            location=body.location,
        )
        try:
            doc = self.store.insert("user", user.doc())
        except ConflictError:
            raise DuplicateEmail()
        logger.info(f"Registered {doc['role']} {doc['id']}")
        return self._issue(doc), doc

    def login(self, email: str, password: str) -> Tuple[str, dict]:
        u = self.store.find_one("user", {"email": email.lower()})
        if not u or not verify_password(password, u.get("passwordHash", "")):
            logger.info("Login failed")
            raise InvalidCredentials()
        logger.info(f"Login success for {u['id']}")
        return self._issue(u), u

    def authenticate(self, token: str) -> dict:
        """Resolve a bearer token to the stored user, re-read on every call."""
        payload = decode_token(token)
        user_id = payload.get("user_id")
        user = self.store.get("user", user_id) if user_id else None
        if user is None:
            raise AuthError("User no longer exists")
        return user


# ------------------ Dependencies ------------------

def _bearer(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1]


def require_auth(request: Request) -> dict:
    token = _bearer(request)
    if not token:
        raise AuthError("Missing token")
    return request.app.state.auth.authenticate(token)


def optional_auth(request: Request) -> Optional[dict]:
    token = _bearer(request)
    if not token:
        return None
    try:
        return request.app.state.auth.authenticate(token)
    except AuthError:
        return None


def require_admin(user: dict = Depends(require_auth)) -> dict:
    if user.get("role") != "ADMIN":
        raise ForbiddenError("Admin only")
    return user


def is_admin(user: Optional[dict]) -> bool:
    return bool(user) and user.get("role") == "ADMIN"
