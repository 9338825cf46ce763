"""Authentication, sessions and the password reset flow.

Sessions are signed JWTs carrying only the user id; the full user is loaded
from the database on every request. Reset tokens live on the user document
and are checked against the clock on every read, there is no sweeper.
"""

import hashlib
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import serialize, to_object_id, utcnow
from errors import ConflictError, ExpiredError, NotFoundError, ValidationError
from schemas import AccountInput, RegisterInput, User as UserSchema, parse
from stores import public_user

logger = logging.getLogger("uvicorn.error")

# Session config
SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

RESET_TOKEN_BYTES = 20
RESET_TOKEN_TTL = timedelta(hours=1)
INVALID_RESET = "Password reset is invalid or has expired"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(password, hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def gravatar(email: str) -> str:
    digest = hashlib.md5(email.encode("utf-8")).hexdigest()
    return f"https://gravatar.com/avatar/{digest}?s=200"


def sanitize_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """Public view of a user document: no credentials, plus the gravatar url."""
    d = serialize(public_user(user))
    d["gravatar"] = gravatar(d.get("email", ""))
    return d


def confirm_passwords_match(password: str, confirmation: str) -> None:
    if password != confirmation:
        raise ValidationError("Passwords do not match!")


class AuthManager:
    def __init__(self, database, mailer=None, clock: Callable[[], datetime] = utcnow):
        self.users = database["user"]
        self.mailer = mailer
        self.clock = clock

    # Registration / login

    def register(self, email: str, name: str, password: str) -> Dict[str, Any]:
        payload = parse(RegisterInput, {"email": email, "name": name, "password": password})
        if self.users.find_one({"email": payload.email}):
            raise ConflictError("Email already registered")
        user_doc = UserSchema(
            name=payload.name,
            email=payload.email,
            password_hash=hash_password(payload.password),
        ).model_dump()
        user_doc["created_at"] = self.clock()
        try:
            res = self.users.insert_one(user_doc)
        except DuplicateKeyError:
            raise ConflictError("Email already registered")
        user_doc["_id"] = res.inserted_id
        logger.info("Registered user %s", res.inserted_id)
        return sanitize_user(user_doc)

    def authenticate(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        """Return the user for valid credentials, None otherwise. Callers show one generic message."""
        user = self.users.find_one({"email": (email or "").strip().lower()})
        if not user or not verify_password(password, user.get("password_hash", "")):
            logger.warning("Failed login attempt")
            return None
        return sanitize_user(user)

    @staticmethod
    def create_session(user: Dict[str, Any]) -> str:
        return create_access_token({"sub": str(user.get("id", user.get("_id")))})

    def deserialize_user(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
            user_id = payload.get("sub")
            if user_id is None:
                return None
            oid = to_object_id(user_id)
        except (JWTError, ValueError):
            return None
        user = self.users.find_one({"_id": oid})
        return sanitize_user(user) if user else None

    def update_account(self, user_id: Any, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = parse(AccountInput, data)
        oid = to_object_id(user_id)
        if self.users.find_one({"email": payload.email, "_id": {"$ne": oid}}):
            raise ConflictError("Email already registered")
        try:
            user = self.users.find_one_and_update(
                {"_id": oid},
                {"$set": {"name": payload.name, "email": payload.email}},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise ConflictError("Email already registered")
        if not user:
            raise NotFoundError("No user found")
        return sanitize_user(user)

    # Password reset: no reset pending -> pending -> consumed / expired

    def request_reset(self, email: str, reset_url_base: str) -> str:
        user = self.users.find_one({"email": (email or "").strip().lower()})
        if not user:
            raise NotFoundError("No account with that email exists")
        token = secrets.token_hex(RESET_TOKEN_BYTES)
        expires = self.clock() + RESET_TOKEN_TTL
        self.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"reset_password_token": token, "reset_password_expires": expires}},
        )
        logger.info("Password reset requested for user %s", user["_id"])
        if self.mailer is not None:
            self.mailer.send(
                user,
                subject="Password Reset",
                template_name="password-reset",
                reset_url=f"{reset_url_base.rstrip('/')}/{token}",
            )
        return token

    def _pending(self, token: str) -> Dict[str, Any]:
        return {"reset_password_token": token, "reset_password_expires": {"$gt": self.clock()}}

    def validate_reset_token(self, token: str) -> Dict[str, Any]:
        user = self.users.find_one(self._pending(token)) if token else None
        if not user:
            logger.warning("Invalid or expired reset token presented")
            raise ExpiredError(INVALID_RESET)
        return sanitize_user(user)

    def complete_reset(self, token: str, password: str, confirmation: str) -> Tuple[Dict[str, Any], str]:
        confirm_passwords_match(password, confirmation)
        if not password:
            raise ValidationError("Password Cannot be Blank!")
        if not token:
            raise ExpiredError(INVALID_RESET)
        # token and expiry are checked again inside the update filter
        user = self.users.find_one_and_update(
            self._pending(token),
            {
                "$set": {"password_hash": hash_password(password)},
                "$unset": {"reset_password_token": "", "reset_password_expires": ""},
            },
            return_document=ReturnDocument.AFTER,
        )
        if not user:
            logger.warning("Invalid or expired reset token presented")
            raise ExpiredError(INVALID_RESET)
        logger.info("Password reset completed for user %s", user["_id"])
        user = sanitize_user(user)
        return user, self.create_session(user)
