"""Identity: password hashing, signup/login and session tokens."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from jose import JWTError, jwt
from passlib.context import CryptContext

from ..domain.errors import InvalidCredentialsError, ValidationError
from ..domain.models import Identity, User
from ..repositories.base import UserStore

logger = structlog.get_logger()

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


class SessionTokens:
    """Encode an Identity into a signed cookie value and back."""

    def __init__(self, secret: str, algorithm: str = "HS256", max_age: timedelta = timedelta(days=7)) -> None:
        self.secret = secret
        self.algorithm = algorithm
        self.max_age = max_age

    def encode(self, identity: Identity) -> str:
        claims = {
            "sid": identity.session_id,
            "exp": datetime.now(timezone.utc) + self.max_age,
        }
        if identity.user_id is not None:
            claims["sub"] = identity.user_id
            claims["username"] = identity.username
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def decode(self, token: Optional[str]) -> Optional[Identity]:
        """Return the identity in a token, or None if it is missing or invalid."""
        if not token:
            return None
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as e:
            logger.info("session_token_rejected", error=str(e))
            return None
        session_id = claims.get("sid")
        if not session_id:
            return None
        return Identity(session_id=session_id, user_id=claims.get("sub"), username=claims.get("username"))


class AuthService:
    """Signup and login against a UserStore."""

    def __init__(self, users: UserStore) -> None:
        self.users = users

    async def signup(self, username: str, password: str) -> Identity:
        username = username.strip()
        if len(username) < MIN_USERNAME_LENGTH:
            raise ValidationError(f"Username must be at least {MIN_USERNAME_LENGTH} characters")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        user = await self.users.create_user(
            User(username=username, password_hash=get_password_hash(password))
        )
        logger.info("user_signed_up", user_id=user.id)
        return Identity(user_id=user.id, username=user.username)

    async def login(self, username: str, password: str) -> Identity:
        user = await self.users.get_user_by_username(username.strip())
        if user is None or not verify_password(password, user.password_hash):
            logger.info("login_failed", username=username)
            raise InvalidCredentialsError()
        logger.info("user_logged_in", user_id=user.id)
        return Identity(user_id=user.id, username=user.username)
