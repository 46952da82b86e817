import asyncio
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import requests
from passlib.context import CryptContext

from .errors import AuthError, ConflictError, NetworkError, NotFoundError, ValidationError
from .models import SessionData, User, Verification
from .store import StoreGateway

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

Mailer = Callable[[User, str], None]


def log_mailer(user: User, token: str):
    logger.info("Verification link for %s: /verify-email/%s", user.email, token)


class PasswordIdentityProvider:
    """Email/password identities, session tokens and email verification,
    all kept in the document store.

    Federated sign-in delegates to an external OAuth session endpoint and
    maps the returned profile onto a local user.
    """

    def __init__(
        self,
        store: StoreGateway,
        session_ttl: timedelta = timedelta(days=7),
        oauth_session_url: Optional[str] = None,
        mailer: Mailer = log_mailer,
        http_timeout: float = 10.0,
    ):
        self.store = store
        self.session_ttl = session_ttl
        self.oauth_session_url = oauth_session_url
        self.mailer = mailer
        self.http_timeout = http_timeout

    async def register(self, email: str, password: str, display_name: str) -> User:
        if not (email or "").strip() or not password or not (display_name or "").strip():
            raise ValidationError("All fields are required.")
        email = email.strip()
        display_name = display_name.strip()

        if await self.store.find_user_by_email(email):
            raise ConflictError("Email already exists")
        if await self.store.find_user_by_username(display_name):
            raise ConflictError("Username already exists")

        user = User(
            username=display_name,
            email=email,
            password_hash=pwd_context.hash(password),
        )
        await self.store.create_user(user)
        logger.info("Registered user %s", user.id)
        return user

    async def authenticate(self, email: str, password: str) -> User:
        user = await self.store.find_user_by_email((email or "").strip())
        if not user or not user.password_hash or not pwd_context.verify(password or "", user.password_hash):
            raise AuthError("Invalid credentials. Please check your email and password.")
        return user

    async def issue_session(self, user: User) -> str:
        token = secrets.token_urlsafe(32)
        await self.store.create_session(SessionData(
            session_token=token,
            user_id=user.id,
            expires_at=datetime.now(timezone.utc) + self.session_ttl,
        ))
        return token

    async def resolve_session(self, token: str) -> Optional[User]:
        session = await self.store.get_session(token)
        if not session:
            return None
        if session.expires_at < datetime.now(timezone.utc):
            await self.store.delete_session(token)
            return None
        return await self.store.get_user(session.user_id)

    async def sign_out(self, user_id: str):
        await self.store.delete_sessions_for_user(user_id)

    async def send_verification_email(self, user: User) -> str:
        token = secrets.token_urlsafe(24)
        await self.store.create_verification(Verification(token=token, user_id=user.id))
        self.mailer(user, token)
        return token

    async def resend_verification_email(self, user: User) -> str:
        if user.email_verified:
            raise ValidationError("Email is already verified")
        await self.store.delete_verifications_for_user(user.id)
        return await self.send_verification_email(user)

    async def verify_email(self, token: str) -> User:
        verification = await self.store.get_verification(token)
        if not verification:
            raise NotFoundError("Verification link is invalid or has expired")
        await self.store.delete_verifications_for_user(verification.user_id)
        return await self.store.update_user(verification.user_id, {"email_verified": True})

    def _fetch_oauth_profile(self, session_id: str) -> dict:
        try:
            response = requests.get(
                self.oauth_session_url,
                headers={"X-Session-ID": session_id},
                timeout=self.http_timeout,
            )
        except requests.RequestException as e:
            raise NetworkError(f"Identity provider unreachable: {e}") from e
        if response.status_code != 200:
            raise AuthError("Invalid session ID")
        return response.json()

    async def federated_sign_in(self, session_id: str) -> User:
        if not self.oauth_session_url:
            raise AuthError("Federated sign-in is not configured")
        data = await asyncio.to_thread(self._fetch_oauth_profile, session_id)

        existing = await self.store.find_user_by_email(data["email"])
        if existing:
            return existing
        user = User(
            username=data.get("name") or data["email"].split("@")[0],
            email=data["email"],
            email_verified=True,
            provider="oauth",
        )
        await self.store.create_user(user)
        logger.info("Created federated user %s", user.id)
        return user
