import json
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from .errors import AuthError, NetworkError, StoryhubError
from .identity import PasswordIdentityProvider
from .models import AuthUser, User

logger = logging.getLogger(__name__)

MARKER_KEY = "storyhub_auth_user"

Listener = Callable[[Optional[AuthUser]], None]


class Session(BaseModel):
    user: Optional[AuthUser] = None
    loading: bool = True


class MemoryMarkerStorage:
    def __init__(self):
        self._items: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str):
        self._items[key] = value

    def remove(self, key: str):
        self._items.pop(key, None)


class FileMarkerStorage:
    """Key/value marker storage persisted as one JSON object on disk."""

    def __init__(self, path):
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable session marker file %s: %s", self.path, e)
            return {}

    def _write(self, items: Dict[str, str]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(items))

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str):
        items = self._read()
        items[key] = value
        self._write(items)

    def remove(self, key: str):
        items = self._read()
        if items.pop(key, None) is not None:
            self._write(items)


class SessionProvider:
    """Holds the current identity for one client.

    Only ``login``, ``signup``, ``logout`` and ``sign_in_federated`` change
    it; every other component receives the provider explicitly and reads it.
    """

    def __init__(self, identity: PasswordIdentityProvider, marker_storage=None):
        self.identity = identity
        self.marker_storage = marker_storage
        self.session = Session()
        self.token: Optional[str] = None
        self.lookup_error: Optional[NetworkError] = None
        self._listeners: List[Listener] = []

    def current_user(self) -> Optional[AuthUser]:
        return self.session.user

    def is_loading(self) -> bool:
        return self.session.loading

    def require_user(self, verified: bool = False) -> AuthUser:
        user = self.session.user
        if user is None:
            if self.lookup_error is not None:
                raise self.lookup_error
            raise AuthError("Not authenticated")
        if verified and not user.email_verified:
            raise AuthError("Please verify your email address first")
        return user

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _set_user(self, user: Optional[AuthUser]):
        self.session = Session(user=user, loading=False)
        for listener in list(self._listeners):
            listener(user)

    def _write_marker(self, user: AuthUser):
        if self.marker_storage is None:
            return
        self.marker_storage.set(MARKER_KEY, json.dumps({
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "emailVerified": user.email_verified,
        }))

    def _read_marker(self) -> Optional[AuthUser]:
        if self.marker_storage is None:
            return None
        raw = self.marker_storage.get(MARKER_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return AuthUser(
                id=data["id"],
                username=data["username"],
                email=data["email"],
                email_verified=data.get("emailVerified", False),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding malformed session marker: %s", e)
            self.marker_storage.remove(MARKER_KEY)
            return None

    async def start(self, token: Optional[str] = None) -> Optional[AuthUser]:
        """Resolve the initial identity and leave the loading state.

        A store outage while resolving ``token`` leaves the session anonymous
        and keeps the marker; the error is kept in ``lookup_error`` and
        raised by ``require_user`` instead of an ``AuthError``.
        """
        self.lookup_error = None
        marker_user = self._read_marker()
        if marker_user is not None:
            self.session = Session(user=marker_user, loading=True)

        user = None
        if token:
            try:
                resolved = await self.identity.resolve_session(token)
            except NetworkError as e:
                logger.warning("Session lookup failed, continuing anonymous: %s", e.detail)
                self.lookup_error = e
                resolved = None
            if resolved is not None:
                self.token = token
                user = AuthUser.from_user(resolved)
            elif self.lookup_error is None and self.marker_storage is not None:
                self.marker_storage.remove(MARKER_KEY)
        elif marker_user is not None:
            user = marker_user
        self._set_user(user)
        return user

    async def _establish(self, user: User) -> AuthUser:
        self.token = await self.identity.issue_session(user)
        self.lookup_error = None
        auth_user = AuthUser.from_user(user)
        self._write_marker(auth_user)
        self._set_user(auth_user)
        return auth_user

    async def login(self, email: str, password: str) -> AuthUser:
        user = await self.identity.authenticate(email, password)
        logger.info("User %s logged in", user.id)
        return await self._establish(user)

    async def signup(self, username: str, email: str, password: str) -> AuthUser:
        user = await self.identity.register(email, password, username)
        await self.identity.send_verification_email(user)
        return await self._establish(user)

    async def sign_in_federated(self, session_id: str) -> AuthUser:
        user = await self.identity.federated_sign_in(session_id)
        return await self._establish(user)

    async def refresh(self) -> Optional[AuthUser]:
        """Reload the current identity, e.g. after email verification."""
        if self.session.user is None:
            return None
        user = await self.identity.store.get_user(self.session.user.id)
        auth_user = AuthUser.from_user(user) if user else None
        if auth_user is not None:
            self._write_marker(auth_user)
        self._set_user(auth_user)
        return auth_user

    async def logout(self):
        user = self.session.user
        self.token = None
        if self.marker_storage is not None:
            self.marker_storage.remove(MARKER_KEY)
        self._set_user(None)
        if user is not None:
            try:
                await self.identity.sign_out(user.id)
            except StoryhubError as e:
                logger.warning("Sign-out for %s did not reach the store: %s", user.id, e)
