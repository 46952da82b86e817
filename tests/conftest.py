from datetime import datetime, timedelta, timezone

import pytest
from mongomock_motor import AsyncMongoMockClient

from storyhub.guard import SubmitGuard
from storyhub.identity import PasswordIdentityProvider
from storyhub.models import AuthUser, Post
from storyhub.store import StoreGateway

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    return AsyncMongoMockClient()["storyhub_test"]


@pytest.fixture
def store(db):
    return StoreGateway(db, timeout=5)


@pytest.fixture
def guard():
    return SubmitGuard()


@pytest.fixture
def sent_tokens():
    return []


@pytest.fixture
def identity(store, sent_tokens):
    return PasswordIdentityProvider(
        store,
        oauth_session_url="https://auth.test/session-data",
        mailer=lambda user, token: sent_tokens.append((user.email, token)),
    )


@pytest.fixture
def alice():
    return AuthUser(id="u-alice", username="Alice", email="alice@example.com", email_verified=True)


@pytest.fixture
def bob():
    return AuthUser(id="u-bob", username="Bob", email="bob@example.com", email_verified=True)


@pytest.fixture
def make_post(store):
    counter = {"n": 0}

    async def _make_post(author: AuthUser = None, **fields) -> Post:
        counter["n"] += 1
        data = {
            "title": f"Post {counter['n']}",
            "content": "Body text",
            "author_id": author.id if author else "u-author",
            "author_username": author.username if author else "Author",
            "created_at": BASE_TIME + timedelta(minutes=counter["n"]),
        }
        data.update(fields)
        return await store.create_post(Post(**data))

    return _make_post
