import asyncio

import pytest

from storyhub.comments import CommentThreadManager
from storyhub.errors import DuplicateSubmissionError, NotFoundError, PermissionDeniedError, ValidationError
from storyhub.guard import SubmitGuard
from storyhub.posts import PostService, clean_hashtags


@pytest.fixture
def posts(store, guard):
    return PostService(store, guard)


def test_clean_hashtags():
    assert clean_hashtags(["#AI", " webdev ", "ai", "", "#", None]) == ["AI", "webdev"]
    assert clean_hashtags(None) == []


async def test_create_post_stores_author_and_defaults(posts, store, alice):
    post = await posts.create_post(alice, "  Hello world ", "Some text", hashtags=["#intro"])

    stored = await store.get_post(post.id)
    assert stored.title == "Hello world"
    assert stored.author_id == alice.id
    assert stored.author_username == alice.username
    assert stored.hashtags == ["intro"]
    assert stored.likes == []
    assert stored.saves == []
    assert stored.comment_count == 0
    assert stored.cover_image_url is None


@pytest.mark.parametrize("title, content", [("", "body"), ("title", "   "), (None, "body")])
async def test_create_post_requires_title_and_content(posts, store, alice, title, content):
    with pytest.raises(ValidationError):
        await posts.create_post(alice, title, content)
    assert await store.list_posts() == []


async def test_create_post_requires_author(posts):
    with pytest.raises(ValidationError):
        await posts.create_post(None, "title", "body")


async def test_only_author_may_edit(posts, store, make_post, alice, bob):
    post = await make_post(alice)

    with pytest.raises(PermissionDeniedError):
        await posts.update_post(post.id, bob, title="Hijacked")

    updated = await posts.update_post(post.id, alice, title="Renamed")
    assert updated.title == "Renamed"
    assert updated.updated_at is not None
    assert (await store.get_post(post.id)).title == "Renamed"


async def test_edit_rejects_blank_title(posts, make_post, alice):
    post = await make_post(alice)
    with pytest.raises(ValidationError):
        await posts.update_post(post.id, alice, title="  ")


async def test_delete_post_removes_comments(posts, store, guard, make_post, alice, bob):
    post = await make_post(alice)
    threads = CommentThreadManager(store, guard)
    await threads.add_comment(post.id, bob.id, bob.username, "first")
    await threads.add_comment(post.id, alice.id, alice.username, "second")

    with pytest.raises(PermissionDeniedError):
        await posts.delete_post(post.id, bob)

    await posts.delete_post(post.id, alice)

    with pytest.raises(NotFoundError):
        await store.get_post(post.id)
    assert await store.count_comments(post.id) == 0


async def test_guard_rejects_concurrent_identical_key():
    guard = SubmitGuard()
    entered = asyncio.Event()
    release = asyncio.Event()

    async def hold():
        async with guard.hold(("create_post", "t", "u1")):
            entered.set()
            await release.wait()

    task = asyncio.create_task(hold())
    await entered.wait()

    assert guard.busy(("create_post", "t", "u1"))
    assert not guard.busy(("create_post", "t", "u2"))
    with pytest.raises(DuplicateSubmissionError):
        async with guard.hold(("create_post", "t", "u1")):
            pass

    release.set()
    await task
    assert not guard.busy(("create_post", "t", "u1"))


async def test_guard_releases_key_after_failure():
    guard = SubmitGuard()
    with pytest.raises(ValueError):
        async with guard.hold("k"):
            raise ValueError("boom")
    async with guard.hold("k"):
        pass
