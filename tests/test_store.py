import asyncio
from datetime import datetime, timezone

import pytest
from pymongo.errors import AutoReconnect, DuplicateKeyError, NetworkTimeout, OperationFailure

from storyhub.errors import ConflictError, NetworkError, NotFoundError, StoreTimeoutError, ValidationError
from storyhub.store import StoreGateway, normalize_instant, normalize_post

from .conftest import BASE_TIME


@pytest.mark.parametrize("raw", [
    datetime(2024, 5, 1, 12, 0),
    datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    "2024-05-01T12:00:00Z",
    "2024-05-01T12:00:00+00:00",
    1714564800,
    {"seconds": 1714564800, "nanoseconds": 0},
])
def test_normalize_instant_accepts_every_stored_shape(raw):
    assert normalize_instant(raw) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_normalize_instant_rejects_unknown_shapes():
    with pytest.raises(ValueError):
        normalize_instant(["2024"])


def test_normalize_post_defaults_missing_collections():
    post = normalize_post({
        "_id": "ignored",
        "id": "p1",
        "title": "Old post",
        "content": "Written before likes existed",
        "authorId": "u1",
        "authorUsername": "JaneDoe",
        "createdAt": "2023-01-01T00:00:00.000Z",
        "hashtags": None,
    })

    assert post.author_id == "u1"
    assert post.author_username == "JaneDoe"
    assert post.hashtags == []
    assert post.likes == []
    assert post.saves == []
    assert post.comment_count == 0
    assert post.created_at == datetime(2023, 1, 1, tzinfo=timezone.utc)


def test_normalize_post_collapses_duplicate_members():
    post = normalize_post({
        "id": "p1", "title": "t", "content": "c", "author_id": "u", "author_username": "U",
        "created_at": BASE_TIME, "likes": ["a", "b", "a"],
    })
    assert post.likes == ["a", "b"]
    assert post.like_count == 2


async def test_list_posts_newest_first(store, make_post):
    first = await make_post()
    second = await make_post()
    third = await make_post()

    posts = await store.list_posts()

    assert [p.id for p in posts] == [third.id, second.id, first.id]
    stamps = [p.created_at for p in posts]
    assert all(a > b for a, b in zip(stamps, stamps[1:]))


async def test_list_posts_ties_keep_insertion_order(store, make_post):
    early = await make_post(created_at=BASE_TIME)
    tie_a = await make_post(created_at=BASE_TIME.replace(hour=13))
    tie_b = await make_post(created_at=BASE_TIME.replace(hour=13))

    posts = await store.list_posts()

    assert [p.id for p in posts] == [tie_a.id, tie_b.id, early.id]


async def test_list_posts_orders_legacy_string_timestamps(store, db, make_post):
    native = await make_post(created_at=BASE_TIME)
    await db.posts.insert_one({
        "id": "legacy", "title": "Legacy", "content": "c",
        "authorId": "u0", "authorUsername": "Old",
        "createdAt": "2030-01-01T00:00:00Z",
    })

    posts = await store.list_posts()

    assert [p.id for p in posts] == ["legacy", native.id]


async def test_get_post_missing_raises(store):
    with pytest.raises(NotFoundError):
        await store.get_post("nope")


async def test_set_delta_only_on_set_fields(store, make_post):
    post = await make_post()
    with pytest.raises(ValidationError):
        await store.add_to_set(post.id, "hashtags", "x")


async def test_add_to_set_is_idempotent(store, make_post):
    post = await make_post()
    await store.add_to_set(post.id, "likes", "u1")
    updated = await store.add_to_set(post.id, "likes", "u1")
    assert updated.likes == ["u1"]


async def test_floored_increment_stops_at_floor(store, make_post):
    post = await make_post(comment_count=1)

    updated = await store.increment(post.id, "comment_count", -1, floor=0)
    assert updated.comment_count == 0

    assert await store.increment(post.id, "comment_count", -1, floor=0) is None
    assert (await store.get_post(post.id)).comment_count == 0


async def test_floored_increment_on_missing_post_raises(store):
    with pytest.raises(NotFoundError):
        await store.increment("nope", "comment_count", -1, floor=0)


async def test_distinct_prefix_is_case_insensitive_and_unique(store, make_post):
    for name in ["Alice", "Alicia", "Bob", "Alice", "alistair"]:
        await make_post(author_username=name)

    names = await store.distinct_prefix("author_username", "ali", 5)

    assert sorted(names) == ["Alice", "Alicia", "alistair"]


async def test_distinct_prefix_respects_limit(store, make_post):
    for i in range(8):
        await make_post(author_username=f"writer{i}")

    assert len(await store.distinct_prefix("author_username", "WRITER", 5)) == 5


async def test_distinct_prefix_escapes_regex(store, make_post):
    await make_post(author_username="a.b")
    await make_post(author_username="axb")

    assert await store.distinct_prefix("author_username", "a.", 5) == ["a.b"]


async def _raise(exc):
    raise exc


@pytest.mark.parametrize("exc, expected", [
    (NetworkTimeout("slow"), StoreTimeoutError),
    (AutoReconnect("reset"), NetworkError),
    (OperationFailure("denied"), NetworkError),
    (DuplicateKeyError("dup"), ConflictError),
])
async def test_pymongo_errors_are_translated(store, exc, expected):
    with pytest.raises(expected):
        await store._run("test op", _raise(exc))


async def test_network_timeout_is_distinct_from_network_error(store):
    with pytest.raises(StoreTimeoutError) as info:
        await store._run("test op", _raise(NetworkTimeout("slow")))
    assert info.value.status_code == 504


async def test_slow_calls_time_out(db):
    store = StoreGateway(db, timeout=0.01)
    with pytest.raises(StoreTimeoutError):
        await store._run("slow op", asyncio.sleep(1))


async def test_migrate_legacy_keys_renames_in_place(store, db):
    await db.posts.insert_one({
        "id": "p-old", "title": "t", "content": "c", "authorId": "u1",
        "authorUsername": "Old", "createdAt": "2023-01-01T00:00:00Z", "commentCount": 2,
    })
    await db.comments.insert_one({
        "id": "c-old", "postId": "p-old", "authorId": "u2", "authorUsername": "Two",
        "content": "hi", "createdAt": "2023-01-02T00:00:00Z",
    })

    assert await store.migrate_legacy_keys() == 2
    assert await store.migrate_legacy_keys() == 0

    raw = await db.posts.find_one({"id": "p-old"})
    assert raw["author_id"] == "u1"
    assert raw["comment_count"] == 2
    assert "authorId" not in raw
    assert await store.count_comments("p-old") == 1


async def test_filtered_queries_reach_camelcase_posts(store, db, make_post):
    await make_post(author_id="u1")
    await db.posts.insert_one({
        "id": "p-old", "title": "t", "content": "c", "authorId": "u1",
        "authorUsername": "Old", "createdAt": "2023-01-01T00:00:00Z",
    })

    posts = await store.list_posts({"author_id": "u1"})

    assert len(posts) == 2
    assert posts[-1].id == "p-old"


async def test_increment_on_camelcase_counter_adds_to_it(store, db):
    await db.posts.insert_one({
        "id": "p-old", "title": "t", "content": "c", "authorId": "u1",
        "authorUsername": "Old", "createdAt": "2023-01-01T00:00:00Z", "commentCount": 3,
    })

    updated = await store.increment("p-old", "comment_count", 1)

    assert updated.comment_count == 4
