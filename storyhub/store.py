import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
    WTimeoutError,
)

from .errors import ConflictError, NetworkError, NotFoundError, StoreTimeoutError, ValidationError
from .models import Comment, Post, SessionData, User, Verification

logger = logging.getLogger(__name__)

SET_FIELDS = ("likes", "saves")
COUNTER_FIELDS = ("comment_count",)

# Older documents were written with camelCase keys. The gateway renames
# them in place before any query or write that relies on the new names.
LEGACY_POST_KEYS = {
    "authorId": "author_id",
    "authorUsername": "author_username",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "coverImageUrl": "cover_image_url",
    "commentCount": "comment_count",
}
LEGACY_COMMENT_KEYS = {
    "postId": "post_id",
    "authorId": "author_id",
    "authorUsername": "author_username",
    "createdAt": "created_at",
}


def normalize_instant(value: Any) -> Optional[datetime]:
    """Coerce any stored timestamp shape into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, bool):
        raise ValueError(f"Unsupported timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        return normalize_instant(parsed)
    if isinstance(value, Mapping) and "seconds" in value:
        seconds = value["seconds"] + value.get("nanoseconds", 0) / 1e9
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    raise ValueError(f"Unsupported timestamp: {value!r}")


def _unique(values) -> List[str]:
    seen = set()
    result = []
    for value in values or []:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def _legacy_query(query: Mapping[str, Any], mapping: Mapping[str, str]) -> Dict[str, Any]:
    inverse = {new: old for old, new in mapping.items()}
    return {inverse.get(key, key): value for key, value in query.items()}


def _rename_legacy(doc: Mapping, mapping: Mapping[str, str]) -> Dict[str, Any]:
    data = {k: v for k, v in doc.items() if k != "_id"}
    for old, new in mapping.items():
        if old in data:
            value = data.pop(old)
            data.setdefault(new, value)
    return data


def normalize_post(doc: Mapping) -> Post:
    data = _rename_legacy(doc, LEGACY_POST_KEYS)
    for field in ("hashtags",) + SET_FIELDS:
        data[field] = _unique(data.get(field))
    data["comment_count"] = data.get("comment_count") or 0
    data["created_at"] = normalize_instant(data.get("created_at")) or datetime.fromtimestamp(0, tz=timezone.utc)
    data["updated_at"] = normalize_instant(data.get("updated_at"))
    return Post(**data)


def normalize_comment(doc: Mapping) -> Comment:
    data = _rename_legacy(doc, LEGACY_COMMENT_KEYS)
    data["created_at"] = normalize_instant(data.get("created_at")) or datetime.fromtimestamp(0, tz=timezone.utc)
    return Comment(**data)


def normalize_user(doc: Mapping) -> User:
    data = {k: v for k, v in doc.items() if k != "_id"}
    data["created_at"] = normalize_instant(data.get("created_at")) or datetime.now(timezone.utc)
    return User(**data)


class StoreGateway:
    """Keyed record access over MongoDB.

    All set and counter mutations are single-document atomic updates
    (``$addToSet``, ``$pull``, ``$inc``). Nothing here reads a document,
    modifies it client-side and writes it back. Every call is bounded by
    ``timeout`` seconds and pymongo failures are translated into the
    service error taxonomy.
    """

    def __init__(self, db, timeout: float = 10.0):
        self.db = db
        self.timeout = timeout

    async def _run(self, operation: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %ss", operation, self.timeout)
            raise StoreTimeoutError(f"{operation} timed out")
        except DuplicateKeyError as e:
            raise ConflictError(f"{operation}: duplicate key") from e
        except (NetworkTimeout, ExecutionTimeout, ServerSelectionTimeoutError, WTimeoutError) as e:
            logger.warning("%s timed out: %s", operation, e)
            raise StoreTimeoutError(f"{operation} timed out") from e
        except ConnectionFailure as e:
            logger.warning("%s failed: %s", operation, e)
            raise NetworkError(f"{operation} failed: store unreachable") from e
        except PyMongoError as e:
            logger.warning("%s failed: %s", operation, e)
            raise NetworkError(f"{operation} failed") from e

    async def ensure_indexes(self):
        await self._run("create indexes", self.db.users.create_index("id", unique=True))
        await self._run("create indexes", self.db.users.create_index("email", unique=True))
        await self._run("create indexes", self.db.users.create_index("username", unique=True))
        await self._run("create indexes", self.db.posts.create_index("id", unique=True))
        await self._run("create indexes", self.db.posts.create_index([("created_at", DESCENDING)]))
        await self._run("create indexes", self.db.comments.create_index([("post_id", ASCENDING), ("created_at", ASCENDING)]))
        await self._run("create indexes", self.db.sessions.create_index("session_token", unique=True))

    async def _migrate(self, collection, mapping: Mapping[str, str], query: Mapping[str, Any]) -> int:
        """Rename camelCase keys in place on documents matching ``query``.

        ``query`` is written with the new names; documents that still carry
        the old ones are matched through their legacy spelling.
        """
        legacy = {"$or": [{old: {"$exists": True}} for old in mapping]}
        match = {"$and": [{"$or": [dict(query), _legacy_query(query, mapping)]}, legacy]} if query else legacy
        docs = await self._run("find legacy documents", collection.find(match).to_list(length=None))
        for doc in docs:
            renames = {old: new for old, new in mapping.items() if old in doc}
            await self._run(
                "migrate legacy keys",
                collection.update_one({"_id": doc["_id"]}, {"$rename": renames}),
            )
        if docs:
            logger.info("Renamed legacy keys on %d documents", len(docs))
        return len(docs)

    async def _migrate_post(self, post_id: str):
        await self._migrate(self.db.posts, LEGACY_POST_KEYS, {"id": post_id})

    async def _migrate_comments(self, post_id: str):
        await self._migrate(self.db.comments, LEGACY_COMMENT_KEYS, {"post_id": post_id})

    async def migrate_legacy_keys(self) -> int:
        """Rewrite every camelCase post and comment document."""
        posts = await self._migrate(self.db.posts, LEGACY_POST_KEYS, {})
        comments = await self._migrate(self.db.comments, LEGACY_COMMENT_KEYS, {})
        return posts + comments

    # Posts
    async def create_post(self, post: Post) -> Post:
        await self._run("create post", self.db.posts.insert_one(post.model_dump()))
        return post

    async def get_post(self, post_id: str) -> Post:
        doc = await self._run("get post", self.db.posts.find_one({"id": post_id}))
        if not doc:
            raise NotFoundError("Post not found")
        return normalize_post(doc)

    async def update_post(self, post_id: str, fields: Dict[str, Any]) -> Post:
        await self._migrate_post(post_id)
        doc = await self._run(
            "update post",
            self.db.posts.find_one_and_update(
                {"id": post_id},
                {"$set": fields},
                return_document=ReturnDocument.AFTER,
            ),
        )
        if not doc:
            raise NotFoundError("Post not found")
        return normalize_post(doc)

    async def delete_post(self, post_id: str):
        result = await self._run("delete post", self.db.posts.delete_one({"id": post_id}))
        if result.deleted_count == 0:
            raise NotFoundError("Post not found")

    async def add_to_set(self, post_id: str, field: str, value: str) -> Post:
        return await self._set_delta(post_id, field, {"$addToSet": {field: value}})

    async def remove_from_set(self, post_id: str, field: str, value: str) -> Post:
        return await self._set_delta(post_id, field, {"$pull": {field: value}})

    async def _set_delta(self, post_id: str, field: str, update: Dict[str, Any]) -> Post:
        if field not in SET_FIELDS:
            raise ValidationError(f"{field} is not a set field")
        await self._migrate_post(post_id)
        doc = await self._run(
            f"update {field}",
            self.db.posts.find_one_and_update(
                {"id": post_id},
                update,
                return_document=ReturnDocument.AFTER,
            ),
        )
        if not doc:
            raise NotFoundError("Post not found")
        return normalize_post(doc)

    async def increment(self, post_id: str, field: str, delta: int, floor: Optional[int] = None) -> Optional[Post]:
        """Atomically add ``delta`` to a counter.

        With ``floor`` the update only applies while the stored value is
        greater than ``floor``; ``None`` is returned when it did not apply
        (the post exists but is already at the floor).
        """
        if field not in COUNTER_FIELDS:
            raise ValidationError(f"{field} is not a counter field")
        await self._migrate_post(post_id)
        query: Dict[str, Any] = {"id": post_id}
        if floor is not None:
            query[field] = {"$gt": floor}
        doc = await self._run(
            f"increment {field}",
            self.db.posts.find_one_and_update(
                query,
                {"$inc": {field: delta}},
                return_document=ReturnDocument.AFTER,
            ),
        )
        if doc:
            return normalize_post(doc)
        if floor is None:
            raise NotFoundError("Post not found")
        # Distinguish "at the floor" from "missing".
        await self.get_post(post_id)
        return None

    async def set_field(self, post_id: str, field: str, value: Any) -> Post:
        return await self.update_post(post_id, {field: value})

    async def find_posts(self, query: Optional[Dict[str, Any]] = None, sort=None, limit: int = 0) -> List[Post]:
        if query:
            await self._migrate(self.db.posts, LEGACY_POST_KEYS, query)
        cursor = self.db.posts.find(query or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        docs = await self._run("find posts", cursor.to_list(length=None))
        return [normalize_post(doc) for doc in docs]

    async def list_posts(self, query: Optional[Dict[str, Any]] = None) -> List[Post]:
        """Newest first; equal timestamps keep insertion order.

        Sorting happens after normalization so legacy string timestamps
        order correctly against native ones.
        """
        posts = await self.find_posts(query, sort=[("_id", ASCENDING)])
        posts.sort(key=lambda p: p.created_at, reverse=True)
        return posts

    async def distinct_prefix(self, field: str, prefix: str, limit: int) -> List[str]:
        """Unique values of ``field`` starting with ``prefix`` (case-insensitive)."""
        pattern = "^" + re.escape(prefix)
        cursor = self.db.posts.find(
            {field: {"$regex": pattern, "$options": "i"}},
            {field: 1, "_id": 0},
        ).sort(field, ASCENDING)
        docs = await self._run("prefix query", cursor.to_list(length=None))
        values: List[str] = []
        for doc in docs:
            value = doc.get(field)
            if value and value not in values:
                values.append(value)
                if len(values) >= limit:
                    break
        return values

    # Comments
    async def create_comment(self, comment: Comment) -> Comment:
        await self._run("create comment", self.db.comments.insert_one(comment.model_dump()))
        return comment

    async def get_comment(self, post_id: str, comment_id: str) -> Comment:
        await self._migrate_comments(post_id)
        doc = await self._run("get comment", self.db.comments.find_one({"id": comment_id, "post_id": post_id}))
        if not doc:
            raise NotFoundError("Comment not found")
        return normalize_comment(doc)

    async def delete_comment(self, post_id: str, comment_id: str):
        await self._migrate_comments(post_id)
        result = await self._run(
            "delete comment",
            self.db.comments.delete_one({"id": comment_id, "post_id": post_id}),
        )
        if result.deleted_count == 0:
            raise NotFoundError("Comment not found")

    async def find_comments(self, post_id: str) -> List[Comment]:
        await self._migrate_comments(post_id)
        cursor = self.db.comments.find({"post_id": post_id}).sort([("_id", ASCENDING)])
        docs = await self._run("find comments", cursor.to_list(length=None))
        comments = [normalize_comment(doc) for doc in docs]
        comments.sort(key=lambda c: c.created_at)
        return comments

    async def count_comments(self, post_id: str) -> int:
        await self._migrate_comments(post_id)
        return await self._run("count comments", self.db.comments.count_documents({"post_id": post_id}))

    async def delete_comments_for_post(self, post_id: str) -> int:
        await self._migrate_comments(post_id)
        result = await self._run("delete comments", self.db.comments.delete_many({"post_id": post_id}))
        return result.deleted_count

    # Users
    async def create_user(self, user: User) -> User:
        await self._run("create user", self.db.users.insert_one(user.model_dump()))
        return user

    async def get_user(self, user_id: str) -> Optional[User]:
        doc = await self._run("get user", self.db.users.find_one({"id": user_id}))
        return normalize_user(doc) if doc else None

    async def find_user_by_email(self, email: str) -> Optional[User]:
        doc = await self._run("find user", self.db.users.find_one({"email": email}))
        return normalize_user(doc) if doc else None

    async def find_user_by_username(self, username: str) -> Optional[User]:
        doc = await self._run("find user", self.db.users.find_one({"username": username}))
        return normalize_user(doc) if doc else None

    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> User:
        doc = await self._run(
            "update user",
            self.db.users.find_one_and_update(
                {"id": user_id},
                {"$set": fields},
                return_document=ReturnDocument.AFTER,
            ),
        )
        if not doc:
            raise NotFoundError("User not found")
        return normalize_user(doc)

    # Sessions
    async def create_session(self, session: SessionData) -> SessionData:
        await self._run("create session", self.db.sessions.insert_one(session.model_dump()))
        return session

    async def get_session(self, token: str) -> Optional[SessionData]:
        doc = await self._run("get session", self.db.sessions.find_one({"session_token": token}))
        if not doc:
            return None
        return SessionData(
            session_token=doc["session_token"],
            user_id=doc["user_id"],
            expires_at=normalize_instant(doc["expires_at"]),
        )

    async def delete_session(self, token: str):
        await self._run("delete session", self.db.sessions.delete_one({"session_token": token}))

    async def delete_sessions_for_user(self, user_id: str):
        await self._run("delete sessions", self.db.sessions.delete_many({"user_id": user_id}))

    # Email verification tokens
    async def create_verification(self, verification: Verification) -> Verification:
        await self._run(
            "create verification",
            self.db.verifications.insert_one(verification.model_dump()),
        )
        return verification

    async def get_verification(self, token: str) -> Optional[Verification]:
        doc = await self._run("get verification", self.db.verifications.find_one({"token": token}))
        if not doc:
            return None
        return Verification(
            token=doc["token"],
            user_id=doc["user_id"],
            created_at=normalize_instant(doc.get("created_at")) or datetime.now(timezone.utc),
        )

    async def delete_verifications_for_user(self, user_id: str):
        await self._run("delete verifications", self.db.verifications.delete_many({"user_id": user_id}))
