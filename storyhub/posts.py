import logging
from typing import Iterable, List, Optional

from .errors import PermissionDeniedError, ValidationError
from .guard import SubmitGuard
from .models import AuthUser, Post, utcnow
from .store import StoreGateway

logger = logging.getLogger(__name__)


def clean_hashtags(tags: Optional[Iterable[str]]) -> List[str]:
    """Strip ``#`` and whitespace, drop blanks and case-insensitive repeats."""
    result: List[str] = []
    seen = set()
    for tag in tags or []:
        tag = (tag or "").strip().lstrip("#").strip()
        if tag and tag.lower() not in seen:
            seen.add(tag.lower())
            result.append(tag)
    return result


class PostService:
    def __init__(self, store: StoreGateway, guard: Optional[SubmitGuard] = None):
        self.store = store
        self.guard = guard or SubmitGuard()

    async def create_post(
        self,
        author: Optional[AuthUser],
        title: str,
        content: str,
        cover_image_url: Optional[str] = None,
        hashtags: Optional[Iterable[str]] = None,
    ) -> Post:
        if author is None:
            raise ValidationError("Title, content, and user are required.")
        if not (title or "").strip() or not (content or "").strip():
            raise ValidationError("Title, content, and user are required.")

        async with self.guard.hold(("create_post", title.strip(), author.id)):
            post = Post(
                title=title.strip(),
                content=content,
                author_id=author.id,
                author_username=author.username,
                cover_image_url=(cover_image_url or "").strip() or None,
                hashtags=clean_hashtags(hashtags),
            )
            await self.store.create_post(post)
        logger.info("Post %s created by %s", post.id, author.id)
        return post

    async def get_post(self, post_id: str) -> Post:
        return await self.store.get_post(post_id)

    async def update_post(
        self,
        post_id: str,
        acting_user: AuthUser,
        title: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Post:
        post = await self.store.get_post(post_id)
        if post.author_id != acting_user.id:
            raise PermissionDeniedError("Only the author can edit this post")

        fields = {}
        if title is not None:
            if not title.strip():
                raise ValidationError("Title cannot be empty")
            fields["title"] = title.strip()
        if content is not None:
            if not content.strip():
                raise ValidationError("Content cannot be empty")
            fields["content"] = content
        if not fields:
            return post
        fields["updated_at"] = utcnow()
        return await self.store.update_post(post_id, fields)

    async def delete_post(self, post_id: str, acting_user: AuthUser):
        async with self.guard.hold(("delete_post", post_id, acting_user.id)):
            post = await self.store.get_post(post_id)
            if post.author_id != acting_user.id:
                raise PermissionDeniedError("Only the author can delete this post")
            await self.store.delete_post(post_id)
            removed = await self.store.delete_comments_for_post(post_id)
        logger.info("Post %s deleted by %s (%d comments removed)", post_id, acting_user.id, removed)
