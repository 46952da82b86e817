"""Comment threads and the parent post's ``comment_count``.

The comment insert and the counter increment are two separate writes.
Between them the comment is already listed while the counter still has
its old value; readers can observe that window. If the increment fails the
inserted comment is deleted again so the thread and the counter agree, and
the original error is re-raised.

Deletes decrement with a floor at zero. Hitting the floor means the counter
was already undercounting (for example comments written before the field
existed), so it is logged rather than silently clamped; ``recount`` repairs
the counter from the live comments. A decrement that fails after the
delete leaves the counter one high; that is logged and the error re-raised.
"""
import logging
from typing import List, Optional

from .errors import PermissionDeniedError, StoryhubError, ValidationError
from .guard import SubmitGuard
from .models import Comment, Post
from .store import StoreGateway

logger = logging.getLogger(__name__)


class CommentThreadManager:
    def __init__(self, store: StoreGateway, guard: Optional[SubmitGuard] = None):
        self.store = store
        self.guard = guard or SubmitGuard()

    async def list_comments(self, post_id: str) -> List[Comment]:
        return await self.store.find_comments(post_id)

    async def add_comment(
        self,
        post_id: str,
        author_id: Optional[str],
        author_username: Optional[str],
        content: str,
    ) -> Comment:
        if not author_id:
            raise ValidationError("You must be logged in to comment")
        if not (content or "").strip():
            raise ValidationError("Comment cannot be empty")

        async with self.guard.hold(("comment", post_id, author_id)):
            await self.store.get_post(post_id)
            comment = Comment(
                post_id=post_id,
                author_id=author_id,
                author_username=author_username or "",
                content=content.strip(),
            )
            await self.store.create_comment(comment)
            try:
                await self.store.increment(post_id, "comment_count", 1)
            except StoryhubError as e:
                logger.warning(
                    "Counter increment for comment %s on %s failed, removing comment: %s",
                    comment.id, post_id, e.detail,
                )
                try:
                    await self.store.delete_comment(post_id, comment.id)
                except StoryhubError as cleanup_error:
                    logger.warning(
                        "Could not remove orphaned comment %s on %s: %s",
                        comment.id, post_id, cleanup_error.detail,
                    )
                raise
        return comment

    async def delete_comment(self, post_id: str, comment_id: str, acting_user_id: Optional[str]):
        async with self.guard.hold(("delete_comment", comment_id, acting_user_id)):
            comment = await self.store.get_comment(post_id, comment_id)
            post = await self.store.get_post(post_id)
            if acting_user_id not in (comment.author_id, post.author_id):
                raise PermissionDeniedError("You can only delete your own comments or comments on your posts")

            await self.store.delete_comment(post_id, comment_id)
            try:
                updated = await self.store.increment(post_id, "comment_count", -1, floor=0)
            except StoryhubError as e:
                logger.warning(
                    "Comment %s on %s was deleted but the counter decrement failed; "
                    "comment_count overcounts until recount: %s",
                    comment_id, post_id, e.detail,
                )
                raise
        if updated is None:
            logger.warning(
                "comment_count for post %s was already 0 when deleting comment %s; counter undercounts",
                post_id, comment_id,
            )

    async def recount(self, post_id: str) -> Post:
        live = await self.store.count_comments(post_id)
        post = await self.store.set_field(post_id, "comment_count", live)
        logger.info("comment_count for post %s reset to %d", post_id, live)
        return post
