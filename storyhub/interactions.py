"""Like/save toggling with an optimistic local mirror of the post.

A ``PostView`` is what one viewer sees of a post: whether they liked or
saved it and how many likes it has. The like count is a cache of
``len(post.likes)``; it is overwritten whenever a fresh record arrives from
the store and only moved by a provisional +/-1 while a toggle is in flight.

Membership in the store is changed with a single ``$addToSet``/``$pull``,
so concurrent togglers never lose each other's updates and a repeated add
cannot duplicate a member. If the write fails the view is restored to its
pre-toggle snapshot, marked REVERTING until a fresh record arrives, and
the error is re-raised.

An engine caches at most ``max_views`` views, least recently used first
out, and never evicts one with a toggle in flight. The HTTP layer builds
one engine per request.
"""
import enum
import logging
from typing import Dict, Optional, Tuple

from .errors import StoryhubError
from .guard import SubmitGuard
from .models import LikeResult, Post, SaveResult
from .store import StoreGateway

logger = logging.getLogger(__name__)


class SyncState(str, enum.Enum):
    SYNCED = "synced"
    PENDING = "pending"
    REVERTING = "reverting"


class PostView:
    def __init__(self, post: Post, viewer_id: Optional[str]):
        self.post_id = post.id
        self.viewer_id = viewer_id
        self.state = SyncState.SYNCED
        self.refresh(post)

    def refresh(self, post: Post):
        self.liked = self.viewer_id is not None and self.viewer_id in post.likes
        self.saved = self.viewer_id is not None and self.viewer_id in post.saves
        self.like_count = len(post.likes)

    def snapshot(self) -> Tuple[bool, bool, int]:
        return self.liked, self.saved, self.like_count

    def restore(self, snapshot: Tuple[bool, bool, int]):
        """Roll back a failed toggle.

        The view stays REVERTING until the next record from the store
        confirms it.
        """
        self.liked, self.saved, self.like_count = snapshot
        self.state = SyncState.REVERTING

    def like_result(self) -> LikeResult:
        return LikeResult(liked=self.liked, like_count=self.like_count)

    def save_result(self) -> SaveResult:
        return SaveResult(saved=self.saved)


class InteractionEngine:
    def __init__(self, store: StoreGateway, guard: Optional[SubmitGuard] = None, max_views: int = 1024):
        self.store = store
        self.guard = guard or SubmitGuard()
        self.max_views = max_views
        self._views: Dict[Tuple[str, Optional[str]], PostView] = {}

    def view(self, post: Post, viewer_id: Optional[str]) -> PostView:
        """Return the viewer's mirror of ``post``, resynced from this record."""
        key = (post.id, viewer_id)
        view = self._views.pop(key, None)
        if view is None:
            view = PostView(post, viewer_id)
            self._evict()
        else:
            view.refresh(post)
            if view.state is SyncState.REVERTING:
                view.state = SyncState.SYNCED
        self._views[key] = view
        return view

    def _evict(self):
        for key in list(self._views):
            if len(self._views) < self.max_views:
                return
            if self._views[key].state is not SyncState.PENDING:
                del self._views[key]

    def forget(self, post_id: str, viewer_id: Optional[str]):
        self._views.pop((post_id, viewer_id), None)

    async def load(self, post_id: str, viewer_id: Optional[str]) -> PostView:
        post = await self.store.get_post(post_id)
        return self.view(post, viewer_id)

    async def _current(self, post_id: str, viewer_id: Optional[str]) -> PostView:
        key = (post_id, viewer_id)
        view = self._views.pop(key, None)
        if view is None:
            return await self.load(post_id, viewer_id)
        self._views[key] = view
        return view

    async def toggle_like(self, post_id: str, user_id: Optional[str]) -> LikeResult:
        view = await self._current(post_id, user_id)
        if user_id is None:
            return view.like_result()

        async with self.guard.hold(("like", post_id, user_id)):
            snapshot = view.snapshot()
            adding = not view.liked
            view.state = SyncState.PENDING
            view.liked = adding
            view.like_count += 1 if adding else -1
            try:
                if adding:
                    post = await self.store.add_to_set(post_id, "likes", user_id)
                else:
                    post = await self.store.remove_from_set(post_id, "likes", user_id)
            except StoryhubError as e:
                logger.warning("Like toggle on %s by %s failed, rolling back: %s", post_id, user_id, e.detail)
                view.restore(snapshot)
                raise
            view.refresh(post)
            view.state = SyncState.SYNCED
        return view.like_result()

    async def toggle_save(self, post_id: str, user_id: Optional[str]) -> SaveResult:
        view = await self._current(post_id, user_id)
        if user_id is None:
            return view.save_result()

        async with self.guard.hold(("save", post_id, user_id)):
            snapshot = view.snapshot()
            adding = not view.saved
            view.state = SyncState.PENDING
            view.saved = adding
            try:
                if adding:
                    post = await self.store.add_to_set(post_id, "saves", user_id)
                else:
                    post = await self.store.remove_from_set(post_id, "saves", user_id)
            except StoryhubError as e:
                logger.warning("Save toggle on %s by %s failed, rolling back: %s", post_id, user_id, e.detail)
                view.restore(snapshot)
                raise
            view.refresh(post)
            view.state = SyncState.SYNCED
        return view.save_result()
