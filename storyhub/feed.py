import asyncio
import logging
from typing import List, Optional, Sequence

from .errors import StoryhubError, ValidationError
from .models import Post
from .store import StoreGateway

logger = logging.getLogger(__name__)

SEARCH_MODES = ("title", "username", "hashtag")
MAX_USERNAME_SUGGESTIONS = 5


class FeedService:
    def __init__(self, store: StoreGateway):
        self.store = store

    async def list_posts(self) -> List[Post]:
        return await self.store.list_posts()

    async def list_by_author(self, user_id: str) -> List[Post]:
        return await self.store.list_posts({"author_id": user_id})

    async def list_liked_by(self, user_id: str) -> List[Post]:
        return await self.store.list_posts({"likes": user_id})

    async def list_saved_by(self, user_id: str) -> List[Post]:
        return await self.store.list_posts({"saves": user_id})

    async def suggest_usernames(self, prefix: str) -> List[str]:
        prefix = (prefix or "").strip()
        if not prefix:
            return []
        return await self.store.distinct_prefix("author_username", prefix, MAX_USERNAME_SUGGESTIONS)


def filter_posts(
    posts: Sequence[Post],
    mode: str,
    term: str,
    selected_username: Optional[str] = None,
) -> List[Post]:
    """Narrow ``posts`` for the search box.

    A selected username wins over everything else and matches exactly.
    Otherwise ``hashtag`` matches a case-insensitive substring of any tag,
    and every other mode, ``username`` included while nothing has been
    picked from the suggestions, matches a substring of the title.
    """
    if mode not in SEARCH_MODES:
        raise ValidationError(f"Unknown search mode: {mode}")
    if selected_username:
        return [p for p in posts if p.author_username == selected_username]

    needle = (term or "").lower()
    if not needle:
        return list(posts)
    if mode == "hashtag":
        return [p for p in posts if any(needle in tag.lower() for tag in p.hashtags)]
    return [p for p in posts if needle in p.title.lower()]


class FeedSearch:
    """Search-box state for a loaded feed, with debounced username typeahead."""

    def __init__(self, feed: FeedService, posts: Sequence[Post] = (), debounce: float = 0.3):
        self.feed = feed
        self.posts = list(posts)
        self.debounce = debounce
        self.mode = "title"
        self.term = ""
        self.selected_username: Optional[str] = None
        self.suggestions: List[str] = []
        self._pending: Optional[asyncio.Task] = None

    def _cancel_pending(self):
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    async def _lookup(self, term: str):
        await asyncio.sleep(self.debounce)
        try:
            suggestions = await self.feed.suggest_usernames(term)
        except StoryhubError as e:
            logger.warning("Username suggestions for %r failed: %s", term, e.detail)
            suggestions = []
        if self.mode == "username" and self.term == term and self.selected_username is None:
            self.suggestions = suggestions

    def set_term(self, term: str):
        self.term = term
        self.selected_username = None
        self._cancel_pending()
        if self.mode != "username" or not term:
            self.suggestions = []
            return
        self._pending = asyncio.get_running_loop().create_task(self._lookup(term))

    def select_username(self, username: str):
        self._cancel_pending()
        self.selected_username = username
        self.term = username
        self.suggestions = []

    def set_mode(self, mode: str):
        if mode not in SEARCH_MODES:
            raise ValidationError(f"Unknown search mode: {mode}")
        self._cancel_pending()
        self.mode = mode
        self.term = ""
        self.selected_username = None
        self.suggestions = []

    async def wait_for_suggestions(self):
        if self._pending is not None:
            await asyncio.wait({self._pending})

    def results(self) -> List[Post]:
        return filter_posts(self.posts, self.mode, self.term, self.selected_username)

    async def aclose(self):
        self._cancel_pending()
