import uuid
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Records
class User(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    username: str
    email: str
    password_hash: Optional[str] = None
    email_verified: bool = False
    provider: str = "password"
    created_at: datetime = Field(default_factory=utcnow)


class AuthUser(BaseModel):
    """The identity exposed to the rest of the app; never carries secrets."""
    id: str
    username: str
    email: str
    email_verified: bool = False

    @classmethod
    def from_user(cls, user: User) -> "AuthUser":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            email_verified=user.email_verified,
        )


class Post(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str
    content: str
    author_id: str
    author_username: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    cover_image_url: Optional[str] = None
    hashtags: List[str] = Field(default_factory=list)
    likes: List[str] = Field(default_factory=list)
    saves: List[str] = Field(default_factory=list)
    comment_count: int = 0

    @property
    def like_count(self) -> int:
        return len(self.likes)


class Comment(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    post_id: str
    author_id: str
    author_username: str
    content: str
    created_at: datetime = Field(default_factory=utcnow)


class SessionData(BaseModel):
    session_token: str
    user_id: str
    expires_at: datetime


class Verification(BaseModel):
    token: str
    user_id: str
    created_at: datetime = Field(default_factory=utcnow)


# Request bodies
class SignupRequest(BaseModel):
    username: str
    email: EmailStr
    password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class PostCreate(BaseModel):
    title: str
    content: str
    cover_image_url: Optional[str] = None
    hashtags: List[str] = Field(default_factory=list)


class PostUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None


class CommentCreate(BaseModel):
    content: str


class SuggestionRequest(BaseModel):
    content: str


# Responses
class PostOut(BaseModel):
    id: str
    title: str
    content: str
    author_id: str
    author_username: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    cover_image_url: Optional[str] = None
    hashtags: List[str]
    like_count: int
    comment_count: int
    is_liked: bool = False
    is_saved: bool = False

    @classmethod
    def for_viewer(cls, post: Post, viewer_id: Optional[str]) -> "PostOut":
        return cls(
            id=post.id,
            title=post.title,
            content=post.content,
            author_id=post.author_id,
            author_username=post.author_username,
            created_at=post.created_at,
            updated_at=post.updated_at,
            cover_image_url=post.cover_image_url,
            hashtags=post.hashtags,
            like_count=post.like_count,
            comment_count=post.comment_count,
            is_liked=viewer_id is not None and viewer_id in post.likes,
            is_saved=viewer_id is not None and viewer_id in post.saves,
        )


class LikeResult(BaseModel):
    liked: bool
    like_count: int


class SaveResult(BaseModel):
    saved: bool


class Suggestions(BaseModel):
    titles: List[str] = Field(default_factory=list)
    hashtags: List[str] = Field(default_factory=list)
