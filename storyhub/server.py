import logging
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Cookie, Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorClient
from starlette.middleware.cors import CORSMiddleware

from .comments import CommentThreadManager
from .config import Settings, get_settings
from .errors import NetworkError, StoryhubError
from .feed import FeedService, filter_posts
from .guard import SubmitGuard
from .identity import PasswordIdentityProvider
from .interactions import InteractionEngine
from .models import (
    AuthUser,
    Comment,
    CommentCreate,
    LikeResult,
    LoginRequest,
    PostCreate,
    PostOut,
    PostUpdate,
    SaveResult,
    SignupRequest,
    SuggestionRequest,
    Suggestions,
)
from .posts import PostService
from .session import SessionProvider
from .store import StoreGateway
from .suggestions import TextSuggestionService

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session_token"

# Security
security = HTTPBearer(auto_error=False)

api_router = APIRouter(prefix="/api")


class Services:
    """Everything a request handler needs, built once per app."""

    def __init__(self, db, settings: Settings, suggestions: Optional[TextSuggestionService] = None):
        self.settings = settings
        self.store = StoreGateway(db, timeout=settings.store_timeout)
        self.guard = SubmitGuard()
        self.identity = PasswordIdentityProvider(
            self.store,
            session_ttl=timedelta(days=settings.session_ttl_days),
            oauth_session_url=settings.oauth_session_url,
            http_timeout=settings.store_timeout,
        )
        self.posts = PostService(self.store, self.guard)
        self.comments = CommentThreadManager(self.store, self.guard)
        self.feed = FeedService(self.store)
        self.suggestions = suggestions or TextSuggestionService(settings.gemini_api_key, settings.gemini_model)

    def engine(self) -> InteractionEngine:
        return InteractionEngine(self.store, self.guard)


# Dependencies
def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_session(
    response: Response,
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    services: Services = Depends(get_services),
) -> SessionProvider:
    token = session_token
    if not token and credentials:
        token = credentials.credentials

    session = SessionProvider(services.identity)
    await session.start(token)
    if token and session.current_user() is None and session.lookup_error is None:
        response.delete_cookie(SESSION_COOKIE)
    return session


async def get_current_user(session: SessionProvider = Depends(get_session)) -> AuthUser:
    return session.require_user()


def _set_session_cookie(response: Response, token: str, settings: Settings):
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=settings.session_ttl_days * 24 * 60 * 60,
        path="/",
        secure=True,
        httponly=True,
        samesite="none",
    )


# Auth routes
@api_router.post("/auth/signup")
async def signup(
    payload: SignupRequest,
    response: Response,
    session: SessionProvider = Depends(get_session),
    services: Services = Depends(get_services),
):
    user = await session.signup(payload.username, payload.email, payload.password)
    _set_session_cookie(response, session.token, services.settings)
    return {"user": user, "session_token": session.token}


@api_router.post("/auth/login")
async def login(
    payload: LoginRequest,
    response: Response,
    session: SessionProvider = Depends(get_session),
    services: Services = Depends(get_services),
):
    user = await session.login(payload.email, payload.password)
    _set_session_cookie(response, session.token, services.settings)
    return {"user": user, "session_token": session.token}


@api_router.get("/auth/session")
async def federated_session(
    session_id: str,
    response: Response,
    session: SessionProvider = Depends(get_session),
    services: Services = Depends(get_services),
):
    """Exchange an OAuth session id for a local session."""
    user = await session.sign_in_federated(session_id)
    _set_session_cookie(response, session.token, services.settings)
    return {"user": user, "session_token": session.token}


@api_router.post("/auth/logout")
async def logout(response: Response, session: SessionProvider = Depends(get_session)):
    session.require_user()
    await session.logout()
    response.delete_cookie(SESSION_COOKIE, path="/", secure=True, samesite="none")
    return {"message": "Logged out successfully"}


@api_router.get("/auth/me", response_model=AuthUser)
async def get_current_user_info(current_user: AuthUser = Depends(get_current_user)):
    return current_user


@api_router.post("/auth/verify-email/resend")
async def resend_verification(
    current_user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    user = await services.store.get_user(current_user.id)
    await services.identity.resend_verification_email(user)
    return {"message": "A new verification email has been sent."}


@api_router.post("/auth/verify-email/{token}", response_model=AuthUser)
async def verify_email(token: str, services: Services = Depends(get_services)):
    user = await services.identity.verify_email(token)
    return AuthUser.from_user(user)


# Post routes
@api_router.get("/posts", response_model=List[PostOut])
async def get_posts(
    mode: str = "title",
    q: str = "",
    username: Optional[str] = None,
    session: SessionProvider = Depends(get_session),
    services: Services = Depends(get_services),
):
    viewer = session.current_user()
    try:
        posts = await services.feed.list_posts()
    except NetworkError as e:
        logger.warning("Error fetching posts: %s", e.detail)
        return []
    posts = filter_posts(posts, mode, q, selected_username=username)
    return [PostOut.for_viewer(p, viewer.id if viewer else None) for p in posts]


@api_router.post("/posts", response_model=PostOut)
async def create_post(
    post_data: PostCreate,
    session: SessionProvider = Depends(get_session),
    services: Services = Depends(get_services),
):
    author = session.require_user(verified=True)
    post = await services.posts.create_post(
        author,
        post_data.title,
        post_data.content,
        cover_image_url=post_data.cover_image_url,
        hashtags=post_data.hashtags,
    )
    return PostOut.for_viewer(post, author.id)


@api_router.get("/posts/{post_id}", response_model=PostOut)
async def get_post(
    post_id: str,
    session: SessionProvider = Depends(get_session),
    services: Services = Depends(get_services),
):
    viewer = session.current_user()
    post = await services.posts.get_post(post_id)
    return PostOut.for_viewer(post, viewer.id if viewer else None)


@api_router.patch("/posts/{post_id}", response_model=PostOut)
async def update_post(
    post_id: str,
    post_update: PostUpdate,
    current_user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    post = await services.posts.update_post(
        post_id,
        current_user,
        title=post_update.title,
        content=post_update.content,
    )
    return PostOut.for_viewer(post, current_user.id)


@api_router.delete("/posts/{post_id}")
async def delete_post(
    post_id: str,
    current_user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.posts.delete_post(post_id, current_user)
    return {"message": "Post deleted"}


# Like / save routes
@api_router.post("/posts/{post_id}/like", response_model=LikeResult)
async def toggle_like(
    post_id: str,
    session: SessionProvider = Depends(get_session),
    services: Services = Depends(get_services),
):
    user = session.current_user()
    return await services.engine().toggle_like(post_id, user.id if user else None)


@api_router.post("/posts/{post_id}/save", response_model=SaveResult)
async def toggle_save(
    post_id: str,
    session: SessionProvider = Depends(get_session),
    services: Services = Depends(get_services),
):
    user = session.current_user()
    return await services.engine().toggle_save(post_id, user.id if user else None)


# Comment routes
@api_router.get("/posts/{post_id}/comments", response_model=List[Comment])
async def get_comments(post_id: str, services: Services = Depends(get_services)):
    try:
        return await services.comments.list_comments(post_id)
    except NetworkError as e:
        logger.warning("Error fetching comments for %s: %s", post_id, e.detail)
        return []


@api_router.post("/posts/{post_id}/comments", response_model=Comment)
async def create_comment(
    post_id: str,
    comment_data: CommentCreate,
    session: SessionProvider = Depends(get_session),
    services: Services = Depends(get_services),
):
    user = session.current_user()
    return await services.comments.add_comment(
        post_id,
        user.id if user else None,
        user.username if user else None,
        comment_data.content,
    )


@api_router.delete("/posts/{post_id}/comments/{comment_id}")
async def delete_comment(
    post_id: str,
    comment_id: str,
    current_user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await services.comments.delete_comment(post_id, comment_id, current_user.id)
    return {"message": "Comment deleted"}


# User routes
@api_router.get("/users/suggest", response_model=List[str])
async def suggest_usernames(prefix: str = "", services: Services = Depends(get_services)):
    try:
        return await services.feed.suggest_usernames(prefix)
    except NetworkError as e:
        logger.warning("Error fetching username suggestions: %s", e.detail)
        return []


@api_router.get("/users/me/posts", response_model=List[PostOut])
async def get_my_posts(
    tab: str = Query("mine", pattern="^(mine|liked|saved)$"),
    session: SessionProvider = Depends(get_session),
    services: Services = Depends(get_services),
):
    user = session.require_user(verified=True)
    if tab == "liked":
        posts = await services.feed.list_liked_by(user.id)
    elif tab == "saved":
        posts = await services.feed.list_saved_by(user.id)
    else:
        posts = await services.feed.list_by_author(user.id)
    return [PostOut.for_viewer(p, user.id) for p in posts]


@api_router.post("/suggestions", response_model=Suggestions)
async def generate_suggestions(
    payload: SuggestionRequest,
    current_user: AuthUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.suggestions.suggest(payload.content)


# Health check
@api_router.get("/")
async def root():
    return {"message": "Storyhub API is running"}


async def handle_storyhub_error(request: Request, exc: StoryhubError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app(
    db=None,
    settings: Optional[Settings] = None,
    suggestions: Optional[TextSuggestionService] = None,
) -> FastAPI:
    settings = settings or get_settings()

    # Configure logging
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    client = None
    if db is None:
        client = AsyncIOMotorClient(settings.mongo_url)
        db = client[settings.db_name]

    app = FastAPI(title="Storyhub API")
    app.state.services = Services(db, settings, suggestions)
    app.include_router(api_router)
    app.add_exception_handler(StoryhubError, handle_storyhub_error)

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def prepare_store():
        try:
            await app.state.services.store.ensure_indexes()
            await app.state.services.store.migrate_legacy_keys()
        except StoryhubError as e:
            logger.warning("Could not prepare the store: %s", e.detail)

    @app.on_event("shutdown")
    async def shutdown_db_client():
        if client is not None:
            client.close()

    return app


app = create_app()
