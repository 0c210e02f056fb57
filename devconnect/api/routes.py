from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from devconnect.api.schemas import (
    AuthResponse,
    ChatMessage,
    ChatResponse,
    CommentRequest,
    CreateChatRequest,
    CreatePostRequest,
    FollowersResponse,
    FollowingResponse,
    HealthResponse,
    LikeResponse,
    LoginRequest,
    MessageResponse,
    PostEnvelope,
    ReadReceiptResponse,
    SendMessageRequest,
    SignupRequest,
    SuggestionsResponse,
    UserSummary,
)
from devconnect.logging import get_logger, set_request_user
from devconnect.service.auth import AuthResult
from devconnect.service.errors import RateLimitedError
from devconnect.service.runtime import check_rate_limit, get_runtime
from devconnect.service.tokens import Identity

logger = get_logger(__name__)

router = APIRouter()


async def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    runtime = get_runtime()
    identity = await runtime.authenticator.authenticate(authorization)
    set_request_user(identity.id)
    return identity


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Raise 429 once ``key`` has used up its allowance for the window."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
    if not allowed:
        logger.warning("rate_limited", key=key, retry_after=reset_seconds)
        raise RateLimitedError(
            "Too many requests, please try again later",
            error=f"retry after {reset_seconds}s",
        )


def _auth_response(message: str, result: AuthResult) -> AuthResponse:
    user = result.user
    return AuthResponse(
        message=message,
        token=result.issued.token,
        user=UserSummary(id=user.id, username=user.username, email=user.email),
    )


# auth
@router.post("/auth/signup", response_model=AuthResponse, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Register an account and return its first token.

    Rate limited per client IP.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"auth:{_client_ip(request)}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.auth.signup(body.username, body.email, body.password)
    return _auth_response("User registered successfully", result)


@router.post("/auth/login", response_model=AuthResponse, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange credentials for a token, superseding any earlier token."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"auth:{_client_ip(request)}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.auth.login(body.email, body.password)
    return _auth_response("Login successful", result)


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    await runtime.auth.logout(identity)
    return MessageResponse(message="Logged out successfully")


# chat
@router.post("/chat", response_model=ChatResponse, status_code=201, tags=["chat"])
async def create_chat(body: CreateChatRequest, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    chat = runtime.chat.create_chat(
        identity,
        body.participants,
        is_group=body.is_group,
        group_name=body.group_name,
    )
    users = {u.id: u for u in runtime.store.get_users(chat.participants)}
    return ChatResponse(
        id=chat.id,
        participants=[
            {"id": u.id, "username": u.username, "avatar_url": u.avatar_url}
            for u in (users[uid] for uid in chat.participants if uid in users)
        ],
        is_group=chat.is_group,
        group_name=chat.group_name,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
    )


@router.get("/chat", response_model=List[ChatResponse], tags=["chat"])
async def list_chats(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    return [ChatResponse.model_validate(c) for c in runtime.chat.list_chats(identity)]


@router.post(
    "/chat/{chat_id}/messages",
    response_model=ChatMessage,
    status_code=201,
    tags=["chat"],
)
async def send_message(
    body: SendMessageRequest,
    chat_id: str = Path(..., max_length=64),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    message = await runtime.chat.send_message(identity, chat_id, body.text)
    return ChatMessage.from_model(message)


@router.get("/chat/{chat_id}/messages", response_model=List[ChatMessage], tags=["chat"])
async def list_messages(
    chat_id: str = Path(..., max_length=64),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    identity: Identity = Depends(get_identity),
):
    """One page of history, oldest first; ``limit`` defaults to 20."""
    runtime = get_runtime()
    messages = runtime.chat.list_messages(identity, chat_id, page=page, limit=limit)
    return [ChatMessage.from_model(m) for m in messages]


@router.patch(
    "/chat/{chat_id}/messages/{message_id}/read",
    response_model=ReadReceiptResponse,
    tags=["chat"],
)
async def mark_read(
    chat_id: str = Path(..., max_length=64),
    message_id: str = Path(..., max_length=64),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    await runtime.chat.mark_read(identity, chat_id, message_id)
    return ReadReceiptResponse(status="read")


# posts
@router.post("/posts", response_model=PostEnvelope, status_code=201, tags=["posts"])
async def create_post(body: CreatePostRequest, identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    post = runtime.posts.create_post(
        identity,
        body.content,
        code_snippet=body.code_snippet.model_dump() if body.code_snippet else None,
        images=body.images,
    )
    return PostEnvelope(message="Post created successfully", post=runtime.posts.to_payload(post))


@router.get("/posts", tags=["posts"])
async def list_posts(page: int = Query(1, ge=1)):
    """Global feed, newest first."""
    runtime = get_runtime()
    return runtime.posts.to_payloads(runtime.posts.feed(page))


@router.get("/posts/mine", tags=["posts"])
async def list_my_posts(page: int = Query(1, ge=1), identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    return runtime.posts.to_payloads(runtime.posts.feed(page, user_id=identity.id))


@router.get("/posts/{post_id}", tags=["posts"])
async def get_post(post_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    return runtime.posts.to_payload(runtime.posts.get_post(post_id))


@router.delete("/posts/{post_id}", response_model=MessageResponse, tags=["posts"])
async def delete_post(
    post_id: str = Path(..., max_length=64), identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    runtime.posts.delete_post(identity, post_id)
    return MessageResponse(message="Post deleted successfully")


@router.post("/posts/{post_id}/like", response_model=LikeResponse, tags=["posts"])
async def toggle_like(
    post_id: str = Path(..., max_length=64), identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    post, liked = runtime.posts.toggle_like(identity, post_id)
    return LikeResponse(
        message="Post liked" if liked else "Like removed",
        likes_count=len(post.likes),
        post=runtime.posts.to_payload(post),
    )


@router.post("/posts/{post_id}/comments", response_model=PostEnvelope, status_code=201, tags=["posts"])
async def add_comment(
    body: CommentRequest,
    post_id: str = Path(..., max_length=64),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    post = runtime.posts.add_comment(identity, post_id, body.content)
    return PostEnvelope(message="Comment added successfully", post=runtime.posts.to_payload(post))


@router.delete("/posts/{post_id}/comments/{comment_id}", response_model=PostEnvelope, tags=["posts"])
async def delete_comment(
    post_id: str = Path(..., max_length=64),
    comment_id: str = Path(..., max_length=64),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    post = runtime.posts.delete_comment(identity, post_id, comment_id)
    return PostEnvelope(message="Comment deleted successfully", post=runtime.posts.to_payload(post))


@router.post(
    "/posts/{post_id}/comments/{comment_id}/replies",
    response_model=PostEnvelope,
    status_code=201,
    tags=["posts"],
)
async def reply_to_comment(
    body: CommentRequest,
    post_id: str = Path(..., max_length=64),
    comment_id: str = Path(..., max_length=64),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    post = runtime.posts.reply(identity, post_id, comment_id, body.content)
    return PostEnvelope(message="Reply added successfully", post=runtime.posts.to_payload(post))


@router.post("/posts/{post_id}/comments/{comment_id}/like", response_model=LikeResponse, tags=["posts"])
async def toggle_comment_like(
    post_id: str = Path(..., max_length=64),
    comment_id: str = Path(..., max_length=64),
    identity: Identity = Depends(get_identity),
):
    runtime = get_runtime()
    post, comment, _liked = runtime.posts.toggle_comment_like(identity, post_id, comment_id)
    return LikeResponse(
        message="Comment like toggled",
        likes_count=len(comment.likes),
        post=runtime.posts.to_payload(post),
    )


# social
@router.post("/social/follow/{user_id}", response_model=MessageResponse, tags=["social"])
async def follow_user(
    user_id: str = Path(..., max_length=64), identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    await runtime.social.follow(identity, user_id)
    return MessageResponse(message="User followed successfully")


@router.post("/social/unfollow/{user_id}", response_model=MessageResponse, tags=["social"])
async def unfollow_user(
    user_id: str = Path(..., max_length=64), identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    await runtime.social.unfollow(identity, user_id)
    return MessageResponse(message="User unfollowed successfully")


@router.get("/social/followers", response_model=FollowersResponse, tags=["social"])
async def list_followers(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    followers = runtime.social.followers(identity)
    return FollowersResponse(followers=followers, count=len(followers))


@router.get("/social/following", response_model=FollowingResponse, tags=["social"])
async def list_following(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    following = runtime.social.following(identity)
    return FollowingResponse(following=following, count=len(following))


@router.get("/social/suggestions", response_model=SuggestionsResponse, tags=["social"])
async def list_suggestions(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    suggestions = runtime.social.suggestions(identity)
    return SuggestionsResponse(suggestions=suggestions, count=len(suggestions))


# users
@router.get("/users/{user_id}/profile", tags=["users"])
async def get_profile(user_id: str = Path(..., max_length=64)):
    """Public profile, served from the cache when present."""
    runtime = get_runtime()
    return await runtime.users.get_profile(user_id)


@router.get("/healthz", response_model=HealthResponse, tags=["health"])
async def health():
    runtime = get_runtime()
    store_status = "ok"
    cache_status = "ok"
    try:
        runtime.store.verify_connection()
    except Exception as exc:
        logger.error("health_store_failed", error=str(exc))
        store_status = "error"
    try:
        await runtime.cache.get("healthz")
    except Exception as exc:
        logger.error("health_cache_failed", error=str(exc))
        cache_status = "error"
    healthy = store_status == "ok" and cache_status == "ok"
    return HealthResponse(
        status="ok" if healthy else "degraded",
        store=store_status,
        cache=cache_status,
        redis_enabled=runtime.redis_enabled,
    )
