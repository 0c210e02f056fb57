from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Protocol

from devconnect.logging import get_logger
from devconnect.service.errors import AuthorizationError, NotFoundError, ValidationError
from devconnect.service.tokens import Identity
from devconnect.storage.errors import MissingReference
from devconnect.storage.models import Comment, Post, User

logger = get_logger(__name__)

MAX_IMAGES = 3


class PostStore(Protocol):
    def get_users(self, user_ids: Iterable[str]) -> List[User]: ...

    def create_post(
        self,
        user_id: str,
        content: str,
        *,
        code_snippet: Optional[Dict[str, str]] = None,
        images: Optional[List[str]] = None,
    ) -> Post: ...

    def get_post(self, post_id: str) -> Optional[Post]: ...

    def list_posts(
        self, *, skip: int = 0, limit: int = 10, user_id: Optional[str] = None
    ) -> List[Post]: ...

    def delete_post(self, post_id: str) -> bool: ...

    def toggle_post_like(self, post_id: str, user_id: str) -> Optional[tuple[Post, bool]]: ...

    def add_comment(self, post_id: str, user_id: str, text: str) -> Optional[Post]: ...

    def delete_comment(self, post_id: str, comment_id: str) -> Optional[Post]: ...

    def add_reply(
        self, post_id: str, comment_id: str, user_id: str, text: str
    ) -> Optional[Post]: ...

    def toggle_comment_like(
        self, post_id: str, comment_id: str, user_id: str
    ) -> Optional[tuple[Post, bool]]: ...


class PostService:
    """Posts with comments, replies and likes.

    Likes are toggled by a single store operation so concurrent toggles by
    different users never lose an update.
    """

    def __init__(self, store: PostStore, *, page_size: int = 10) -> None:
        self.store = store
        self.page_size = page_size

    def _require_post(self, post_id: str) -> Post:
        post = self.store.get_post(post_id)
        if not post:
            raise NotFoundError("Post not found")
        return post

    @staticmethod
    def _require_text(text: Optional[str], what: str) -> str:
        if not text or not text.strip():
            raise ValidationError(f"{what} is required")
        return text

    def create_post(
        self,
        identity: Identity,
        content: Optional[str],
        *,
        code_snippet: Optional[Dict[str, str]] = None,
        images: Optional[List[str]] = None,
    ) -> Post:
        content = self._require_text(content, "Content")
        if images and len(images) > MAX_IMAGES:
            raise ValidationError(f"At most {MAX_IMAGES} images are allowed")
        if code_snippet is not None and not code_snippet.get("code"):
            raise ValidationError("Code snippet must include code")
        try:
            post = self.store.create_post(
                identity.id, content, code_snippet=code_snippet, images=images
            )
        except MissingReference as exc:
            raise NotFoundError("User not found", error=exc.message)
        logger.info("post_created", post_id=post.id, user_id=identity.id)
        return post

    def feed(self, page: Optional[int] = None, *, user_id: Optional[str] = None) -> List[Post]:
        page = page if page and page > 0 else 1
        skip = (page - 1) * self.page_size
        return self.store.list_posts(skip=skip, limit=self.page_size, user_id=user_id)

    def get_post(self, post_id: str) -> Post:
        return self._require_post(post_id)

    def delete_post(self, identity: Identity, post_id: str) -> None:
        post = self._require_post(post_id)
        if post.user_id != identity.id:
            raise AuthorizationError("You are not authorized to delete this post")
        self.store.delete_post(post_id)
        logger.info("post_deleted", post_id=post_id, user_id=identity.id)

    def toggle_like(self, identity: Identity, post_id: str) -> tuple[Post, bool]:
        result = self.store.toggle_post_like(post_id, identity.id)
        if result is None:
            raise NotFoundError("Post not found")
        return result

    def add_comment(self, identity: Identity, post_id: str, text: Optional[str]) -> Post:
        text = self._require_text(text, "Comment content")
        post = self.store.add_comment(post_id, identity.id, text)
        if post is None:
            raise NotFoundError("Post not found")
        return post

    def delete_comment(self, identity: Identity, post_id: str, comment_id: str) -> Post:
        post = self._require_post(post_id)
        comment = post.find_comment(comment_id)
        if comment is None:
            raise NotFoundError("Comment not found")
        if identity.id not in (comment.user_id, post.user_id):
            raise AuthorizationError("You are not authorized to delete this comment")
        updated = self.store.delete_comment(post_id, comment_id)
        if updated is None:
            raise NotFoundError("Post not found")
        return updated

    def reply(
        self, identity: Identity, post_id: str, comment_id: str, text: Optional[str]
    ) -> Post:
        text = self._require_text(text, "Reply content")
        self._require_post(post_id)
        post = self.store.add_reply(post_id, comment_id, identity.id, text)
        if post is None:
            raise NotFoundError("Comment not found")
        return post

    def toggle_comment_like(
        self, identity: Identity, post_id: str, comment_id: str
    ) -> tuple[Post, Comment, bool]:
        self._require_post(post_id)
        result = self.store.toggle_comment_like(post_id, comment_id, identity.id)
        if result is None:
            raise NotFoundError("Comment not found")
        post, liked = result
        comment = post.find_comment(comment_id)
        return post, comment, liked

    def to_payload(self, post: Post) -> Dict[str, Any]:
        return self.to_payloads([post])[0]

    def to_payloads(self, posts: List[Post]) -> List[Dict[str, Any]]:
        """Serialize posts with authors of posts, comments and replies populated."""
        user_ids = set()
        for post in posts:
            user_ids.add(post.user_id)
            for comment in post.comments:
                user_ids.add(comment.user_id)
                user_ids.update(r.user_id for r in comment.replies)
        users = {u.id: u for u in self.store.get_users(sorted(user_ids))}

        def author(user_id: str) -> Dict[str, Any]:
            user = users.get(user_id)
            if not user:
                return {"id": user_id, "username": None, "avatarUrl": None}
            return {"id": user.id, "username": user.username, "avatarUrl": user.avatar_url}

        return [
            {
                "id": post.id,
                "user": author(post.user_id),
                "content": post.content,
                "codeSnippet": post.code_snippet,
                "images": list(post.images),
                "likes": list(post.likes),
                "comments": [
                    {
                        "id": c.id,
                        "user": author(c.user_id),
                        "text": c.text,
                        "likes": list(c.likes),
                        "replies": [
                            {
                                "id": r.id,
                                "user": author(r.user_id),
                                "text": r.text,
                                "createdAt": r.created_at.isoformat(),
                            }
                            for r in c.replies
                        ],
                        "createdAt": c.created_at.isoformat(),
                    }
                    for c in post.comments
                ],
                "createdAt": post.created_at.isoformat(),
                "updatedAt": post.updated_at.isoformat(),
            }
            for post in posts
        ]
