from __future__ import annotations

import json
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from devconnect.logging import get_logger
from devconnect.storage.errors import (
    ConstraintViolation,
    DuplicateEntry,
    MissingReference,
)
from devconnect.storage.models import (
    Chat,
    Comment,
    Message,
    Post,
    Reply,
    User,
    utcnow,
)


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        avatar_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_follow (
        follower_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        followee_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (follower_id, followee_id),
        CHECK (follower_id <> followee_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat (
        id UUID PRIMARY KEY,
        is_group BOOLEAN NOT NULL DEFAULT false,
        group_name TEXT,
        last_message_id UUID,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_participant (
        chat_id UUID NOT NULL REFERENCES chat(id) ON DELETE CASCADE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        position INT NOT NULL,
        PRIMARY KEY (chat_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message (
        id UUID PRIMARY KEY,
        chat_id UUID NOT NULL REFERENCES chat(id) ON DELETE CASCADE,
        sender_id UUID NOT NULL REFERENCES app_user(id),
        text TEXT NOT NULL,
        seq BIGSERIAL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_read (
        message_id UUID NOT NULL REFERENCES message(id) ON DELETE CASCADE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        read_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
        PRIMARY KEY (message_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS post (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        content TEXT NOT NULL,
        code_snippet JSONB,
        images JSONB NOT NULL DEFAULT '[]'::jsonb,
        seq BIGSERIAL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS post_like (
        post_id UUID NOT NULL REFERENCES post(id) ON DELETE CASCADE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        liked_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
        PRIMARY KEY (post_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS post_comment (
        id UUID PRIMARY KEY,
        post_id UUID NOT NULL REFERENCES post(id) ON DELETE CASCADE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        text TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS comment_like (
        comment_id UUID NOT NULL REFERENCES post_comment(id) ON DELETE CASCADE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        liked_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp(),
        PRIMARY KEY (comment_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS comment_reply (
        id UUID PRIMARY KEY,
        comment_id UUID NOT NULL REFERENCES post_comment(id) ON DELETE CASCADE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        text TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    )
    """,
]


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _json_value(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return None
    return raw


class PostgresStore:
    """Postgres-backed store for users, the follow graph, chats and posts."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    def _user_from_row(self, conn, row: Dict[str, Any]) -> User:
        user_id = str(row["id"])
        following = conn.execute(
            "SELECT followee_id FROM user_follow WHERE follower_id = %s", (user_id,)
        ).fetchall()
        followers = conn.execute(
            "SELECT follower_id FROM user_follow WHERE followee_id = %s", (user_id,)
        ).fetchall()
        return User(
            id=user_id,
            username=row["username"],
            email=row["email"],
            avatar_url=row.get("avatar_url"),
            following={str(r["followee_id"]) for r in following},
            followers={str(r["follower_id"]) for r in followers},
            created_at=row.get("created_at", utcnow()),
        )

    def _chat_from_row(self, conn, row: Dict[str, Any]) -> Chat:
        participants = conn.execute(
            "SELECT user_id FROM chat_participant WHERE chat_id = %s ORDER BY position",
            (row["id"],),
        ).fetchall()
        last_message_id = row.get("last_message_id")
        return Chat(
            id=str(row["id"]),
            participants=[str(p["user_id"]) for p in participants],
            is_group=bool(row.get("is_group", False)),
            group_name=row.get("group_name"),
            last_message_id=str(last_message_id) if last_message_id else None,
            created_at=row.get("created_at", utcnow()),
            updated_at=row.get("updated_at", utcnow()),
        )

    def _message_from_row(self, conn, row: Dict[str, Any]) -> Message:
        readers = conn.execute(
            "SELECT user_id FROM message_read WHERE message_id = %s ORDER BY read_at",
            (row["id"],),
        ).fetchall()
        return Message(
            id=str(row["id"]),
            chat_id=str(row["chat_id"]),
            sender_id=str(row["sender_id"]),
            text=row["text"],
            read_by=[str(r["user_id"]) for r in readers],
            created_at=row.get("created_at", utcnow()),
        )

    def _post_from_row(self, conn, row: Dict[str, Any]) -> Post:
        post_id = row["id"]
        likes = conn.execute(
            "SELECT user_id FROM post_like WHERE post_id = %s ORDER BY liked_at",
            (post_id,),
        ).fetchall()
        comment_rows = conn.execute(
            "SELECT * FROM post_comment WHERE post_id = %s ORDER BY created_at",
            (post_id,),
        ).fetchall()
        comments: List[Comment] = []
        for c in comment_rows:
            comment_likes = conn.execute(
                "SELECT user_id FROM comment_like WHERE comment_id = %s ORDER BY liked_at",
                (c["id"],),
            ).fetchall()
            replies = conn.execute(
                "SELECT * FROM comment_reply WHERE comment_id = %s ORDER BY created_at",
                (c["id"],),
            ).fetchall()
            comments.append(
                Comment(
                    id=str(c["id"]),
                    user_id=str(c["user_id"]),
                    text=c["text"],
                    likes=[str(r["user_id"]) for r in comment_likes],
                    replies=[
                        Reply(
                            id=str(r["id"]),
                            user_id=str(r["user_id"]),
                            text=r["text"],
                            created_at=r.get("created_at", utcnow()),
                        )
                        for r in replies
                    ],
                    created_at=c.get("created_at", utcnow()),
                )
            )
        return Post(
            id=str(post_id),
            user_id=str(row["user_id"]),
            content=row["content"],
            code_snippet=_json_value(row.get("code_snippet")),
            images=list(_json_value(row.get("images")) or []),
            likes=[str(r["user_id"]) for r in likes],
            comments=comments,
            created_at=row.get("created_at", utcnow()),
            updated_at=row.get("updated_at", utcnow()),
        )

    # users
    def create_user(
        self,
        username: str,
        email: str,
        *,
        avatar_url: Optional[str] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        now = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, avatar_url, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (user_id, username, email, avatar_url, now),
                )
        except errors.UniqueViolation as exc:
            field = "email" if "email" in str(exc) else "username"
            raise DuplicateEntry(f"{field} already exists", {"field": field})
        return User(
            id=user_id,
            username=username,
            email=email,
            avatar_url=avatar_url,
            created_at=now,
        )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise MissingReference(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            try:
                row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s", (user_id,)
                ).fetchone()
            except errors.InvalidTextRepresentation:
                return None
            return self._user_from_row(conn, row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
            return self._user_from_row(conn, row) if row else None

    def find_user(
        self, *, username: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s OR email = %s LIMIT 1",
                (username, email),
            ).fetchone()
            return self._user_from_row(conn, row) if row else None

    def get_users(self, user_ids: Iterable[str]) -> List[User]:
        ids = [uid for uid in user_ids if _is_uuid(uid)]
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user WHERE id = ANY(%s::uuid[])", (ids,)
            ).fetchall()
            by_id = {str(r["id"]): self._user_from_row(conn, r) for r in rows}
        return [by_id[uid] for uid in ids if uid in by_id]

    def list_suggestions(self, user_id: str, limit: int = 10) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT u.* FROM app_user u
                WHERE u.id <> %s
                  AND NOT EXISTS (
                    SELECT 1 FROM user_follow f
                    WHERE f.follower_id = %s AND f.followee_id = u.id
                  )
                ORDER BY u.created_at
                LIMIT %s
                """,
                (user_id, user_id, limit),
            ).fetchall()
            return [self._user_from_row(conn, r) for r in rows]

    # social graph
    def add_follow(self, follower_id: str, followee_id: str) -> bool:
        if follower_id == followee_id:
            raise ConstraintViolation("cannot follow self", {"user_id": follower_id})
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO user_follow (follower_id, followee_id)
                    VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (follower_id, followee_id),
                )
                return cur.rowcount == 1
        except errors.ForeignKeyViolation:
            raise MissingReference(
                "follow target missing",
                {"follower_id": follower_id, "followee_id": followee_id},
            )

    def remove_follow(self, follower_id: str, followee_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_follow WHERE follower_id = %s AND followee_id = %s",
                (follower_id, followee_id),
            )
            return cur.rowcount == 1

    def reconcile_follow_graph(self) -> int:
        """A single edge table cannot diverge; only self-edges are pruned."""
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM user_follow WHERE follower_id = followee_id")
            return max(cur.rowcount, 0)

    # chat
    def create_chat(
        self,
        participants: Sequence[str],
        *,
        is_group: bool = False,
        group_name: Optional[str] = None,
    ) -> Chat:
        chat_id = str(uuid.uuid4())
        now = utcnow()
        members = list(dict.fromkeys(participants))
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        INSERT INTO chat (id, is_group, group_name, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (chat_id, is_group, group_name, now, now),
                    )
                    for position, user_id in enumerate(members):
                        conn.execute(
                            "INSERT INTO chat_participant (chat_id, user_id, position) VALUES (%s, %s, %s)",
                            (chat_id, user_id, position),
                        )
        except errors.ForeignKeyViolation:
            raise MissingReference("chat participant missing", {"user_ids": members})
        return Chat(
            id=chat_id,
            participants=members,
            is_group=is_group,
            group_name=group_name,
            created_at=now,
            updated_at=now,
        )

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        with self._connect() as conn:
            try:
                row = conn.execute("SELECT * FROM chat WHERE id = %s", (chat_id,)).fetchone()
            except errors.InvalidTextRepresentation:
                return None
            return self._chat_from_row(conn, row) if row else None

    def list_chats_for_user(self, user_id: str) -> List[Chat]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT c.* FROM chat c
                JOIN chat_participant p ON p.chat_id = c.id AND p.user_id = %s
                ORDER BY c.updated_at DESC
                """,
                (user_id,),
            ).fetchall()
            return [self._chat_from_row(conn, r) for r in rows]

    def set_last_message(self, chat_id: str, message_id: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE chat SET last_message_id = %s, updated_at = now() WHERE id = %s",
                (message_id, chat_id),
            )
            if cur.rowcount == 0:
                raise MissingReference("chat not found", {"chat_id": chat_id})

    def reconcile_chat_pointers(self) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                WITH newest AS (
                    SELECT DISTINCT ON (chat_id) chat_id, id, created_at
                    FROM message
                    ORDER BY chat_id, seq DESC
                )
                UPDATE chat c
                SET last_message_id = n.id, updated_at = n.created_at
                FROM newest n
                WHERE c.id = n.chat_id
                  AND c.last_message_id IS DISTINCT FROM n.id
                """
            )
            repaired = max(cur.rowcount, 0)
        if repaired:
            self.logger.info("chat_pointers_reconciled", repaired=repaired)
        return repaired

    def create_message(self, chat_id: str, sender_id: str, text: str) -> Message:
        msg_id = str(uuid.uuid4())
        now = utcnow()
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        "INSERT INTO message (id, chat_id, sender_id, text, created_at) VALUES (%s, %s, %s, %s, %s)",
                        (msg_id, chat_id, sender_id, text, now),
                    )
                    conn.execute(
                        "INSERT INTO message_read (message_id, user_id) VALUES (%s, %s)",
                        (msg_id, sender_id),
                    )
        except errors.ForeignKeyViolation:
            raise MissingReference("chat not found", {"chat_id": chat_id})
        return Message(
            id=msg_id,
            chat_id=chat_id,
            sender_id=sender_id,
            text=text,
            read_by=[sender_id],
            created_at=now,
        )

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._connect() as conn:
            try:
                row = conn.execute(
                    "SELECT * FROM message WHERE id = %s", (message_id,)
                ).fetchone()
            except errors.InvalidTextRepresentation:
                return None
            return self._message_from_row(conn, row) if row else None

    def list_messages(self, chat_id: str, *, skip: int = 0, limit: int = 20) -> List[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM message WHERE chat_id = %s ORDER BY seq DESC OFFSET %s LIMIT %s",
                (chat_id, skip, limit),
            ).fetchall()
            return [self._message_from_row(conn, r) for r in rows]

    def add_message_reader(self, message_id: str, user_id: str) -> Optional[Message]:
        if not _is_uuid(message_id):
            return None
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM message WHERE id = %s", (message_id,)
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    """
                    INSERT INTO message_read (message_id, user_id) VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (message_id, user_id),
                )
            return self._message_from_row(conn, row)

    # posts
    def create_post(
        self,
        user_id: str,
        content: str,
        *,
        code_snippet: Optional[Dict[str, str]] = None,
        images: Optional[List[str]] = None,
    ) -> Post:
        post_id = str(uuid.uuid4())
        now = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO post (id, user_id, content, code_snippet, images, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        post_id,
                        user_id,
                        content,
                        json.dumps(code_snippet) if code_snippet else None,
                        json.dumps(list(images or [])),
                        now,
                        now,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise MissingReference("post author missing", {"user_id": user_id})
        return Post(
            id=post_id,
            user_id=user_id,
            content=content,
            code_snippet=code_snippet,
            images=list(images or []),
            created_at=now,
            updated_at=now,
        )

    def get_post(self, post_id: str) -> Optional[Post]:
        with self._connect() as conn:
            try:
                row = conn.execute("SELECT * FROM post WHERE id = %s", (post_id,)).fetchone()
            except errors.InvalidTextRepresentation:
                return None
            return self._post_from_row(conn, row) if row else None

    def list_posts(
        self, *, skip: int = 0, limit: int = 10, user_id: Optional[str] = None
    ) -> List[Post]:
        with self._connect() as conn:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM post WHERE user_id = %s ORDER BY seq DESC OFFSET %s LIMIT %s",
                    (user_id, skip, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM post ORDER BY seq DESC OFFSET %s LIMIT %s",
                    (skip, limit),
                ).fetchall()
            return [self._post_from_row(conn, r) for r in rows]

    def delete_post(self, post_id: str) -> bool:
        if not _is_uuid(post_id):
            return False
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM post WHERE id = %s", (post_id,))
            return cur.rowcount == 1

    def _toggle(self, conn, table: str, key: str, key_id: str, user_id: str) -> bool:
        removed = conn.execute(
            f"DELETE FROM {table} WHERE {key} = %s AND user_id = %s RETURNING user_id",
            (key_id, user_id),
        ).fetchone()
        if removed:
            return False
        conn.execute(
            f"INSERT INTO {table} ({key}, user_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
            (key_id, user_id),
        )
        return True

    def toggle_post_like(self, post_id: str, user_id: str) -> Optional[tuple[Post, bool]]:
        if not _is_uuid(post_id):
            return None
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM post WHERE id = %s FOR UPDATE", (post_id,)
                ).fetchone()
                if not row:
                    return None
                liked = self._toggle(conn, "post_like", "post_id", post_id, user_id)
                row = conn.execute(
                    "UPDATE post SET updated_at = now() WHERE id = %s RETURNING *",
                    (post_id,),
                ).fetchone()
            return self._post_from_row(conn, row), liked

    def add_comment(self, post_id: str, user_id: str, text: str) -> Optional[Post]:
        if not _is_uuid(post_id):
            return None
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "UPDATE post SET updated_at = now() WHERE id = %s RETURNING *",
                    (post_id,),
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    "INSERT INTO post_comment (id, post_id, user_id, text) VALUES (%s, %s, %s, %s)",
                    (str(uuid.uuid4()), post_id, user_id, text),
                )
            return self._post_from_row(conn, row)

    def delete_comment(self, post_id: str, comment_id: str) -> Optional[Post]:
        if not (_is_uuid(post_id) and _is_uuid(comment_id)):
            return None
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "UPDATE post SET updated_at = now() WHERE id = %s RETURNING *",
                    (post_id,),
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    "DELETE FROM post_comment WHERE id = %s AND post_id = %s",
                    (comment_id, post_id),
                )
            return self._post_from_row(conn, row)

    def add_reply(
        self, post_id: str, comment_id: str, user_id: str, text: str
    ) -> Optional[Post]:
        if not (_is_uuid(post_id) and _is_uuid(comment_id)):
            return None
        with self._connect() as conn:
            with conn.transaction():
                exists = conn.execute(
                    "SELECT 1 FROM post_comment WHERE id = %s AND post_id = %s",
                    (comment_id, post_id),
                ).fetchone()
                if not exists:
                    return None
                conn.execute(
                    "INSERT INTO comment_reply (id, comment_id, user_id, text) VALUES (%s, %s, %s, %s)",
                    (str(uuid.uuid4()), comment_id, user_id, text),
                )
                row = conn.execute(
                    "UPDATE post SET updated_at = now() WHERE id = %s RETURNING *",
                    (post_id,),
                ).fetchone()
            return self._post_from_row(conn, row)

    def toggle_comment_like(
        self, post_id: str, comment_id: str, user_id: str
    ) -> Optional[tuple[Post, bool]]:
        if not (_is_uuid(post_id) and _is_uuid(comment_id)):
            return None
        with self._connect() as conn:
            with conn.transaction():
                exists = conn.execute(
                    "SELECT 1 FROM post_comment WHERE id = %s AND post_id = %s FOR UPDATE",
                    (comment_id, post_id),
                ).fetchone()
                if not exists:
                    return None
                liked = self._toggle(conn, "comment_like", "comment_id", comment_id, user_id)
                row = conn.execute("SELECT * FROM post WHERE id = %s", (post_id,)).fetchone()
            return self._post_from_row(conn, row), liked
