"""Tests for PostService: ownership, toggles, comments and author population."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from devconnect.service.errors import AuthorizationError, NotFoundError, ValidationError
from devconnect.service.posts import PostService
from devconnect.service.tokens import Identity


def _identity(user):
    return Identity(id=user.id, username=user.username)


@pytest.fixture
def people(store):
    alice = store.create_user("alice", "alice@example.com", avatar_url="https://img/a.png")
    bob = store.create_user("bob", "bob@example.com")
    return alice, bob


@pytest.fixture
def posts(store):
    return PostService(store, page_size=2)


class TestCreatePost:
    def test_requires_content(self, posts, people):
        alice, _ = people

        with pytest.raises(ValidationError, match="Content is required"):
            posts.create_post(_identity(alice), "  ")

    def test_image_limit(self, posts, people):
        alice, _ = people

        with pytest.raises(ValidationError):
            posts.create_post(
                _identity(alice),
                "gallery",
                images=[f"https://img/{i}.png" for i in range(4)],
            )

    def test_snippet_needs_code(self, posts, people):
        alice, _ = people

        with pytest.raises(ValidationError):
            posts.create_post(_identity(alice), "look", code_snippet={"language": "py"})

    def test_payload_populates_author(self, posts, people):
        alice, _ = people
        post = posts.create_post(
            _identity(alice),
            "my first post",
            code_snippet={"code": "print(1)", "language": "python"},
        )

        payload = posts.to_payload(post)

        assert payload["user"] == {
            "id": alice.id,
            "username": "alice",
            "avatarUrl": "https://img/a.png",
        }
        assert payload["codeSnippet"]["code"] == "print(1)"
        assert payload["likes"] == []


class TestFeed:
    def test_newest_first_and_paged(self, posts, people):
        alice, bob = people
        for i in range(3):
            posts.create_post(_identity(alice if i % 2 == 0 else bob), f"post {i}")

        first = posts.feed(1)
        second = posts.feed(2)

        assert [p.content for p in first] == ["post 2", "post 1"]
        assert [p.content for p in second] == ["post 0"]

    def test_filter_by_author(self, posts, people):
        alice, bob = people
        posts.create_post(_identity(alice), "from alice")
        posts.create_post(_identity(bob), "from bob")

        assert [p.content for p in posts.feed(1, user_id=bob.id)] == ["from bob"]


class TestDeletePost:
    def test_only_owner_may_delete(self, posts, people):
        alice, bob = people
        post = posts.create_post(_identity(alice), "mine")

        with pytest.raises(AuthorizationError):
            posts.delete_post(_identity(bob), post.id)

        posts.delete_post(_identity(alice), post.id)
        with pytest.raises(NotFoundError):
            posts.get_post(post.id)


class TestLikes:
    def test_toggle_twice_restores_original(self, posts, people):
        alice, bob = people
        post = posts.create_post(_identity(alice), "like me")

        liked_post, liked = posts.toggle_like(_identity(bob), post.id)
        assert liked is True
        assert liked_post.likes == [bob.id]

        unliked_post, liked = posts.toggle_like(_identity(bob), post.id)
        assert liked is False
        assert unliked_post.likes == []

    def test_concurrent_likes_are_not_lost(self, posts, store):
        author = store.create_user("author", "author@example.com")
        fans = [store.create_user(f"fan{i}", f"fan{i}@example.com") for i in range(20)]
        post = posts.create_post(_identity(author), "popular")

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda u: posts.toggle_like(_identity(u), post.id), fans))

        assert sorted(posts.get_post(post.id).likes) == sorted(u.id for u in fans)

    def test_missing_post(self, posts, people):
        alice, _ = people

        with pytest.raises(NotFoundError):
            posts.toggle_like(_identity(alice), "missing")


class TestComments:
    def test_comment_reply_and_like(self, posts, people):
        alice, bob = people
        post = posts.create_post(_identity(alice), "discuss")

        post = posts.add_comment(_identity(bob), post.id, "nice")
        comment = post.comments[0]
        post = posts.reply(_identity(alice), post.id, comment.id, "thanks")
        post, comment, liked = posts.toggle_comment_like(_identity(alice), post.id, comment.id)

        assert liked is True
        assert comment.likes == [alice.id]
        payload = posts.to_payload(post)
        assert payload["comments"][0]["user"]["username"] == "bob"
        assert payload["comments"][0]["replies"][0]["user"]["username"] == "alice"
        assert payload["comments"][0]["replies"][0]["text"] == "thanks"

    def test_comment_delete_by_author_or_post_owner(self, posts, store, people):
        alice, bob = people
        carol = store.create_user("carol", "carol@example.com")
        post = posts.create_post(_identity(alice), "discuss")
        post = posts.add_comment(_identity(bob), post.id, "first")
        post = posts.add_comment(_identity(bob), post.id, "second")
        first, second = post.comments

        with pytest.raises(AuthorizationError):
            posts.delete_comment(_identity(carol), post.id, first.id)

        post = posts.delete_comment(_identity(bob), post.id, first.id)
        post = posts.delete_comment(_identity(alice), post.id, second.id)
        assert post.comments == []

    def test_reply_to_missing_comment(self, posts, people):
        alice, _ = people
        post = posts.create_post(_identity(alice), "discuss")

        with pytest.raises(NotFoundError, match="Comment not found"):
            posts.reply(_identity(alice), post.id, "missing", "hello?")

    def test_empty_comment_rejected(self, posts, people):
        alice, _ = people
        post = posts.create_post(_identity(alice), "discuss")

        with pytest.raises(ValidationError):
            posts.add_comment(_identity(alice), post.id, "")
