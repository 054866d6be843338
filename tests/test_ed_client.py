"""
Tests for the Ed API client, against an httpx mock transport.
"""

from datetime import datetime, timezone

import httpx
import pytest

from services.forumsync.ed_client import (
    EdClient,
    EnvTokenProvider,
    StaticTokenProvider,
    parse_comments,
)
from services.forumsync.utils import (
    AuthError,
    EdAPIError,
    MalformedResponseError,
    RateLimitError,
    RequestTimeoutError,
)

BASE_URL = "https://ed.test/api"


def raw_thread(thread_id, course_id=1, updated_at="2025-03-01T12:00:00Z"):
    return {
        "id": thread_id,
        "user_id": 7,
        "course_id": course_id,
        "title": f"Thread {thread_id}",
        "content": "<document><paragraph>Body</paragraph></document>",
        "document": "Body",
        "category": "General",
        "type": "question",
        "number": thread_id,
        "created_at": "2025-01-01T00:00:00Z",
        "updated_at": updated_at,
    }


class PagedThreads:
    """Serves a course's thread listing with offset pagination."""

    def __init__(self, threads=None, infinite=False):
        self.threads = threads or []
        self.infinite = infinite
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        limit = int(request.url.params["limit"])
        offset = int(request.url.params["offset"])

        if self.infinite:
            page = [raw_thread(offset + i + 1) for i in range(limit)]
        else:
            page = self.threads[offset:offset + limit]

        return httpx.Response(200, json={"threads": page, "users": []})


def make_client(handler, **kwargs) -> EdClient:
    return EdClient(
        StaticTokenProvider("secret-token"),
        base_url=BASE_URL,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestPagination:
    """Test get_all_threads pagination."""

    def test_partial_last_page_stops(self):
        """A short page should end pagination."""
        handler = PagedThreads([raw_thread(i) for i in range(1, 251)])
        client = make_client(handler, page_size=100)

        threads = client.get_all_threads(1)

        assert len(handler.requests) == 3
        assert len(threads) == 250
        assert len({t.id for t in threads}) == 250
        offsets = [int(r.url.params["offset"]) for r in handler.requests]
        assert offsets == [0, 100, 200]

    def test_empty_page_stops(self):
        """An empty page should end pagination."""
        handler = PagedThreads([raw_thread(i) for i in range(1, 201)])
        client = make_client(handler, page_size=100)

        threads = client.get_all_threads(1)

        assert len(handler.requests) == 3
        assert len(threads) == 200

    def test_always_full_pages_stop_at_safety_cap(self):
        """Endless full pages should stop at the thread cap."""
        handler = PagedThreads(infinite=True)
        client = make_client(handler, page_size=100, max_threads=300)

        threads = client.get_all_threads(1)

        assert len(handler.requests) == 3
        assert len(threads) == 300

    def test_duplicates_across_pages_are_dropped(self):
        """A thread seen on an earlier page should not repeat."""
        threads = [raw_thread(i) for i in range(1, 4)] + [raw_thread(3), raw_thread(4)]
        handler = PagedThreads(threads)
        client = make_client(handler, page_size=3)

        result = client.get_all_threads(1)

        assert [t.id for t in result] == [1, 2, 3, 4]

    def test_since_is_sent_and_rechecked_locally(self):
        """Since should be sent to Ed and re-applied to results."""
        threads = [
            raw_thread(1, updated_at="2025-03-10T00:00:00Z"),
            raw_thread(2, updated_at="2025-02-01T00:00:00Z"),
            raw_thread(3, updated_at="2025-03-05T00:00:00Z"),
        ]
        handler = PagedThreads(threads)
        client = make_client(handler, page_size=100)
        since = datetime(2025, 3, 1, tzinfo=timezone.utc)

        result = client.get_all_threads(1, since=since)

        assert [t.id for t in result] == [1, 3]
        assert "since" in handler.requests[0].url.params
        assert handler.requests[0].url.params["sort"] == "new"

    def test_naive_since_treated_as_utc(self):
        """A naive since should be read as UTC."""
        handler = PagedThreads([raw_thread(1, updated_at="2025-03-10T00:00:00Z")])
        client = make_client(handler)

        result = client.get_all_threads(1, since=datetime(2025, 3, 1))

        assert [t.id for t in result] == [1]


class TestErrors:
    """Test HTTP failure mapping."""

    def test_unauthorized_raises_auth_error(self):
        """401 should map to AuthError."""
        client = make_client(lambda r: httpx.Response(401, text="invalid token"))

        with pytest.raises(AuthError) as exc_info:
            client.get_threads_page(1)
        assert exc_info.value.status_code == 401

    def test_rate_limit(self):
        """429 should map to RateLimitError."""
        client = make_client(lambda r: httpx.Response(429, text="too many"))

        with pytest.raises(RateLimitError) as exc_info:
            client.get_thread_details(5)
        assert exc_info.value.status_code == 429

    def test_server_error_message(self):
        """Other statuses should carry code and body in the message."""
        client = make_client(lambda r: httpx.Response(500, text="boom"))

        with pytest.raises(EdAPIError, match=r"Ed API error \(500\): boom"):
            client.get_thread_details(5)

    def test_timeout(self):
        """Transport timeouts should map to RequestTimeoutError."""
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = make_client(handler)

        with pytest.raises(RequestTimeoutError):
            client.get_thread_details(5)

    def test_non_json_body(self):
        """A non-JSON body should be a malformed response."""
        client = make_client(lambda r: httpx.Response(200, text="<html>maintenance</html>"))

        with pytest.raises(MalformedResponseError):
            client.get_thread_details(5)

    def test_missing_threads_key(self):
        """A listing without threads should be a malformed response."""
        client = make_client(lambda r: httpx.Response(200, json={"users": []}))

        with pytest.raises(MalformedResponseError):
            client.get_threads_page(1)

    def test_thread_without_id(self):
        """A thread without an id should be a malformed response."""
        bad = raw_thread(1)
        del bad["id"]
        client = make_client(lambda r: httpx.Response(200, json={"threads": [bad]}))

        with pytest.raises(MalformedResponseError):
            client.get_threads_page(1)

    def test_non_numeric_user_id(self):
        """A user id that is not an integer is a malformed response."""
        payload = {"user": {"id": "abc", "name": "Ada", "email": "ada@example.com"}, "courses": []}
        client = make_client(lambda r: httpx.Response(200, json=payload))

        with pytest.raises(MalformedResponseError, match="User has non-integer 'id'"):
            client.get_user_and_courses()

    def test_non_numeric_thread_user_id(self):
        """A page user with a non-integer id is a malformed response."""
        payload = {"threads": [raw_thread(1)], "users": [{"id": "abc", "name": "Bob"}]}
        client = make_client(lambda r: httpx.Response(200, json=payload))

        with pytest.raises(MalformedResponseError, match="Thread user has non-integer 'id'"):
            client.get_threads_page(1)

    def test_empty_token(self):
        """An empty token should fail before any request."""
        client = EdClient(
            StaticTokenProvider(""),
            base_url=BASE_URL,
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})),
        )

        with pytest.raises(AuthError):
            client.get_thread_details(1)

    def test_env_token_provider_missing(self, monkeypatch):
        """Unset token variable should raise AuthError."""
        monkeypatch.delenv("ED_TOKEN", raising=False)

        with pytest.raises(AuthError):
            EnvTokenProvider("ED_TOKEN")()


class TestUserAndCourses:
    """Test the identity call."""

    def user_payload(self, **user):
        this_year = str(datetime.now(timezone.utc).year)
        return {
            "user": {"id": 1, "name": "Ada", "email": "ada@example.com", **user},
            "courses": [
                {"course": {"id": 10, "code": "CS-101", "name": "Intro", "year": this_year,
                            "session": "Fall", "status": "active"}, "last_active": "2025-01-01"},
                {"course": {"id": 11, "code": "CS-999", "name": "Old", "year": "2001",
                            "session": "Fall", "status": "archived"}},
            ],
        }

    def test_parses_user_and_sends_bearer_token(self):
        """User and courses parse, token sent as bearer."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=self.user_payload())

        user, courses = make_client(handler).get_user_and_courses()

        assert user.email == "ada@example.com"
        assert [c.course.code for c in courses] == ["CS-101", "CS-999"]
        assert seen[0].headers["Authorization"] == "Bearer secret-token"
        assert seen[0].url.path == "/api/user"

    def test_current_year_only(self):
        """Only this year's courses should be kept when asked."""
        client = make_client(lambda r: httpx.Response(200, json=self.user_payload()))

        _, courses = client.get_user_and_courses(current_year_only=True)

        assert [c.course.id for c in courses] == [10]

    def test_incomplete_user_is_auth_error(self):
        """A user missing fields should be treated as an auth failure."""
        payload = self.user_payload(email="")
        client = make_client(lambda r: httpx.Response(200, json=payload))

        with pytest.raises(AuthError):
            client.get_user_and_courses()

    def test_missing_courses_is_auth_error(self):
        """A response without courses should be treated as an auth failure."""
        client = make_client(lambda r: httpx.Response(200, json={"user": {"id": 1}}))

        with pytest.raises(AuthError):
            client.get_user_and_courses()


class TestThreadDetails:
    """Test thread detail parsing."""

    def test_nested_comment_tree(self):
        """Answers and comments should keep their nesting."""
        payload = raw_thread(42)
        payload["accepted_id"] = 100
        payload["answers"] = [{
            "id": 100, "user_id": 3, "type": "answer", "document": "An answer",
            "created_at": "2025-01-02T00:00:00Z",
            "comments": [{
                "id": 101, "user_id": 4, "type": "comment", "parent_id": 100,
                "document": "Reply", "created_at": "2025-01-03T00:00:00Z",
                "comments": [{
                    "id": 102, "user_id": 5, "type": "comment", "parent_id": 101,
                    "document": "Deeper", "created_at": "2025-01-04T00:00:00Z",
                }],
            }],
        }]
        payload["comments"] = [{
            "id": 200, "user_id": 6, "type": "comment", "document": "Top comment",
            "created_at": "2025-01-05T00:00:00Z",
        }]
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"thread": payload})

        details = make_client(handler).get_thread_details(42)

        assert requests[0].url.path == "/api/threads/42"
        assert requests[0].url.params["view"] == "1"
        assert details.accepted_id == 100
        answer = details.answers[0]
        assert answer.type == "answer"
        assert answer.thread_id == 42
        assert answer.children[0].id == 101
        assert answer.children[0].children[0].id == 102
        assert answer.updated_at == answer.created_at
        assert details.comments[0].id == 200

    def test_missing_thread_object(self):
        """A details response without a thread should be malformed."""
        client = make_client(lambda r: httpx.Response(200, json={"ok": True}))

        with pytest.raises(MalformedResponseError):
            client.get_thread_details(1)

    def test_deeply_nested_comments_parse_iteratively(self):
        """Very deep reply chains should parse without recursion limits."""
        depth = 5000
        root = {"id": 1, "document": "x", "created_at": "2025-01-01T00:00:00Z"}
        node = root
        for i in range(2, depth + 1):
            child = {"id": i, "document": "x", "created_at": "2025-01-01T00:00:00Z"}
            node["comments"] = [child]
            node = child

        comments = parse_comments([root], thread_id=9)

        count = 0
        current = comments
        while current:
            count += 1
            current = current[0].children
        assert count == depth
