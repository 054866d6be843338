"""
Ed Discussion API client for thread polling and detail fetching.

Endpoints:
  - GET /user - Authenticated user and enrolled courses
  - GET /courses/{id}/threads?limit&sort&offset&since - One page of threads
  - GET /threads/{id}?view=1 - Thread with nested answers and comments

Pagination is offset-based. Responses are parsed into strict dataclasses;
payloads missing required identifiers raise MalformedResponseError.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

import httpx
from loguru import logger

from .utils import (
    AuthError,
    EdAPIError,
    MalformedResponseError,
    RateLimitError,
    RequestTimeoutError,
    TransientNetworkError,
)


# =============================================================================
# Token Providers
# =============================================================================

class TokenProvider(Protocol):
    """Supplies the Ed API token at request time."""

    def __call__(self) -> str: ...


class StaticTokenProvider:
    """Token provider for a token handed to us by the caller."""

    def __init__(self, token: str):
        self._token = token

    def __call__(self) -> str:
        return self._token


class EnvTokenProvider:
    """Token provider that reads an environment variable on every call."""

    def __init__(self, var_name: str = "ED_TOKEN"):
        self.var_name = var_name

    def __call__(self) -> str:
        token = os.getenv(self.var_name, "")
        if not token:
            raise AuthError(f"Environment variable {self.var_name} is not set")
        return token


# =============================================================================
# Data Types
# =============================================================================

@dataclass
class User:
    """Authenticated Ed user."""
    id: int
    name: str
    email: str


@dataclass
class Course:
    """Course as reported by Ed."""
    id: int
    code: str
    name: str
    year: str
    session: str
    status: str
    created_at: str = ""


@dataclass
class UserCourse:
    """Course enrollment with the user's last activity."""
    course: Course
    last_active: str = ""


@dataclass
class ThreadUser:
    """Participant listed alongside a page of threads."""
    id: int
    name: str
    course_role: str = ""


@dataclass
class Comment:
    """Answer or comment in a thread's discussion tree."""
    id: int
    user_id: int
    thread_id: int
    parent_id: Optional[int]
    content: str
    document: str
    type: str  # 'answer' or 'comment'
    number: int
    created_at: datetime
    updated_at: datetime
    is_anonymous: bool = False
    children: list["Comment"] = field(default_factory=list)


@dataclass
class Thread:
    """Top-level discussion post."""
    id: int
    user_id: int
    course_id: int
    title: str
    content: str
    document: str
    category: str
    type: str
    number: int
    created_at: datetime
    updated_at: datetime
    is_anonymous: bool = False
    reply_count: int = 0


@dataclass
class ThreadDetails(Thread):
    """Thread with its full answer and comment tree."""
    accepted_id: Optional[int] = None
    answers: list[Comment] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)


@dataclass
class ThreadPage:
    """One page of a course's thread listing."""
    threads: list[Thread]
    users: list[ThreadUser]
    next_offset: int


# =============================================================================
# Parsing
# =============================================================================

def parse_timestamp(value: Any, fallback: Optional[datetime] = None) -> datetime:
    """Parse an Ed ISO-8601 timestamp into an aware datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        if fallback is not None:
            return fallback
        raise MalformedResponseError("Missing timestamp")
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise MalformedResponseError(f"Invalid timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require_int(data: dict[str, Any], key: str, what: str) -> int:
    value = data.get(key)
    if value is None or isinstance(value, bool):
        raise MalformedResponseError(f"{what} is missing '{key}'")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise MalformedResponseError(f"{what} has non-integer '{key}': {value!r}") from e


def _optional_int(value: Any) -> Optional[int]:
    if value in (None, "", 0):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _int_or_zero(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def _require_dict(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise MalformedResponseError(f"{what} is not an object")
    return value


def _build_comment(raw: dict[str, Any], thread_id: int) -> Comment:
    comment_id = _require_int(raw, "id", "Comment")
    created_at = parse_timestamp(raw.get("created_at"))
    return Comment(
        id=comment_id,
        user_id=_int_or_zero(raw.get("user_id")),
        thread_id=_int_or_zero(raw.get("thread_id")) or thread_id,
        parent_id=_optional_int(raw.get("parent_id")),
        content=_str(raw.get("content")),
        document=_str(raw.get("document")),
        type="answer" if raw.get("type") == "answer" else "comment",
        number=_int_or_zero(raw.get("number")),
        created_at=created_at,
        updated_at=parse_timestamp(raw.get("updated_at"), fallback=created_at),
        is_anonymous=bool(raw.get("is_anonymous")),
    )


def parse_comments(raw_comments: Any, thread_id: int) -> list[Comment]:
    """
    Parse a list of raw comments and all their replies.

    Walks the tree with an explicit stack so deeply nested discussions
    cannot exhaust the interpreter's recursion limit.
    """
    if not isinstance(raw_comments, list):
        return []

    roots: list[Comment] = []
    stack: list[tuple[Any, list[Comment]]] = [
        (raw, roots) for raw in reversed(raw_comments)
    ]

    while stack:
        raw, siblings = stack.pop()
        raw = _require_dict(raw, "Comment")
        comment = _build_comment(raw, thread_id)
        siblings.append(comment)

        replies = raw.get("comments")
        if isinstance(replies, list):
            for reply in reversed(replies):
                stack.append((reply, comment.children))

    return roots


def parse_thread(raw: Any) -> Thread:
    """Parse a thread from a listing page."""
    raw = _require_dict(raw, "Thread")
    created_at = parse_timestamp(raw.get("created_at"))
    return Thread(
        id=_require_int(raw, "id", "Thread"),
        user_id=_int_or_zero(raw.get("user_id")),
        course_id=_require_int(raw, "course_id", "Thread"),
        title=_str(raw.get("title")),
        content=_str(raw.get("content")),
        document=_str(raw.get("document")),
        category=_str(raw.get("category")),
        type=_str(raw.get("type")),
        number=_int_or_zero(raw.get("number")),
        created_at=created_at,
        updated_at=parse_timestamp(raw.get("updated_at"), fallback=created_at),
        is_anonymous=bool(raw.get("is_anonymous")),
        reply_count=_int_or_zero(raw.get("reply_count")),
    )


def parse_thread_details(raw: Any) -> ThreadDetails:
    """Parse a thread with its answer and comment trees."""
    base = parse_thread(raw)
    return ThreadDetails(
        **base.__dict__,
        accepted_id=_optional_int(raw.get("accepted_id")),
        answers=parse_comments(raw.get("answers"), base.id),
        comments=parse_comments(raw.get("comments"), base.id),
    )


def parse_course(raw: Any) -> Course:
    raw = _require_dict(raw, "Course")
    return Course(
        id=_require_int(raw, "id", "Course"),
        code=_str(raw.get("code")),
        name=_str(raw.get("name")),
        year=_str(raw.get("year")),
        session=_str(raw.get("session")),
        status=_str(raw.get("status")),
        created_at=_str(raw.get("created_at")),
    )


# =============================================================================
# Client
# =============================================================================

class EdClient:
    """
    Ed Discussion REST API client.

    The token is pulled from a TokenProvider on every request, so a
    refreshed token is picked up without rebuilding the client.
    """

    def __init__(
        self,
        token_provider: TokenProvider | Callable[[], str],
        region: str = "eu",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        page_size: int = 100,
        max_threads: int = 20000,
        user_agent: str = "forumsync/1.0",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize Ed client.

        Args:
            token_provider: Callable returning the current API token.
            region: Ed region ('eu' or 'us'), used when base_url is not given.
            base_url: Override for the API root.
            timeout: Per-request timeout in seconds.
            page_size: Threads requested per listing page (Ed caps at 100).
            max_threads: Safety cap on threads fetched for one course.
            user_agent: User-Agent header value.
            transport: Optional httpx transport (used by tests).
        """
        self.token_provider = token_provider
        self.base_url = base_url or f"https://{region}.edstem.org/api"
        self.page_size = page_size
        self.max_threads = max_threads

        self._client = httpx.Client(
            base_url=self.base_url,
            headers={
                "Accept": "application/json",
                "User-Agent": user_agent,
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config, token_provider: TokenProvider | Callable[[], str]) -> "EdClient":
        """Build a client from an EdConfig section."""
        return cls(
            token_provider,
            region=config.region,
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            page_size=config.page_size,
            max_threads=config.max_threads,
            user_agent=config.user_agent,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "EdClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================================================================
    # Public API
    # =========================================================================

    def get_user_and_courses(
        self,
        current_year_only: bool = False,
    ) -> tuple[User, list[UserCourse]]:
        """
        Fetch the authenticated user and their enrolled courses.

        Args:
            current_year_only: Keep only courses whose year is the current year.

        Raises:
            AuthError: Token rejected or identity fields missing.
        """
        data = self._get("/user")

        user_data = data.get("user") if isinstance(data, dict) else None
        courses_data = data.get("courses") if isinstance(data, dict) else None
        if not isinstance(user_data, dict) or not isinstance(courses_data, list):
            raise AuthError("Invalid API response: missing user or courses data")

        if not user_data.get("id") or not user_data.get("name") or not user_data.get("email"):
            raise AuthError("Invalid API response: incomplete user data")

        user = User(
            id=_require_int(user_data, "id", "User"),
            name=str(user_data["name"]),
            email=str(user_data["email"]),
        )

        current_year = str(datetime.now(timezone.utc).year)
        courses = []
        for entry in courses_data:
            if not isinstance(entry, dict) or not isinstance(entry.get("course"), dict):
                continue
            course = parse_course(entry["course"])
            if current_year_only and course.year != current_year:
                continue
            courses.append(UserCourse(course=course, last_active=_str(entry.get("last_active"))))

        return user, courses

    def get_threads_page(
        self,
        course_id: int,
        limit: Optional[int] = None,
        offset: int = 0,
        since: Optional[datetime] = None,
        sort: str = "new",
    ) -> ThreadPage:
        """
        Fetch one page of threads, newest first by default.

        Args:
            course_id: Ed course ID.
            limit: Page size (defaults to the client's page size).
            offset: Number of threads to skip.
            since: Ask the server for threads updated since this time.
            sort: Ed sort order ('new', 'top', 'active').
        """
        limit = limit or self.page_size
        params: dict[str, Any] = {"limit": limit, "sort": sort, "offset": offset}
        if since is not None:
            params["since"] = since.astimezone(timezone.utc).isoformat()

        data = self._get(f"/courses/{course_id}/threads", params=params)
        if not isinstance(data, dict) or not isinstance(data.get("threads"), list):
            raise MalformedResponseError(
                f"Invalid API response: missing threads for course {course_id}"
            )

        threads = [parse_thread(raw) for raw in data["threads"]]
        users = [
            ThreadUser(
                id=_require_int(u, "id", "Thread user"),
                name=_str(u.get("name")),
                course_role=_str(u.get("course_role")),
            )
            for u in data.get("users") or []
            if isinstance(u, dict) and u.get("id") is not None
        ]

        return ThreadPage(threads=threads, users=users, next_offset=offset + len(threads))

    def get_all_threads(
        self,
        course_id: int,
        since: Optional[datetime] = None,
    ) -> list[Thread]:
        """
        Fetch every thread in a course by walking offset pages in order.

        Stops on an empty page, a short page, or the safety cap. When
        `since` is given, each thread's updated_at is re-checked locally
        because the server-side filter is not exact.

        Args:
            course_id: Ed course ID.
            since: Only return threads updated at or after this time.

        Returns:
            Threads de-duplicated by id, in page order.
        """
        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)

        limit = self.page_size
        offset = 0
        fetched = 0
        page_count = 0
        seen: set[int] = set()
        threads: list[Thread] = []

        logger.info(
            f"Fetching threads for course {course_id} (limit={limit}"
            f"{f', since={since.isoformat()}' if since else ''})"
        )

        while True:
            page_count += 1
            page = self.get_threads_page(course_id, limit=limit, offset=offset, since=since)

            if not page.threads:
                logger.debug(f"Empty page {page_count}, stopping pagination")
                break

            fetched += len(page.threads)
            for thread in page.threads:
                if thread.id in seen:
                    continue
                if since is not None and thread.updated_at < since:
                    continue
                seen.add(thread.id)
                threads.append(thread)

            offset = page.next_offset

            if len(page.threads) < limit:
                logger.debug(
                    f"Page {page_count} returned {len(page.threads)} < {limit} threads, last page"
                )
                break

            if fetched >= self.max_threads:
                logger.warning(
                    f"Hit safety cap of {self.max_threads} threads for course {course_id}, "
                    f"stopping pagination at page {page_count}"
                )
                break

            if page_count % 10 == 0:
                logger.info(f"Fetched {fetched} threads so far for course {course_id} (page {page_count})")

        if len(threads) > self.max_threads:
            threads = threads[: self.max_threads]

        logger.info(
            f"Fetched {len(threads)} threads for course {course_id} across {page_count} pages"
        )
        return threads

    def get_thread_details(self, thread_id: int) -> ThreadDetails:
        """
        Fetch one thread with its full discussion tree.

        Raises:
            MalformedResponseError: Response has no thread object.
        """
        data = self._get(f"/threads/{thread_id}", params={"view": 1})

        if not isinstance(data, dict) or not isinstance(data.get("thread"), dict):
            raise MalformedResponseError("Invalid API response: missing thread data")

        return parse_thread_details(data["thread"])

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _get(self, endpoint: str, params: Optional[dict[str, Any]] = None) -> Any:
        """
        GET an endpoint and decode JSON, translating failures into the
        error taxonomy the retry policy classifies.
        """
        token = self.token_provider()
        if not token or not token.strip():
            raise AuthError("Ed API token is empty")

        try:
            response = self._client.get(
                endpoint,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Ed API request timeout for {endpoint}: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Failed to fetch from Ed API {endpoint}: {e}") from e

        if not response.is_success:
            body = response.text
            message = f"Ed API error ({response.status_code}): {body}"
            if response.status_code == 429:
                raise RateLimitError(message, response.status_code, body)
            if response.status_code in (401, 403):
                raise AuthError(message, response.status_code, body)
            raise EdAPIError(message, response.status_code, body)

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Ed API returned non-JSON body for {endpoint}") from e
