"""
Course search tool for the chat assistant.

Resolves a course code against the caller's enrolled courses and runs a
semantic search over that course's synced discussions. Results are
returned as data (never raised) so the chat model can relay failures to
the student.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from loguru import logger

from .ed_client import Course, EdClient, UserCourse
from .vector_store import ForumVectorStore

DEFAULT_TOP_K = 5

TOOL_DESCRIPTION = (
    "Search for information within a specific course's discussions and Q&A. "
    "Use the course code (e.g., 'CS-250', 'MATH-101') for best results."
)


@dataclass
class CourseSearchHit:
    """One search hit, flattened for the chat model."""
    content: str
    type: str
    score: float
    thread_id: Optional[int] = None
    title: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CourseSearchResponse:
    """Result of a course search tool call."""
    success: bool
    message: str = ""
    course_id: Optional[int] = None
    course_name: Optional[str] = None
    course_code: Optional[str] = None
    results: list[CourseSearchHit] = field(default_factory=list)


def match_course(courses: list[UserCourse], course_code: str) -> Optional[Course]:
    """
    Find a course by code or name, case-insensitively.

    Exact code matches win over partial code matches, which win over
    name matches.
    """
    needle = course_code.strip().lower()
    if not needle:
        return None

    candidates = [c.course for c in courses]
    for predicate in (
        lambda c: c.code.lower() == needle,
        lambda c: needle in c.code.lower(),
        lambda c: needle in c.name.lower(),
    ):
        for course in candidates:
            if predicate(course):
                return course
    return None


class CourseSearcher:
    """Search tool bound to one user's token."""

    def __init__(
        self,
        vector_store: ForumVectorStore,
        client_factory: Callable[[str], EdClient],
        ed_token: Optional[str],
    ):
        self.vectors = vector_store
        self.client_factory = client_factory
        self.ed_token = ed_token

    def search_in_course(
        self,
        course_code: str,
        query: str,
        top_k: int = DEFAULT_TOP_K,
        content_types: Optional[list[str]] = None,
    ) -> CourseSearchResponse:
        """
        Search a course's discussions.

        Args:
            course_code: Course code (e.g. 'CS-250') or part of the course name.
            query: Natural-language query.
            top_k: Number of results.
            content_types: Restrict to 'thread', 'answer' and/or 'comment'.
        """
        logger.info(f"Course search called with course_code={course_code!r}, query={query!r}")

        if not self.ed_token:
            return CourseSearchResponse(
                success=False,
                message="ED token not provided. Please make sure you are logged into Ed Discussion.",
            )

        try:
            with self.client_factory(self.ed_token) as client:
                _, courses = client.get_user_and_courses()

            course = match_course(courses, course_code)
            if course is None:
                available = ", ".join(f"{c.course.code} ({c.course.name})" for c in courses)
                return CourseSearchResponse(
                    success=False,
                    message=f'Course "{course_code}" not found. Available course codes: {available}',
                )

            logger.debug(f"Resolved {course_code!r} to {course.code} ({course.id}), searching")

            search_filter = {"type": list(content_types)} if content_types else None
            results = self.vectors.search(query, course.id, top_k=top_k, filter=search_filter)

            logger.info(f"Course search found {len(results)} results in {course.code}")

            return CourseSearchResponse(
                success=True,
                course_id=course.id,
                course_name=course.name,
                course_code=course.code,
                results=[
                    CourseSearchHit(
                        content=r.content,
                        type=r.metadata.get("type", ""),
                        score=r.score,
                        thread_id=r.metadata.get("thread_id"),
                        title=r.metadata.get("title"),
                        metadata=r.metadata,
                    )
                    for r in results
                ],
            )

        except Exception as e:
            logger.error(f"Course search failed: {e}")
            return CourseSearchResponse(success=False, message=str(e) or "Search failed")


def format_results(response: CourseSearchResponse, max_content_length: int = 1000) -> str:
    """Render a search response as plain text for the chat model."""
    if not response.success:
        return f"Search failed: {response.message}"

    header = f"Results from {response.course_code} ({response.course_name}):"
    if not response.results:
        return f"{header}\nNo matching discussions found."

    parts = [header]
    for i, hit in enumerate(response.results, 1):
        label = hit.type or "document"
        title = f" - {hit.title}" if hit.title else ""
        thread = f" [thread {hit.thread_id}]" if hit.thread_id is not None else ""

        content = hit.content
        if len(content) > max_content_length:
            content = content[:max_content_length] + "..."

        parts.append(f"\n{i}. ({label}{thread}, score {hit.score:.3f}){title}\n{content}")

    return "\n".join(parts)
