"""
Turns Ed threads into index documents.

One document per thread body and one per answer/comment whose cleaned text
is longer than 10 characters. Document IDs are derived only from
(type, thread_id, comment_id), so re-extracting the same thread always
yields the same IDs and upserts overwrite instead of duplicating.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from .ed_client import Comment, Thread, ThreadDetails

MIN_CONTENT_LENGTH = 10
PREVIEW_LENGTH = 200

DOCUMENT_TYPES = ("thread", "answer", "comment")

_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class IndexDocument:
    """Unit of content stored in the vector index."""
    id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return self.metadata.get("type", "")


def clean_text(content: str, document: str) -> str:
    """
    Return indexable plain text.

    Prefers Ed's plain-text `document` field; falls back to stripping tags
    from the XML/HTML `content` and collapsing whitespace.
    """
    if document and document.strip():
        return document.strip()

    text = _TAG_RE.sub(" ", content or "")
    return _WHITESPACE_RE.sub(" ", text).strip()


def make_document_id(doc_type: str, thread_id: int, comment_id: Optional[int] = None) -> str:
    """Derive a document ID: thread_{tid} or {type}_{tid}_{cid}."""
    if doc_type not in DOCUMENT_TYPES:
        raise ValueError(f"Unknown document type: {doc_type}")
    if doc_type == "thread":
        return f"thread_{thread_id}"
    if comment_id is None:
        raise ValueError(f"{doc_type} documents need a comment id")
    return f"{doc_type}_{thread_id}_{comment_id}"


def document_type_from_id(doc_id: str) -> Optional[str]:
    """Classify a document ID by its prefix."""
    for doc_type in DOCUMENT_TYPES:
        if doc_id.startswith(f"{doc_type}_"):
            return doc_type
    return None


def _thread_document(thread: Thread, text: str) -> IndexDocument:
    return IndexDocument(
        id=make_document_id("thread", thread.id),
        content=text,
        metadata={
            "course_id": thread.course_id,
            "thread_id": thread.id,
            "type": "thread",
            "title": thread.title,
            "preview_text": text[:PREVIEW_LENGTH],
            "created_at": thread.created_at.isoformat(),
            "updated_at": thread.updated_at.isoformat(),
            "author_id": thread.user_id,
            "is_anonymous": thread.is_anonymous,
        },
    )


def _comment_document(thread: Thread, comment: Comment, doc_type: str, text: str) -> IndexDocument:
    return IndexDocument(
        id=make_document_id(doc_type, thread.id, comment.id),
        content=text,
        metadata={
            "course_id": thread.course_id,
            "thread_id": thread.id,
            "comment_id": comment.id,
            "type": doc_type,
            "preview_text": text[:PREVIEW_LENGTH],
            "created_at": comment.created_at.isoformat(),
            "updated_at": comment.updated_at.isoformat(),
            "author_id": comment.user_id,
            "is_anonymous": comment.is_anonymous,
        },
    )


def extract_documents(thread: Thread | ThreadDetails) -> list[IndexDocument]:
    """
    Build index documents for a thread and, for ThreadDetails, its replies.

    Top-level answers are typed 'answer'; top-level comments and every
    nested reply are typed 'comment'. The tree is walked with an explicit
    stack in pre-order.
    """
    documents: list[IndexDocument] = []

    thread_text = clean_text(thread.content, thread.document)
    if len(thread_text) > MIN_CONTENT_LENGTH:
        documents.append(_thread_document(thread, thread_text))

    if not isinstance(thread, ThreadDetails):
        return documents

    stack: list[tuple[Comment, str]] = []
    for comment in reversed(thread.comments):
        stack.append((comment, "comment"))
    for answer in reversed(thread.answers):
        stack.append((answer, "answer"))

    while stack:
        comment, doc_type = stack.pop()

        text = clean_text(comment.content, comment.document)
        if len(text) > MIN_CONTENT_LENGTH:
            documents.append(_comment_document(thread, comment, doc_type, text))

        for child in reversed(comment.children):
            stack.append((child, "comment"))

    return documents
