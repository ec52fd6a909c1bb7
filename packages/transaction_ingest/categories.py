"""Category and tag resolution plus the keyword-matching fallback.

Exports
-------
- ``keyword_matches(description, keyword)``: the matching rule used when a
  transaction carries no merchant name. Both sides are normalized with
  :func:`~transaction_ingest.normalizers.normalize_text`; a multi-word
  keyword matches when every one of its words appears among the
  description's words (order and adjacency irrelevant), a single-word keyword
  matches by substring containment.
- ``resolve_category(...)`` / ``resolve_tags(...)``: case-insensitive
  find-or-create by name, safe under concurrent creation.
- ``list_category_options(...)``: the candidate list handed to the external
  classifier.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from ledger_db.models.ledger import Category, Tag
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .logging_setup import get_logger
from .normalizers import normalize_text

_logger = get_logger("transaction_ingest.categories")


@dataclass(frozen=True, slots=True)
class CategoryOption:
    id: int
    name: str
    keywords: tuple[str, ...] = ()


# ---------------------------
# Keyword matching
# ---------------------------


def keyword_matches(description: str, keyword: str) -> bool:
    desc = normalize_text(description)
    kw = normalize_text(keyword)
    if not desc or not kw:
        return False
    kw_words = kw.split()
    if len(kw_words) > 1:
        desc_words = set(desc.split())
        return all(w in desc_words for w in kw_words)
    return kw in desc


def best_keyword_match(
    categories: Iterable[CategoryOption], description: str
) -> CategoryOption | None:
    """Return the category whose matching keyword is the most specific.

    Specificity is the keyword's word count, then its normalized length;
    remaining ties go to the lowest category id.
    """

    best: tuple[int, int, int] | None = None
    chosen: CategoryOption | None = None
    for option in categories:
        for keyword in option.keywords:
            if not keyword_matches(description, keyword):
                continue
            kw = normalize_text(keyword)
            rank = (len(kw.split()), len(kw), -option.id)
            if best is None or rank > best:
                best, chosen = rank, option
    return chosen


def list_category_options(session: Session, *, user_id: int) -> list[CategoryOption]:
    rows = (
        session.execute(select(Category).where(Category.user_id == user_id).order_by(Category.id))
        .scalars()
        .all()
    )
    return [CategoryOption(id=r.id, name=r.name, keywords=tuple(r.keywords or ())) for r in rows]


# ---------------------------
# Find-or-create by name
# ---------------------------


def _clean_name(name: str) -> str:
    return " ".join(name.strip().split())


def _find_category(session: Session, user_id: int, name: str) -> Category | None:
    return (
        session.execute(
            select(Category).where(
                Category.user_id == user_id, func.lower(Category.name) == name.lower()
            )
        )
        .scalars()
        .first()
    )


def resolve_category(session: Session, *, user_id: int, name: str) -> Category:
    """Return the user's category named ``name`` (case-insensitive), creating it if absent."""

    clean = _clean_name(name)
    if not clean:
        raise ValueError("category name is empty")
    existing = _find_category(session, user_id, clean)
    if existing is not None:
        return existing
    try:
        with session.begin_nested():
            row = Category(user_id=user_id, name=clean, keywords=[])
            session.add(row)
        _logger.info("categories:created user_id=%d name=%s", user_id, clean)
        return row
    except IntegrityError:
        # Lost a creation race; the winner's row is now visible.
        existing = _find_category(session, user_id, clean)
        if existing is None:
            raise
        return existing


def _find_tag(session: Session, user_id: int, name: str) -> Tag | None:
    return (
        session.execute(
            select(Tag).where(Tag.user_id == user_id, func.lower(Tag.name) == name.lower())
        )
        .scalars()
        .first()
    )


def resolve_tags(session: Session, *, user_id: int, names: Sequence[str]) -> list[Tag]:
    """Find or create each named tag, preserving first-seen order without repeats."""

    out: list[Tag] = []
    seen: set[str] = set()
    for raw in names:
        name = _clean_name(raw)
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        tag = _find_tag(session, user_id, name)
        if tag is None:
            try:
                with session.begin_nested():
                    tag = Tag(user_id=user_id, name=name)
                    session.add(tag)
            except IntegrityError:
                tag = _find_tag(session, user_id, name)
                if tag is None:
                    raise
        out.append(tag)
    return out


__all__ = [
    "CategoryOption",
    "best_keyword_match",
    "keyword_matches",
    "list_category_options",
    "resolve_category",
    "resolve_tags",
]
