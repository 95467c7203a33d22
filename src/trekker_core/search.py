"""Token-based full-text index over titles, descriptions and comments.

Postings are rewritten in the same transaction as the text they index, so
a committed entity is searchable immediately and stale tokens disappear
with the text that produced them.
"""
import logging
import re
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger("trekker-core.search")

MIN_TOKEN_LENGTH = 2

# Runs of letters/digits; underscores count as separators
_TOKEN_PATTERN = re.compile(r"[^\W_]+")

TITLE_FIELD = "title"
DESCRIPTION_FIELD = "description"
COMMENT_FIELD = "comment"


def tokenize(text: Optional[str]) -> list[str]:
    """
    Split text into distinct index tokens.

    Lowercases, splits on non-alphanumeric characters and drops tokens
    shorter than two characters. Order of first appearance is kept.

    Args:
        text: Text to tokenize (None yields no tokens)

    Returns:
        Distinct tokens
    """
    if not text:
        return []
    tokens = _TOKEN_PATTERN.findall(text.lower())
    return list(dict.fromkeys(t for t in tokens if len(t) >= MIN_TOKEN_LENGTH))


def _add_postings(
    db: Session,
    entity_id: int,
    field: str,
    text: Optional[str],
    comment_id: Optional[int] = None,
) -> int:
    tokens = tokenize(text)
    for token in tokens:
        db.add(models.SearchPosting(token=token, entity_id=entity_id, field=field, comment_id=comment_id))
    return len(tokens)


def index_entity(db: Session, entity: models.Entity, fields: Optional[list[str]] = None) -> None:
    """
    Replace the title/description postings of an entity.

    Args:
        db: Database session (inside the mutation's transaction)
        entity: Flushed entity (its primary key must be set)
        fields: Fields to re-index (defaults to title and description)
    """
    fields = fields or [TITLE_FIELD, DESCRIPTION_FIELD]
    db.query(models.SearchPosting).filter(
        models.SearchPosting.entity_id == entity.id,
        models.SearchPosting.field.in_(fields),
    ).delete(synchronize_session=False)

    count = 0
    if TITLE_FIELD in fields:
        count += _add_postings(db, entity.id, TITLE_FIELD, entity.title)
    if DESCRIPTION_FIELD in fields:
        count += _add_postings(db, entity.id, DESCRIPTION_FIELD, entity.description)
    db.flush()
    logger.debug(f"Indexed {count} tokens for {entity.human_readable_id} ({', '.join(fields)})")


def index_comment(db: Session, comment: models.Comment) -> None:
    """Post the tokens of a comment body under its owning entity."""
    count = _add_postings(db, comment.entity_id, COMMENT_FIELD, comment.body, comment_id=comment.id)
    db.flush()
    logger.debug(f"Indexed {count} tokens for comment {comment.human_readable_id}")


class SearchResult:
    """One ranked search match (an entity, plus the comments that matched)."""

    def __init__(self, entity: models.Entity, matched_tokens: int, hits: int, comment_ids: list[str]):
        self.entity = entity
        self.matched_tokens = matched_tokens
        self.hits = hits
        self.comment_ids = comment_ids

    def __repr__(self) -> str:
        return f"<SearchResult {self.entity.human_readable_id} tokens={self.matched_tokens} hits={self.hits}>"


def search(
    db: Session,
    query: str,
    kind: Optional[models.EntityKind] = None,
    status: Optional[models.EntityStatus] = None,
    limit: Optional[int] = None,
) -> list[SearchResult]:
    """
    Search entities by text.

    Every query token must occur somewhere in the entity's title,
    description or comments (AND semantics). Results are ranked by number
    of distinct matching tokens, then most recently updated, then by total
    posting hits.

    Args:
        db: Database session
        query: Free-text query (tokenized like indexed text)
        kind: Only entities of this kind
        status: Only entities in this status
        limit: Maximum number of results

    Returns:
        Ranked search results (empty when the query has no usable tokens)
    """
    tokens = tokenize(query)
    if not tokens:
        return []

    matched_tokens = func.count(func.distinct(models.SearchPosting.token)).label("matched_tokens")
    hits = func.count(models.SearchPosting.id).label("hits")

    q = (
        db.query(models.Entity, matched_tokens, hits)
        .join(models.SearchPosting, models.SearchPosting.entity_id == models.Entity.id)
        .filter(models.SearchPosting.token.in_(tokens))
    )

    if kind:
        q = q.filter(models.Entity.kind == kind)

    if status:
        q = q.filter(models.Entity.status == status)

    q = (
        q.group_by(models.Entity.id)
        .having(func.count(func.distinct(models.SearchPosting.token)) == len(tokens))
        .order_by(matched_tokens.desc(), models.Entity.updated_at.desc(), hits.desc(), models.Entity.id.desc())
    )

    if limit is not None:
        q = q.limit(limit)

    rows = q.all()
    if not rows:
        return []

    # Which comments contributed to each match
    entity_ids = [entity.id for entity, _, _ in rows]
    comment_rows = (
        db.query(models.SearchPosting.entity_id, models.Comment.id, models.Comment.human_readable_id)
        .join(models.Comment, models.Comment.id == models.SearchPosting.comment_id)
        .filter(
            models.SearchPosting.entity_id.in_(entity_ids),
            models.SearchPosting.token.in_(tokens),
        )
        .distinct()
        .order_by(models.Comment.id)
        .all()
    )
    comments_by_entity: dict[int, list[str]] = {}
    for entity_id, _, comment_hrid in comment_rows:
        comments_by_entity.setdefault(entity_id, []).append(comment_hrid)

    results = [
        SearchResult(entity, matched, hit_count, comments_by_entity.get(entity.id, []))
        for entity, matched, hit_count in rows
    ]
    logger.debug(f"Search {tokens} matched {len(results)} entities")
    return results
