"""
SQLAlchemy Models for the Edge Flush URL/Tag store

Two tables:
1. edge_flush_urls - every cachable URL we have seen, content-addressed by hash
2. edge_flush_tags - which entity tags contributed to which URL

Rows are never deleted by the engine. Lifecycle is carried by flags:
    FRESH    obsolete=false, was_purged_at=NULL
    OBSOLETE obsolete=true,  was_purged_at=NULL   (content changed, purge pending)
    PURGED   obsolete=true,  was_purged_at=<ts>   (CDN confirmed, waiting for warm-up)
"""

from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime,
    ForeignKey, Index,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import expression

Base = declarative_base()


class Url(Base):
    """URLs served through the CDN"""
    __tablename__ = "edge_flush_urls"

    id = Column(Integer, primary_key=True, autoincrement=True)

    url = Column(String(255), nullable=False)
    url_hash = Column(String(40), nullable=False, unique=True)

    # Popularity, used to purge busiest pages first
    hits = Column(Integer, nullable=False, default=1)

    is_valid = Column(Boolean, nullable=False, default=True, server_default=expression.true())
    obsolete = Column(Boolean, nullable=False, default=False, server_default=expression.false())
    was_purged_at = Column(DateTime, nullable=True)
    invalidation_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tags = relationship("Tag", back_populates="url")

    __table_args__ = (
        Index("idx_edge_flush_url_state", "obsolete", "was_purged_at", "is_valid"),
        Index("idx_edge_flush_url_hits", "hits"),
    )

    def __repr__(self) -> str:
        return f"<Url {self.id} {self.url} obsolete={self.obsolete} purged={self.was_purged_at}>"


class Tag(Base):
    """URL <-> entity tag association (append-only, idempotent on index)"""
    __tablename__ = "edge_flush_tags"

    # sha1("{url_id}-{edge_tag}-{model}")
    index = Column(String(40), primary_key=True)

    url_id = Column(Integer, ForeignKey("edge_flush_urls.id"), nullable=False)

    # Aggregate edge tag sent to the CDN
    tag = Column(String(255), nullable=False)

    # Entity tag name, e.g. "Post-1@title"
    model = Column(String(255), nullable=False)

    is_valid = Column(Boolean, nullable=False, default=True, server_default=expression.true())
    obsolete = Column(Boolean, nullable=False, default=False, server_default=expression.false())

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    url = relationship("Url", back_populates="tags")

    __table_args__ = (
        Index("idx_edge_flush_tag_model", "model"),
        Index("idx_edge_flush_tag_url", "url_id"),
        Index("idx_edge_flush_tag_tag", "tag"),
    )
