"""
SQLAlchemy tables for articles and their references, plus the repository
the handlers use to read and write them.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import Column, ForeignKey, Integer, String, create_engine, func, select
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from reference_admin.errors import Violation

MAX_FILENAME_LENGTH = 255

Base = declarative_base()


class ArticleRow(Base):
    __tablename__ = "articles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=True, unique=True)
    author = Column(String(180), nullable=True, index=True)

    references = relationship(
        "ArticleReferenceRow",
        back_populates="article",
        cascade="all, delete-orphan",
        order_by="ArticleReferenceRow.position",
    )


class ArticleReferenceRow(Base):
    __tablename__ = "article_references"

    id = Column(Integer, primary_key=True, autoincrement=True)
    article_id = Column(
        Integer, ForeignKey("articles.id"), nullable=False, index=True
    )
    filename = Column(String(255), nullable=False)
    original_filename = Column(String(255), nullable=False)
    mime_type = Column(String(255), nullable=False)
    position = Column(Integer, nullable=False, default=0)

    article = relationship("ArticleRow", back_populates="references")

    def validate(self) -> list[Violation]:
        name = self.original_filename
        if name is None or not name.strip():
            return [Violation("originalFilename", "This value should not be blank.")]
        if len(name) > MAX_FILENAME_LENGTH:
            return [
                Violation(
                    "originalFilename",
                    f"This value is too long. It should have {MAX_FILENAME_LENGTH} "
                    "characters or less.",
                )
            ]
        return []


class Database:
    """
    Engine and session factory. Accepts any SQLAlchemy URL (Postgres in
    production, SQLite for local runs and tests).
    """

    def __init__(self, database_url: Optional[str] = None):
        url = database_url or "sqlite+pysqlite:///:memory:"
        engine_kwargs: dict = {"future": True}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in url:
                # One shared connection so every session sees the same tables.
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["pool_pre_ping"] = True
            engine_kwargs["pool_recycle"] = 1800
        self.engine = create_engine(url, **engine_kwargs)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)


class ReferenceRepository:
    """Explicit queries over one request-scoped session."""

    def __init__(self, session: Session):
        self.session = session

    def get_article(self, article_id: int) -> Optional[ArticleRow]:
        return self.session.get(ArticleRow, article_id)

    def get_reference(self, reference_id: int) -> Optional[ArticleReferenceRow]:
        return self.session.get(ArticleReferenceRow, reference_id)

    def list_references(self, article_id: int) -> list[ArticleReferenceRow]:
        stmt = (
            select(ArticleReferenceRow)
            .where(ArticleReferenceRow.article_id == article_id)
            .order_by(ArticleReferenceRow.position.asc(), ArticleReferenceRow.id.asc())
        )
        return list(self.session.execute(stmt).scalars())

    def next_position(self, article_id: int) -> int:
        stmt = select(func.max(ArticleReferenceRow.position)).where(
            ArticleReferenceRow.article_id == article_id
        )
        current = self.session.execute(stmt).scalar_one_or_none()
        return 0 if current is None else current + 1

    def add_reference(
        self,
        article: ArticleRow,
        *,
        filename: str,
        original_filename: str,
        mime_type: str,
    ) -> ArticleReferenceRow:
        reference = ArticleReferenceRow(
            article=article,
            filename=filename,
            original_filename=original_filename,
            mime_type=mime_type,
            position=self.next_position(article.id),
        )
        self.session.add(reference)
        return reference

    def remove_reference(self, reference: ArticleReferenceRow) -> None:
        self.session.delete(reference)

    def list_stored_filenames(self) -> set[str]:
        stmt = select(ArticleReferenceRow.filename)
        return set(self.session.execute(stmt).scalars())
