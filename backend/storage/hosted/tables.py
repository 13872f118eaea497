"""
ORM models for the hosted (multi-tenant) store.

Only `projects` carries the tenant column; artifacts and versions belong to
a tenant through their project. Case-insensitive uniqueness uses unique
expression indexes on lower(...), matching the lower(...) lookups in the
stores.
"""

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    literal_column,
)
from sqlalchemy.orm import declarative_base

from ..utils import utc_now

Base = declarative_base()


class ProjectRow(Base):
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    status = Column(String(16), nullable=False, default="active")
    config = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class ArtifactRow(Base):
    __tablename__ = "artifacts"

    id = Column(String(36), primary_key=True)
    project_id = Column(
        String(36),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title = Column(Text, nullable=False)
    artifact_type = Column(String(32), nullable=False)
    content = Column(Text, nullable=False)
    summary = Column(Text, nullable=True)
    priority = Column(String(16), nullable=False, default="normal")
    tags = Column(JSON, nullable=False, default=list)
    version = Column(Integer, nullable=False, default=1)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class ArtifactVersionRow(Base):
    __tablename__ = "artifact_versions"

    id = Column(String(36), primary_key=True)
    artifact_id = Column(
        String(36),
        ForeignKey("artifacts.id", ondelete="CASCADE"),
        nullable=False,
    )
    version = Column(Integer, nullable=False)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    summary = Column(Text, nullable=True)
    priority = Column(String(16), nullable=True)
    change_source = Column(String(16), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class ApiKeyRow(Base):
    __tablename__ = "api_keys"

    id = Column(String(36), primary_key=True)
    key_hash = Column(String(64), nullable=False, unique=True)
    user_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)


def search_document():
    """Weighted text the full-text index and ranking are computed over."""
    english = literal_column("'english'")
    return (
        func.setweight(func.to_tsvector(english, ArtifactRow.title), literal_column("'A'"))
        .op("||")(
            func.setweight(
                func.to_tsvector(english, func.coalesce(ArtifactRow.summary, "")),
                literal_column("'B'"),
            )
        )
        .op("||")(
            func.setweight(func.to_tsvector(english, ArtifactRow.content), literal_column("'C'"))
        )
    )


Index(
    "uq_projects_user_lower_name",
    ProjectRow.user_id,
    func.lower(ProjectRow.name),
    unique=True,
)
Index(
    "uq_artifacts_project_lower_title",
    ArtifactRow.project_id,
    func.lower(ArtifactRow.title),
    unique=True,
)
Index("ix_artifacts_archived_at", ArtifactRow.archived_at)
Index(
    "ix_artifact_versions_artifact_version",
    ArtifactVersionRow.artifact_id,
    ArtifactVersionRow.version.desc(),
)
Index("ix_artifacts_search", search_document(), postgresql_using="gin").ddl_if(
    dialect="postgresql"
)
