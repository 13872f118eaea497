"""
ORM mappings for the embedded store.

The schema itself is owned by the SQL migrations; these classes only map
the tables so queries can be written with SQLAlchemy expressions.
Timestamps are stored as canonical ISO-8601 text.
"""

from sqlalchemy import JSON, Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ProjectRow(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    status = Column(String, nullable=False, default="active")
    config = Column(JSON, nullable=False, default=dict)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class ArtifactRow(Base):
    __tablename__ = "artifacts"

    id = Column(String, primary_key=True)
    project_id = Column(
        String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    title = Column(Text, nullable=False)
    artifact_type = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    summary = Column(Text, nullable=True)
    priority = Column(String, nullable=False, default="normal")
    tags = Column(JSON, nullable=False, default=list)
    version = Column(Integer, nullable=False, default=1)
    archived_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class ArtifactVersionRow(Base):
    __tablename__ = "artifact_versions"

    id = Column(String, primary_key=True)
    artifact_id = Column(
        String, ForeignKey("artifacts.id", ondelete="CASCADE"), nullable=False
    )
    version = Column(Integer, nullable=False)
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False)
    summary = Column(Text, nullable=True)
    priority = Column(String, nullable=True)
    change_source = Column(String, nullable=False)
    created_at = Column(String, nullable=False)
