"""
Record and input models shared by both storage backends.

Records are what the stores return; inputs are what they accept. Inputs may
also be given as plain mappings and are validated through `coerce_input`.
"""

from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from logic.tokens import estimate_tokens
from .errors import ValidationError

MAX_LIST_LIMIT = 100


class ProjectStatus(str, Enum):
    active = "active"
    archived = "archived"


class ArtifactType(str, Enum):
    document = "document"
    code = "code"
    decision = "decision"
    conversation = "conversation"
    file = "file"


class Priority(str, Enum):
    core = "core"
    normal = "normal"
    reference = "reference"


class ChangeSource(str, Enum):
    update = "update"
    archive = "archive"
    restore = "restore"
    rollback = "rollback"


# =============================================================================
# Records
# =============================================================================


class Project(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    status: ProjectStatus = ProjectStatus.active
    config: Dict[str, Any] = Field(default_factory=dict)
    created_at: str
    updated_at: str


class Artifact(BaseModel):
    id: str
    project_id: str
    title: str
    artifact_type: ArtifactType
    content: str
    summary: Optional[str] = None
    priority: Priority = Priority.normal
    tags: List[str] = Field(default_factory=list)
    version: int = 1
    archived_at: Optional[str] = None
    created_at: str
    updated_at: str

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None


class ArtifactSummary(BaseModel):
    """Listing view of an artifact: no content, plus derived size fields."""

    id: str
    project_id: str
    title: str
    artifact_type: ArtifactType
    summary: Optional[str] = None
    priority: Priority = Priority.normal
    tags: List[str] = Field(default_factory=list)
    version: int = 1
    archived_at: Optional[str] = None
    created_at: str
    updated_at: str
    size_chars: int = 0
    tokens_est: int = 0

    @classmethod
    def from_artifact(cls, artifact: Artifact) -> "ArtifactSummary":
        size_chars = len(artifact.content)
        data = artifact.model_dump(exclude={"content"})
        return cls(
            **data,
            size_chars=size_chars,
            tokens_est=estimate_tokens(size_chars),
        )


class ArtifactVersion(BaseModel):
    id: str
    artifact_id: str
    version: int
    title: str
    content: str
    summary: Optional[str] = None
    priority: Optional[Priority] = None
    change_source: ChangeSource
    created_at: str


class ArtifactVersionSummary(BaseModel):
    id: str
    artifact_id: str
    version: int
    title: str
    summary: Optional[str] = None
    priority: Optional[Priority] = None
    change_source: ChangeSource
    created_at: str
    size_chars: int = 0
    tokens_est: int = 0

    @classmethod
    def from_version(cls, version: ArtifactVersion) -> "ArtifactVersionSummary":
        size_chars = len(version.content)
        data = version.model_dump(exclude={"content"})
        return cls(
            **data,
            size_chars=size_chars,
            tokens_est=estimate_tokens(size_chars),
        )


class SearchResult(BaseModel):
    id: str
    artifact_id: str
    project_id: str
    project_name: str
    title: str
    artifact_type: ArtifactType
    summary: Optional[str] = None
    priority: Priority = Priority.normal
    snippet: str
    updated_at: str
    score: float


# =============================================================================
# Inputs
# =============================================================================


def _require_text(value: str, field_name: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"{field_name} must not be empty")
    return cleaned


class ProjectCreate(BaseModel):
    name: str
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    status: ProjectStatus = ProjectStatus.active
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        return _require_text(value, "name")


class ProjectUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    status: Optional[ProjectStatus] = None
    config: Optional[Dict[str, Any]] = None

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _require_text(value, "name")


class ProjectListOptions(BaseModel):
    status: Optional[ProjectStatus] = None
    limit: int = Field(default=20, ge=1)
    offset: int = Field(default=0, ge=0)


class ArtifactDraft(BaseModel):
    """Artifact fields supplied by a caller that already names the project."""

    title: str
    artifact_type: ArtifactType
    content: str
    summary: Optional[str] = None
    priority: Priority = Priority.normal
    tags: List[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        return _require_text(value, "title")


class ArtifactCreate(ArtifactDraft):
    project_id: str


class ArtifactUpdate(BaseModel):
    """
    Field-merge patch. Only fields present in `model_fields_set` are applied,
    so `summary=None` clears the summary while an omitted summary is kept.
    """

    title: Optional[str] = None
    content: Optional[str] = None
    summary: Optional[str] = None
    priority: Optional[Priority] = None
    tags: Optional[List[str]] = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _require_text(value, "title")

    def supplied(self) -> Dict[str, Any]:
        """Explicitly supplied fields; nulls are dropped except for `summary`."""
        values: Dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if value is None and name != "summary":
                continue
            values[name] = value
        return values


class ArtifactListOptions(BaseModel):
    artifact_type: Optional[ArtifactType] = Field(default=None, alias="type")
    priority: Optional[Priority] = None
    limit: int = Field(default=50, ge=1)
    offset: int = Field(default=0, ge=0)
    include_archived: bool = False

    model_config = {"populate_by_name": True}


class SearchOptions(BaseModel):
    project_id: Optional[str] = None
    limit: int = Field(default=20, ge=1)


ModelT = TypeVar("ModelT", bound=BaseModel)


def coerce_input(
    model_cls: Type[ModelT],
    data: Union[ModelT, Mapping[str, Any], None],
) -> ModelT:
    """Validate a mapping (or pass a model through), raising our ValidationError."""
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(dict(data or {}))
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ValidationError(
            f"Invalid {field or 'input'}: {first.get('msg', 'invalid value')}",
            field=field,
        ) from exc


def clamp_limit(limit: Optional[int], default: int) -> int:
    if limit is None:
        return default
    try:
        value = int(limit)
    except (TypeError, ValueError) as exc:
        raise ValidationError("limit must be an integer", field="limit") from exc
    return max(1, min(MAX_LIST_LIMIT, value))
