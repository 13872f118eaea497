"""
MCP Server for Contextable

Exposes projects, artifacts, version history and search to an AI assistant
as MCP tools. Every tool returns a JSON string shaped like
`{"ok": bool, "message": str, ...}` and reports failures in that payload
instead of raising.

Large artifact content is split by the chunker before it reaches storage:
parts are saved as `<name>_part_<i>` and an index document `<name>_index`
lists them for reassembly.
"""

import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.fastmcp import FastMCP

from logic import (
    chunk_content,
    create_chunk_index,
    estimate_tokens,
    format_tokens,
    needs_chunking,
    reassemble_chunks,
)
from logic.chunking import parse_chunk_index
from settings import configure_logging, load_settings
from storage import ContextableError, StorageAdapter, format_error_response, get_storage
from storage.records import ArtifactType, Priority

logger = logging.getLogger(__name__)

mcp = FastMCP("Contextable")

VALID_TYPES = [item.value for item in ArtifactType]
VALID_PRIORITIES = [item.value for item in Priority]
DEFAULT_MAX_TOKENS = 15000
DEFAULT_MAX_CONTENT_LENGTH = 50000
ANALYSIS_TYPES = ["summary", "alignment", "gaps", "inventory", "dependencies", "improvements"]
CHUNK_PART_TAG = "chunked-part"
CHUNK_INDEX_TAG = "chunked-index"


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False)


def _tool_response(*, ok: bool, message: str, **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": bool(ok), "message": message}
    payload.update(extra)
    return _to_json(payload)


def _error_response(exc: BaseException, **extra: Any) -> str:
    if not isinstance(exc, ContextableError):
        logger.exception("Unexpected tool failure")
    payload = format_error_response(exc)
    payload.update(extra)
    return _to_json(payload)


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(mode="json")


def _part_name(name: str, position: int) -> str:
    return f"{name}_part_{position}"


def _index_name(name: str) -> str:
    return f"{name}_index"


async def _find_similar_projects(storage: StorageAdapter, name: str) -> List[Dict[str, Any]]:
    """Up to three existing projects whose names look like `name`."""
    name_lower = name.lower().strip()
    if not name_lower:
        return []
    name_words = set(name_lower.split())
    similar: List[Dict[str, Any]] = []
    for project in await storage.projects.list({"limit": 100}):
        project_name = project.name.lower().strip()
        if project_name == name_lower:
            continue
        project_words = set(project_name.split())
        is_similar = name_lower in project_name or project_name in name_lower
        if not is_similar and name_words and project_words:
            common = name_words & project_words
            overlap = len(common) / min(len(name_words), len(project_words))
            is_similar = bool(common) and overlap >= 0.5
        if is_similar:
            similar.append(
                {"id": project.id, "name": project.name, "description": project.description}
            )
    return similar[:3]


# =============================================================================
# Project tools
# =============================================================================


@mcp.tool()
async def project_save(
    name: str,
    description: Optional[str] = None,
    tags: Optional[List[str]] = None,
    config: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Creates a project, or updates the one with the same name (case-insensitive).

    Args:
        name: Project name
        description: Optional description (None = keep existing)
        tags: Optional tags (None = keep existing)
        config: Optional settings, shallow-merged into the existing config

    Returns:
        The saved project and whether it was created or updated. New projects
        also carry a warning when similarly named projects already exist.
    """
    try:
        storage = await get_storage()
        existing = await storage.projects.get_by_name(name)
        if existing is not None:
            patch: Dict[str, Any] = {}
            if description is not None:
                patch["description"] = description
            if tags is not None:
                patch["tags"] = tags
            if config is not None:
                patch["config"] = config
            project = await storage.projects.update(existing.id, patch)
            return _tool_response(
                ok=True,
                message=f"Project '{project.name}' updated successfully",
                status="updated",
                project=_dump(project),
            )

        similar = await _find_similar_projects(storage, name)
        project = await storage.projects.create(
            {
                "name": name,
                "description": description,
                "tags": tags or [],
                "config": config or {},
            }
        )
        extra: Dict[str, Any] = {}
        if similar:
            names = ", ".join(f"'{item['name']}'" for item in similar)
            extra["similar_projects"] = similar
            extra["warning"] = (
                f"Note: Similar project(s) already exist: {names}. "
                "If this is the same project, consider using the existing one instead."
            )
        return _tool_response(
            ok=True,
            message=f"Project '{project.name}' created successfully",
            status="created",
            project=_dump(project),
            **extra,
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def project_list(
    status: Optional[str] = None, limit: int = 20, offset: int = 0
) -> str:
    """
    Lists projects, most recently updated first.

    Args:
        status: Optional filter, "active" or "archived"
        limit: Page size (1-100)
        offset: Number of projects to skip
    """
    try:
        storage = await get_storage()
        projects = await storage.projects.list(
            {"status": status, "limit": limit, "offset": offset}
        )
        message = f"Found {len(projects)} project(s)"
        if offset > 0 and projects:
            message += f" (showing {offset + 1}-{offset + len(projects)})"
        return _tool_response(
            ok=True,
            message=message,
            projects=[_dump(project) for project in projects],
            count=len(projects),
            limit=limit,
            offset=offset,
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def project_resume(
    project_id: Optional[str] = None,
    project_name: Optional[str] = None,
    load_content: bool = False,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    priority_filter: Optional[str] = None,
) -> str:
    """
    Loads a project for resuming work: project details plus an index of its
    artifacts with token estimates.

    Args:
        project_id: Project id (takes precedence over project_name)
        project_name: Project name, matched case-insensitively
        load_content: Also load full artifact content, in listing order,
                      until max_tokens would be exceeded
        max_tokens: Token budget for load_content
        priority_filter: Only include artifacts with this priority
    """
    try:
        storage = await get_storage()
        project = None
        if project_id:
            project = await storage.projects.get(project_id)
        elif project_name:
            project = await storage.projects.get_by_name(project_name)
        if project is None:
            return _tool_response(
                ok=False,
                message=f"Project not found: {project_id or project_name}",
                error="NOT_FOUND",
            )

        options: Dict[str, Any] = {"limit": 100}
        if priority_filter:
            options["priority"] = priority_filter
        summaries = await storage.artifacts.list(project.id, options)
        available_tokens = estimate_tokens(sum(item.size_chars for item in summaries))

        artifact_index = [
            {
                "id": item.id,
                "name": item.title,
                "summary": item.summary or "(no summary)",
                "topics": item.tags,
                "priority": item.priority.value,
                "size_tokens": item.tokens_est,
                "updated_at": item.updated_at,
                "content_loaded": False,
            }
            for item in summaries
        ]

        loaded: List[Dict[str, Any]] = []
        loaded_tokens = 0
        if load_content:
            for entry, item in zip(artifact_index, summaries):
                if loaded_tokens + item.tokens_est > max_tokens:
                    break
                artifact = await storage.artifacts.get(item.id)
                if artifact is None:
                    continue
                loaded.append(_dump(artifact))
                loaded_tokens += item.tokens_est
                entry["content_loaded"] = True

        message = f"Loaded '{project.name}' with {len(summaries)} artifact(s)"
        message += (
            f" (~{format_tokens(loaded_tokens)} tokens loaded)"
            if load_content
            else f" (summaries only, ~{format_tokens(available_tokens)} tokens available)"
        )
        extra: Dict[str, Any] = {}
        if loaded:
            extra["artifacts"] = loaded
        if not load_content and summaries:
            extra["hint"] = (
                "Summaries loaded. Call artifact_get(id) for full content of items "
                "needed for the current task."
            )
        return _tool_response(
            ok=True,
            message=message,
            project=_dump(project),
            artifact_index=artifact_index,
            artifact_count=len(summaries),
            content_loaded_count=len(loaded),
            loaded_tokens=loaded_tokens,
            available_tokens=available_tokens,
            **extra,
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def project_analysis_get(
    project_id: Optional[str] = None,
    project_name: Optional[str] = None,
    analysis_type: str = "summary",
) -> str:
    """
    Returns a cached analysis stored under the project's `config["analyses"]`.

    Read-only: analyses are produced elsewhere and only cached here.

    Args:
        project_id: Project id (takes precedence over project_name)
        project_name: Project name, matched case-insensitively
        analysis_type: summary, alignment, gaps, inventory, dependencies or improvements
    """
    if analysis_type not in ANALYSIS_TYPES:
        return _tool_response(
            ok=False,
            message=f"Invalid analysis_type '{analysis_type}'. Valid types: {', '.join(ANALYSIS_TYPES)}",
            error="VALIDATION_ERROR",
        )
    try:
        storage = await get_storage()
        project = None
        if project_id:
            project = await storage.projects.get(project_id)
        elif project_name:
            project = await storage.projects.get_by_name(project_name)
        if project is None:
            return _tool_response(
                ok=False,
                message=f"Project not found: {project_id or project_name}",
                error="NOT_FOUND",
            )

        analyses = project.config.get("analyses")
        if not isinstance(analyses, dict):
            analyses = {}
        available = list(analyses)
        if analysis_type not in analyses:
            return _tool_response(
                ok=True,
                message=(
                    f"No '{analysis_type}' analysis found. "
                    f"Available: {', '.join(available) or 'none'}"
                ),
                project_id=project.id,
                project_name=project.name,
                analysis_type=analysis_type,
                analysis=None,
                available_types=available,
            )
        return _tool_response(
            ok=True,
            message=f"Retrieved '{analysis_type}' analysis for '{project.name}'",
            project_id=project.id,
            project_name=project.name,
            analysis_type=analysis_type,
            analysis=analyses[analysis_type],
            available_types=available,
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def project_delete(project_id: str) -> str:
    """
    Permanently deletes a project with all of its artifacts and their history.

    Args:
        project_id: Project id
    """
    try:
        storage = await get_storage()
        project = await storage.projects.get(project_id)
        if project is None:
            return _tool_response(
                ok=False,
                message=f"Project not found: {project_id}",
                error="NOT_FOUND",
            )
        await storage.projects.delete(project_id)
        return _tool_response(
            ok=True,
            message=f"Deleted project '{project.name}' and all of its artifacts",
            deleted=True,
            project_id=project_id,
        )
    except Exception as exc:
        return _error_response(exc)


# =============================================================================
# Artifact tools
# =============================================================================


async def _upsert_by_title(storage: StorageAdapter, project_id: str, title: str, fields: Dict[str, Any]):
    existing = await storage.artifacts.get_by_title(project_id, title)
    if existing is None:
        return await storage.artifacts.create({"project_id": project_id, "title": title, **fields}), "created"
    patch = {key: value for key, value in fields.items() if key != "artifact_type"}
    if existing.is_archived:
        await storage.artifacts.restore(existing.id)
    return await storage.artifacts.update(existing.id, patch), "updated"


async def _save_chunked(
    storage: StorageAdapter,
    *,
    project_id: str,
    name: str,
    artifact_type: str,
    content: str,
    summary: Optional[str],
    priority: str,
    tags: List[str],
) -> str:
    chunked = chunk_content(content)
    part_names: List[str] = []
    for position, part in enumerate(chunked.chunks, start=1):
        part_name = _part_name(name, position)
        part_names.append(part_name)
        await _upsert_by_title(
            storage,
            project_id,
            part_name,
            {
                "artifact_type": artifact_type,
                "content": part,
                "summary": f"Part {position} of {chunked.chunk_count} - {summary or name}",
                "priority": priority,
                "tags": [*tags, CHUNK_PART_TAG],
            },
        )

    # Parts left over from an earlier, longer save.
    stale = chunked.chunk_count + 1
    while True:
        leftover = await storage.artifacts.get_by_title(project_id, _part_name(name, stale))
        if leftover is None:
            break
        await storage.artifacts.archive(leftover.id)
        stale += 1

    index, status = await _upsert_by_title(
        storage,
        project_id,
        _index_name(name),
        {
            "artifact_type": "document",
            "content": create_chunk_index(name, chunked, part_names),
            "summary": f"Index for chunked document: {name} ({chunked.chunk_count} parts)",
            "priority": "core",
            "tags": [*tags, CHUNK_INDEX_TAG],
        },
    )
    return _tool_response(
        ok=True,
        message=(
            f"Saved '{name}' in {chunked.chunk_count} chunks "
            f"({chunked.total_size:,} chars)"
        ),
        status=status,
        chunked=True,
        chunk_count=chunked.chunk_count,
        total_size=chunked.total_size,
        checksum=chunked.checksum,
        parts=part_names,
        artifact=_dump(index),
    )


@mcp.tool()
async def artifact_save(
    project_id: str,
    name: str,
    artifact_type: str,
    content: str,
    summary: Optional[str] = None,
    priority: Optional[str] = None,
    tags: Optional[List[str]] = None,
    auto_chunk: bool = True,
) -> str:
    """
    Saves content to a project, updating the artifact with the same name if
    one exists. Every update keeps the previous state in version history.

    Content too large for one response is split into ordered parts plus an
    index document (`<name>_index`); use artifact_reassemble to read it back.

    Args:
        project_id: Owning project id
        name: Artifact title, unique (case-insensitive) within the project
        artifact_type: document, code, decision, conversation or file
        content: Full text content
        summary: Optional short summary
        priority: core, normal or reference (None = normal, or keep existing)
        tags: Optional tags
        auto_chunk: Split oversized content automatically (default True)
    """
    # Titles are stored stripped; chunk part and index names derive from it.
    name = name.strip()
    if not name:
        return _tool_response(
            ok=False,
            message="Artifact name cannot be empty",
            error="VALIDATION_ERROR",
        )
    if artifact_type not in VALID_TYPES:
        return _tool_response(
            ok=False,
            message=f"Invalid artifact_type '{artifact_type}'. Valid types: {', '.join(VALID_TYPES)}",
            error="VALIDATION_ERROR",
        )
    if priority and priority not in VALID_PRIORITIES:
        return _tool_response(
            ok=False,
            message=f"Invalid priority '{priority}'. Valid priorities: {', '.join(VALID_PRIORITIES)}",
            error="VALIDATION_ERROR",
        )

    try:
        storage = await get_storage()
        if auto_chunk and needs_chunking(content):
            return await _save_chunked(
                storage,
                project_id=project_id,
                name=name,
                artifact_type=artifact_type,
                content=content,
                summary=summary,
                priority=priority or "normal",
                tags=list(tags or []),
            )

        existing = await storage.artifacts.get_by_title(project_id, name)
        if existing is not None:
            patch: Dict[str, Any] = {"content": content}
            if summary is not None:
                patch["summary"] = summary
            if priority:
                patch["priority"] = priority
            if tags is not None:
                patch["tags"] = tags
            artifact = await storage.artifacts.update(existing.id, patch)
            status = "updated"
        else:
            artifact = await storage.artifacts.create(
                {
                    "project_id": project_id,
                    "title": name,
                    "artifact_type": artifact_type,
                    "content": content,
                    "summary": summary,
                    "priority": priority or "normal",
                    "tags": tags or [],
                }
            )
            status = "created"
        return _tool_response(
            ok=True,
            message=f"Artifact '{artifact.title}' {status} successfully",
            status=status,
            chunked=False,
            artifact=_dump(artifact),
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def artifact_list(
    project_id: str,
    artifact_type: Optional[str] = None,
    priority: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    include_archived: bool = False,
) -> str:
    """
    Lists artifacts in a project with size and token estimates (no content).
    Core artifacts come first, then the most recently updated.

    Args:
        project_id: Project id
        artifact_type: Optional type filter
        priority: Optional priority filter
        limit: Page size (1-100)
        offset: Number of artifacts to skip
        include_archived: Include archived artifacts
    """
    try:
        storage = await get_storage()
        artifacts = await storage.artifacts.list(
            project_id,
            {
                "type": artifact_type,
                "priority": priority,
                "limit": limit,
                "offset": offset,
                "include_archived": include_archived,
            },
        )
        total_tokens = sum(item.tokens_est for item in artifacts)
        return _tool_response(
            ok=True,
            message=f"Found {len(artifacts)} artifact(s) (~{format_tokens(total_tokens)} tokens)",
            artifacts=[_dump(item) for item in artifacts],
            count=len(artifacts),
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def artifact_get(
    artifact_id: str, max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH
) -> str:
    """
    Loads one artifact with its full content (archived artifacts included).

    Args:
        artifact_id: Artifact id
        max_content_length: Content beyond this many characters is cut off
    """
    try:
        storage = await get_storage()
        artifact = await storage.artifacts.get(artifact_id)
        if artifact is None:
            return _tool_response(
                ok=False,
                message=f"Artifact not found: {artifact_id}",
                error="NOT_FOUND",
            )
        payload = _dump(artifact)
        size_chars = len(artifact.content)
        truncated = size_chars > max_content_length
        if truncated:
            payload["content"] = artifact.content[:max_content_length]
        payload["size_chars"] = size_chars
        payload["tokens_est"] = estimate_tokens(size_chars)
        message = f"Loaded '{artifact.title}'"
        if truncated:
            message += f" (truncated to {max_content_length} chars)"
        return _tool_response(ok=True, message=message, artifact=payload, truncated=truncated)
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def artifact_reassemble(project_id: str, name: str) -> str:
    """
    Rebuilds a chunked document from its index and parts, verifying the checksum.

    Args:
        project_id: Owning project id
        name: Original document name (without the `_index` suffix)
    """
    name = name.strip()
    try:
        storage = await get_storage()
        index = await storage.artifacts.get_by_title(project_id, _index_name(name))
        if index is None:
            return _tool_response(
                ok=False,
                message=f"No chunk index found for '{name}'",
                error="NOT_FOUND",
            )
        checksum, part_names = parse_chunk_index(index.content)
        parts: List[str] = []
        for part_name in part_names:
            part = await storage.artifacts.get_by_title(project_id, part_name)
            if part is None:
                return _tool_response(
                    ok=False,
                    message=f"Missing part '{part_name}' for '{name}'",
                    error="NOT_FOUND",
                )
            parts.append(part.content)
        content = reassemble_chunks(parts, checksum)
        return _tool_response(
            ok=True,
            message=f"Reassembled '{name}' from {len(parts)} part(s) ({len(content):,} chars)",
            name=name,
            content=content,
            part_count=len(parts),
            total_size=len(content),
            checksum=checksum,
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def artifact_delete(artifact_id: str) -> str:
    """
    Archives an artifact. It disappears from listings and search but keeps its
    history and can be brought back with artifact_restore.

    Args:
        artifact_id: Artifact id
    """
    try:
        storage = await get_storage()
        artifact = await storage.artifacts.archive(artifact_id)
        return _tool_response(
            ok=True,
            message=f"Archived '{artifact.title}'. It can be restored with artifact_restore.",
            artifact=_dump(artifact),
            restore_hint=f"To restore: artifact_restore(artifact_id='{artifact_id}')",
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def artifact_restore(artifact_id: str) -> str:
    """Restores an archived artifact."""
    try:
        storage = await get_storage()
        artifact = await storage.artifacts.restore(artifact_id)
        return _tool_response(
            ok=True,
            message=f"Restored '{artifact.title}'",
            artifact=_dump(artifact),
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def artifact_archived(project_id: str, limit: int = 20) -> str:
    """Lists archived artifacts in a project, most recently archived first."""
    try:
        storage = await get_storage()
        artifacts = await storage.artifacts.list_archived(project_id, limit)
        return _tool_response(
            ok=True,
            message=f"Found {len(artifacts)} archived artifact(s)",
            artifacts=[_dump(item) for item in artifacts],
            count=len(artifacts),
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def artifact_versions(artifact_id: str, limit: int = 10) -> str:
    """
    Lists the version history of an artifact, newest first.

    Each entry is the state the artifact had right before an update, archive,
    restore or rollback (see `change_source`).
    """
    try:
        storage = await get_storage()
        versions = await storage.artifacts.get_versions(artifact_id, limit)
        return _tool_response(
            ok=True,
            message=f"Found {len(versions)} version(s) for artifact",
            versions=[_dump(item) for item in versions],
            count=len(versions),
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def artifact_version_get(version_id: str) -> str:
    """Loads one historical version with its full content."""
    try:
        storage = await get_storage()
        version = await storage.artifacts.get_version(version_id)
        if version is None:
            return _tool_response(
                ok=False,
                message=f"Version not found: {version_id}",
                error="NOT_FOUND",
            )
        return _tool_response(
            ok=True,
            message=f"Loaded version {version.version} of '{version.title}'",
            version=_dump(version),
        )
    except Exception as exc:
        return _error_response(exc)


@mcp.tool()
async def artifact_rollback(artifact_id: str, version_id: str) -> str:
    """
    Restores title, content, summary and priority from a historical version.

    The rollback itself is recorded as a new version, so nothing is lost.

    Args:
        artifact_id: Artifact id
        version_id: Id of a version belonging to that artifact
    """
    try:
        storage = await get_storage()
        artifact = await storage.artifacts.rollback(artifact_id, version_id)
        return _tool_response(
            ok=True,
            message=f"Rolled back '{artifact.title}' to previous version (now v{artifact.version})",
            artifact=_dump(artifact),
        )
    except Exception as exc:
        return _error_response(exc)


# =============================================================================
# Search
# =============================================================================


@mcp.tool()
async def search(query: str, project_id: Optional[str] = None, limit: int = 20) -> str:
    """
    Full-text search over active artifacts, optionally within one project.

    Args:
        query: Words to look for
        project_id: Optional project scope
        limit: Maximum results (1-100)
    """
    if not isinstance(query, str) or not query.strip():
        return _tool_response(
            ok=False,
            message="Search query cannot be empty",
            error="VALIDATION_ERROR",
        )
    try:
        storage = await get_storage()
        results = await storage.search(query, {"project_id": project_id, "limit": limit})
        message = (
            f'Found {len(results)} result(s) for "{query}"'
            if results
            else f'No results found for "{query}"'
        )
        return _tool_response(
            ok=True,
            message=message,
            results=[_dump(item) for item in results],
            count=len(results),
        )
    except Exception as exc:
        return _error_response(exc)


# =============================================================================
# Startup
# =============================================================================


async def startup():
    """Initialize storage before serving."""
    await get_storage()


if __name__ == "__main__":
    import asyncio

    configure_logging(load_settings())
    asyncio.run(startup())
    mcp.run()
