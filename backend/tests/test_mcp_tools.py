import json

import pytest
import pytest_asyncio

import mcp_server


@pytest_asyncio.fixture
async def tools(sqlite_store, monkeypatch):
    async def _get_storage():
        return sqlite_store

    monkeypatch.setattr(mcp_server, "get_storage", _get_storage)
    return sqlite_store


async def _call(tool, *args, **kwargs):
    return json.loads(await tool(*args, **kwargs))


async def _new_project(name: str = "Alpha") -> dict:
    payload = await _call(mcp_server.project_save, name, description="demo")
    assert payload["ok"] is True
    return payload["project"]


async def _new_artifact(project_id: str, name: str = "notes", content: str = "A", **kwargs) -> dict:
    payload = await _call(
        mcp_server.artifact_save, project_id, name, "document", content, **kwargs
    )
    assert payload["ok"] is True, payload
    return payload["artifact"]


@pytest.mark.asyncio
async def test_project_save_creates_then_updates_by_name(tools) -> None:
    created = await _call(mcp_server.project_save, "Alpha", description="one", config={"a": 1})
    updated = await _call(mcp_server.project_save, "ALPHA", tags=["x"], config={"b": 2})

    assert created["status"] == "created"
    assert created["message"] == "Project 'Alpha' created successfully"
    assert updated["status"] == "updated"
    assert updated["project"]["id"] == created["project"]["id"]
    assert updated["project"]["description"] == "one"
    assert updated["project"]["tags"] == ["x"]
    assert updated["project"]["config"] == {"a": 1, "b": 2}


@pytest.mark.asyncio
async def test_project_save_warns_about_similar_names(tools) -> None:
    await _new_project("Website Redesign")
    await _new_project("Groceries")

    payload = await _call(mcp_server.project_save, "website")

    assert payload["ok"] is True
    assert [item["name"] for item in payload["similar_projects"]] == ["Website Redesign"]
    assert "Website Redesign" in payload["warning"]


@pytest.mark.asyncio
async def test_project_save_reports_validation_errors(tools) -> None:
    payload = await _call(mcp_server.project_save, "   ")

    assert payload["ok"] is False
    assert payload["error"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_project_list_and_delete(tools) -> None:
    first = await _new_project("one")
    await _new_project("two")

    listed = await _call(mcp_server.project_list)
    assert listed["message"] == "Found 2 project(s)"
    assert listed["count"] == 2

    deleted = await _call(mcp_server.project_delete, first["id"])
    assert deleted["ok"] is True
    assert (await _call(mcp_server.project_list))["count"] == 1

    missing = await _call(mcp_server.project_delete, first["id"])
    assert missing["ok"] is False
    assert missing["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_project_resume_returns_index_and_respects_budget(tools) -> None:
    project = await _new_project()
    await _new_artifact(project["id"], "core", "c" * 400, priority="core")
    await _new_artifact(project["id"], "big", "b" * 2000)

    summary_only = await _call(mcp_server.project_resume, project_name="alpha")
    assert summary_only["ok"] is True
    assert summary_only["artifact_count"] == 2
    assert summary_only["artifact_index"][0]["name"] == "core"
    assert summary_only["artifact_index"][0]["size_tokens"] == 100
    assert summary_only["available_tokens"] == 600
    assert "hint" in summary_only
    assert "artifacts" not in summary_only

    budgeted = await _call(
        mcp_server.project_resume, project_id=project["id"], load_content=True, max_tokens=200
    )
    assert budgeted["content_loaded_count"] == 1
    assert budgeted["loaded_tokens"] == 100
    assert budgeted["artifacts"][0]["content"] == "c" * 400
    assert [item["content_loaded"] for item in budgeted["artifact_index"]] == [True, False]

    core_only = await _call(
        mcp_server.project_resume, project_id=project["id"], priority_filter="core"
    )
    assert [item["name"] for item in core_only["artifact_index"]] == ["core"]

    missing = await _call(mcp_server.project_resume, project_name="nope")
    assert missing["ok"] is False
    assert missing["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_artifact_save_creates_then_updates_with_history(tools) -> None:
    project = await _new_project()
    first = await _call(mcp_server.artifact_save, project["id"], "notes", "document", "A", summary="s")
    second = await _call(mcp_server.artifact_save, project["id"], "NOTES", "document", "B")

    assert first["status"] == "created"
    assert second["status"] == "updated"
    assert second["artifact"]["id"] == first["artifact"]["id"]
    assert second["artifact"]["version"] == 2
    assert second["artifact"]["summary"] == "s"

    versions = await _call(mcp_server.artifact_versions, first["artifact"]["id"])
    assert versions["count"] == 1
    assert versions["versions"][0]["change_source"] == "update"


@pytest.mark.asyncio
async def test_artifact_save_validates_type_and_priority(tools) -> None:
    project = await _new_project()

    bad_type = await _call(mcp_server.artifact_save, project["id"], "x", "spreadsheet", "A")
    bad_priority = await _call(
        mcp_server.artifact_save, project["id"], "x", "document", "A", priority="urgent"
    )

    assert bad_type["ok"] is False
    assert bad_type["error"] == "VALIDATION_ERROR"
    assert "Valid types" in bad_type["message"]
    assert bad_priority["ok"] is False
    assert bad_priority["error"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_artifact_save_unknown_project_is_not_found(tools) -> None:
    payload = await _call(mcp_server.artifact_save, "missing", "x", "document", "A")

    assert payload["ok"] is False
    assert payload["error"] == "NOT_FOUND"
    assert "suggestion" in payload


@pytest.mark.asyncio
async def test_large_content_is_chunked_and_reassembled(tools) -> None:
    project = await _new_project()
    content = "x" * 7000

    saved = await _call(mcp_server.artifact_save, project["id"], "design", "document", content)

    assert saved["ok"] is True
    assert saved["chunked"] is True
    assert saved["chunk_count"] == 3
    assert saved["parts"] == ["design_part_1", "design_part_2", "design_part_3"]
    assert saved["message"] == "Saved 'design' in 3 chunks (7,000 chars)"
    assert saved["artifact"]["title"] == "design_index"
    assert saved["artifact"]["priority"] == "core"

    part = await tools.artifacts.get_by_title(project["id"], "design_part_2")
    assert part.summary == "Part 2 of 3 - design"
    assert "chunked-part" in part.tags

    rebuilt = await _call(mcp_server.artifact_reassemble, project["id"], "design")
    assert rebuilt["ok"] is True
    assert rebuilt["content"] == content
    assert rebuilt["part_count"] == 3


@pytest.mark.asyncio
async def test_resaving_shorter_chunked_content_archives_stale_parts(tools) -> None:
    project = await _new_project()
    await _call(mcp_server.artifact_save, project["id"], "design", "document", "x" * 7000)

    resaved = await _call(mcp_server.artifact_save, project["id"], "design", "document", "y" * 5000)

    assert resaved["chunk_count"] == 2
    assert resaved["status"] == "updated"
    stale = await tools.artifacts.get_by_title(project["id"], "design_part_3")
    assert stale.is_archived

    rebuilt = await _call(mcp_server.artifact_reassemble, project["id"], "design")
    assert rebuilt["content"] == "y" * 5000


@pytest.mark.asyncio
async def test_auto_chunk_can_be_disabled(tools) -> None:
    project = await _new_project()

    saved = await _call(
        mcp_server.artifact_save, project["id"], "raw", "document", "x" * 7000, auto_chunk=False
    )

    assert saved["chunked"] is False
    assert len(saved["artifact"]["content"]) == 7000


@pytest.mark.asyncio
async def test_reassemble_detects_tampered_part(tools) -> None:
    project = await _new_project()
    await _call(mcp_server.artifact_save, project["id"], "design", "document", "x" * 7000)
    part = await tools.artifacts.get_by_title(project["id"], "design_part_1")
    await tools.artifacts.update(part.id, {"content": "tampered"})

    payload = await _call(mcp_server.artifact_reassemble, project["id"], "design")

    assert payload["ok"] is False
    assert payload["error"] == "INTEGRITY_ERROR"


@pytest.mark.asyncio
async def test_reassemble_without_index_is_not_found(tools) -> None:
    project = await _new_project()

    payload = await _call(mcp_server.artifact_reassemble, project["id"], "nothing")

    assert payload["ok"] is False
    assert payload["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_artifact_get_truncates_long_content(tools) -> None:
    project = await _new_project()
    artifact = await _new_artifact(project["id"], content="abcdef")

    full = await _call(mcp_server.artifact_get, artifact["id"])
    short = await _call(mcp_server.artifact_get, artifact["id"], max_content_length=3)
    missing = await _call(mcp_server.artifact_get, "missing")

    assert full["truncated"] is False
    assert full["artifact"]["content"] == "abcdef"
    assert short["truncated"] is True
    assert short["artifact"]["content"] == "abc"
    assert short["artifact"]["size_chars"] == 6
    assert short["message"] == "Loaded 'notes' (truncated to 3 chars)"
    assert missing["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_delete_restore_and_archived_listing(tools) -> None:
    project = await _new_project()
    artifact = await _new_artifact(project["id"])

    deleted = await _call(mcp_server.artifact_delete, artifact["id"])
    assert deleted["ok"] is True
    assert "artifact_restore" in deleted["restore_hint"]

    listed = await _call(mcp_server.artifact_list, project["id"])
    archived = await _call(mcp_server.artifact_archived, project["id"])
    assert listed["count"] == 0
    assert [item["id"] for item in archived["artifacts"]] == [artifact["id"]]

    restored = await _call(mcp_server.artifact_restore, artifact["id"])
    assert restored["artifact"]["archived_at"] is None
    assert restored["artifact"]["version"] == 2
    assert (await _call(mcp_server.artifact_list, project["id"]))["count"] == 1


@pytest.mark.asyncio
async def test_version_get_and_rollback(tools) -> None:
    project = await _new_project()
    artifact = await _new_artifact(project["id"], content="A")
    await _call(mcp_server.artifact_save, project["id"], "notes", "document", "B")
    await _call(mcp_server.artifact_save, project["id"], "notes", "document", "C")

    versions = await _call(mcp_server.artifact_versions, artifact["id"])
    v1 = next(item for item in versions["versions"] if item["version"] == 1)
    assert "content" not in v1

    loaded = await _call(mcp_server.artifact_version_get, v1["id"])
    assert loaded["version"]["content"] == "A"

    rolled = await _call(mcp_server.artifact_rollback, artifact["id"], v1["id"])
    assert rolled["ok"] is True
    assert rolled["artifact"]["content"] == "A"
    assert rolled["artifact"]["version"] == 4
    assert rolled["message"] == "Rolled back 'notes' to previous version (now v4)"

    missing = await _call(mcp_server.artifact_version_get, "missing")
    assert missing["error"] == "NOT_FOUND"
    foreign = await _call(mcp_server.artifact_rollback, artifact["id"], "missing")
    assert foreign["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_search_tool(tools) -> None:
    project = await _new_project()
    await _new_artifact(project["id"], "auth", "Tokens rotate through the gateway.")

    found = await _call(mcp_server.search, "gateway", project_id=project["id"])
    nothing = await _call(mcp_server.search, "zebra")
    empty = await _call(mcp_server.search, "   ")

    assert found["count"] == 1
    assert found["results"][0]["title"] == "auth"
    assert nothing["ok"] is True
    assert nothing["message"] == 'No results found for "zebra"'
    assert empty["ok"] is False
    assert empty["message"] == "Search query cannot be empty"


@pytest.mark.asyncio
async def test_unexpected_failures_become_internal_error_payloads(monkeypatch) -> None:
    async def _broken_storage():
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(mcp_server, "get_storage", _broken_storage)

    payload = await _call(mcp_server.project_list)

    assert payload == {"ok": False, "error": "INTERNAL_ERROR", "message": "disk on fire"}


@pytest.mark.asyncio
async def test_project_save_upserts_padded_names(tools) -> None:
    created = await _call(mcp_server.project_save, " Padded ", description="one")
    updated = await _call(mcp_server.project_save, " Padded ", description="two")

    assert created["project"]["name"] == "Padded"
    assert updated["ok"] is True, updated
    assert updated["status"] == "updated"
    assert updated["project"]["id"] == created["project"]["id"]
    assert updated["project"]["description"] == "two"


@pytest.mark.asyncio
async def test_artifact_save_upserts_padded_titles(tools) -> None:
    project = await _new_project()

    first = await _call(mcp_server.artifact_save, project["id"], " Doc ", "document", "A")
    second = await _call(mcp_server.artifact_save, project["id"], " Doc ", "document", "B")

    assert first["artifact"]["title"] == "Doc"
    assert second["ok"] is True, second
    assert second["status"] == "updated"
    assert second["artifact"]["id"] == first["artifact"]["id"]
    assert second["artifact"]["version"] == 2


@pytest.mark.asyncio
async def test_chunked_save_under_padded_name_reassembles(tools) -> None:
    project = await _new_project()
    content = "x" * 7000

    saved = await _call(mcp_server.artifact_save, project["id"], " Big ", "document", content)
    rebuilt = await _call(mcp_server.artifact_reassemble, project["id"], " Big ")

    assert saved["artifact"]["title"] == "Big_index"
    assert saved["parts"][0] == "Big_part_1"
    assert rebuilt["ok"] is True, rebuilt
    assert rebuilt["content"] == content


@pytest.mark.asyncio
async def test_artifact_save_rejects_blank_name(tools) -> None:
    project = await _new_project()

    payload = await _call(mcp_server.artifact_save, project["id"], "   ", "document", "A")

    assert payload["ok"] is False
    assert payload["error"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_artifact_list_message_reports_token_total(tools) -> None:
    project = await _new_project()
    await _new_artifact(project["id"], content="x" * 4000, auto_chunk=False)

    payload = await _call(mcp_server.artifact_list, project["id"])

    assert payload["message"] == "Found 1 artifact(s) (~1.0k tokens)"


@pytest.mark.asyncio
async def test_project_analysis_get_returns_cached_analysis(tools) -> None:
    analyses = {"summary": {"text": "on track"}, "gaps": ["tests"]}
    await _call(mcp_server.project_save, "Alpha", config={"analyses": analyses})

    by_name = await _call(mcp_server.project_analysis_get, project_name="alpha")
    gaps = await _call(
        mcp_server.project_analysis_get, project_id=by_name["project_id"], analysis_type="gaps"
    )

    assert by_name["ok"] is True
    assert by_name["analysis"] == {"text": "on track"}
    assert by_name["analysis_type"] == "summary"
    assert by_name["message"] == "Retrieved 'summary' analysis for 'Alpha'"
    assert sorted(by_name["available_types"]) == ["gaps", "summary"]
    assert gaps["analysis"] == ["tests"]


@pytest.mark.asyncio
async def test_project_analysis_get_lists_available_types_when_missing(tools) -> None:
    await _call(mcp_server.project_save, "Alpha", config={"analyses": {"gaps": []}})
    await _new_project("Bare")

    missing = await _call(
        mcp_server.project_analysis_get, project_name="Alpha", analysis_type="inventory"
    )
    bare = await _call(mcp_server.project_analysis_get, project_name="Bare")

    assert missing["ok"] is True
    assert missing["analysis"] is None
    assert missing["available_types"] == ["gaps"]
    assert missing["message"] == "No 'inventory' analysis found. Available: gaps"
    assert bare["available_types"] == []
    assert bare["message"] == "No 'summary' analysis found. Available: none"


@pytest.mark.asyncio
async def test_project_analysis_get_validates_type_and_project(tools) -> None:
    await _new_project()

    invalid = await _call(
        mcp_server.project_analysis_get, project_name="Alpha", analysis_type="vibes"
    )
    missing = await _call(mcp_server.project_analysis_get, project_name="Nope")

    assert invalid["ok"] is False
    assert invalid["error"] == "VALIDATION_ERROR"
    assert "alignment" in invalid["message"]
    assert missing["ok"] is False
    assert missing["error"] == "NOT_FOUND"
