from datetime import timedelta

import pytest

from storage import AuthenticationError, ConflictError, HostedAdapter, NotFoundError, StorageError
from storage.hosted import hash_api_key, issue_api_key
from storage.utils import utc_now


async def _artifact(store, project_id: str, title: str = "notes", content: str = "A", **extra):
    payload = {
        "project_id": project_id,
        "title": title,
        "artifact_type": "document",
        "content": content,
    }
    payload.update(extra)
    return await store.artifacts.create(payload)


@pytest.mark.asyncio
async def test_initialize_resolves_tenant_from_api_key(hosted_pair) -> None:
    alice, bob = hosted_pair

    assert alice.user_id == "alice"
    assert bob.user_id == "bob"


@pytest.mark.asyncio
async def test_operations_before_initialize_raise_storage_error(hosted_env) -> None:
    database_url, alice_key, _ = hosted_env
    store = HostedAdapter(database_url, alice_key)
    try:
        with pytest.raises(StorageError):
            await store.projects.list()
    finally:
        await store.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("api_key", [None, "", "sk_wrong_prefix", "ctx_unknown"])
async def test_initialize_rejects_bad_api_keys(hosted_env, api_key) -> None:
    database_url, _, _ = hosted_env
    store = HostedAdapter(database_url, api_key)
    try:
        with pytest.raises(AuthenticationError):
            await store.initialize()
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_expired_api_key_is_rejected(hosted_env) -> None:
    database_url, _, _ = hosted_env
    provisioner = HostedAdapter(database_url, api_key=None)
    expired = await issue_api_key(
        provisioner.session_factory, "carol", expires_at=utc_now() - timedelta(days=1)
    )
    await provisioner.close()

    store = HostedAdapter(database_url, expired)
    try:
        with pytest.raises(AuthenticationError, match="expired"):
            await store.initialize()
    finally:
        await store.close()


def test_hash_api_key_is_stable_sha256() -> None:
    digest = hash_api_key("ctx_abc")

    assert digest == hash_api_key("ctx_abc")
    assert len(digest) == 64
    assert digest != "ctx_abc"


def test_adapter_requires_database_url() -> None:
    with pytest.raises(ValueError):
        HostedAdapter("", "ctx_key")


@pytest.mark.asyncio
async def test_tenants_cannot_see_each_others_projects(hosted_pair) -> None:
    alice, bob = hosted_pair
    project = await alice.projects.create({"name": "Secret"})

    assert await bob.projects.get(project.id) is None
    assert await bob.projects.get_by_name("secret") is None
    assert await bob.projects.list() == []
    with pytest.raises(NotFoundError):
        await bob.projects.update(project.id, {"description": "mine now"})
    with pytest.raises(NotFoundError):
        await bob.projects.delete(project.id)
    with pytest.raises(NotFoundError):
        await bob.projects.count_artifacts(project.id)

    # Names are unique per tenant only.
    theirs = await bob.projects.create({"name": "SECRET"})
    assert theirs.id != project.id


@pytest.mark.asyncio
async def test_tenants_cannot_touch_each_others_artifacts(hosted_pair) -> None:
    alice, bob = hosted_pair
    project = await alice.projects.create({"name": "Secret"})
    artifact = await _artifact(alice, project.id)
    await alice.artifacts.update(artifact.id, {"content": "B"})
    version = (await alice.artifacts.get_versions(artifact.id))[0]

    assert await bob.artifacts.get(artifact.id) is None
    assert await bob.artifacts.get_version(version.id) is None
    assert await bob.artifacts.get_by_title(project.id, "notes") is None
    with pytest.raises(NotFoundError):
        await _artifact(bob, project.id, title="intrusion")
    with pytest.raises(NotFoundError):
        await bob.artifacts.update(artifact.id, {"content": "hacked"})
    with pytest.raises(NotFoundError):
        await bob.artifacts.archive(artifact.id)
    with pytest.raises(NotFoundError):
        await bob.artifacts.rollback(artifact.id, version.id)
    with pytest.raises(NotFoundError):
        await bob.artifacts.list(project.id)
    assert await bob.search("B") == []

    untouched = await alice.artifacts.get(artifact.id)
    assert untouched.content == "B"
    assert untouched.version == 2


@pytest.mark.asyncio
async def test_hosted_versioning_state_machine(hosted_pair) -> None:
    alice, _ = hosted_pair
    project = await alice.projects.create({"name": "Work"})
    artifact = await _artifact(alice, project.id, content="A")
    await alice.artifacts.update(artifact.id, {"content": "B"})
    await alice.artifacts.update(artifact.id, {"content": "C"})

    archived = await alice.artifacts.archive(artifact.id)
    assert archived.version == 3
    assert archived.archived_at is not None
    assert (await alice.artifacts.archive(artifact.id)).version == 3

    restored = await alice.artifacts.restore(artifact.id)
    assert restored.version == 4
    assert restored.archived_at is None

    v1 = next(
        item for item in await alice.artifacts.get_versions(artifact.id, limit=20) if item.version == 1
    )
    rolled = await alice.artifacts.rollback(artifact.id, v1.id)
    assert rolled.content == "A"
    assert rolled.version == 5

    sources = [item.change_source.value for item in await alice.artifacts.get_versions(artifact.id, limit=20)]
    assert sources == ["rollback", "restore", "archive", "update", "update"]


@pytest.mark.asyncio
async def test_hosted_titles_conflict_case_insensitively(hosted_pair) -> None:
    alice, _ = hosted_pair
    project = await alice.projects.create({"name": "Work"})
    await _artifact(alice, project.id, title="Plan")

    with pytest.raises(ConflictError):
        await _artifact(alice, project.id, title="PLAN")
    with pytest.raises(ConflictError):
        await alice.projects.create({"name": "work"})


@pytest.mark.asyncio
async def test_hosted_delete_removes_artifacts_and_versions(hosted_pair) -> None:
    alice, _ = hosted_pair
    project = await alice.projects.create({"name": "Work"})
    artifact = await _artifact(alice, project.id)
    await alice.artifacts.update(artifact.id, {"content": "B"})
    version = (await alice.artifacts.get_versions(artifact.id))[0]

    await alice.projects.delete(project.id)

    assert await alice.projects.get(project.id) is None
    assert await alice.artifacts.get(artifact.id) is None
    assert await alice.artifacts.get_version(version.id) is None


@pytest.mark.asyncio
async def test_hosted_search_is_tenant_scoped_substring_match(hosted_pair) -> None:
    alice, bob = hosted_pair
    mine = await alice.projects.create({"name": "Mine"})
    theirs = await bob.projects.create({"name": "Theirs"})
    hit = await _artifact(alice, mine.id, title="Gateway", content="The Gateway rotates tokens.")
    await _artifact(bob, theirs.id, title="Gateway too", content="Another gateway.")
    archived = await _artifact(alice, mine.id, title="Old gateway", content="gateway v0")
    await alice.artifacts.archive(archived.id)

    results = await alice.search("gateway")

    assert [item.artifact_id for item in results] == [hit.id]
    assert results[0].project_name == "Mine"
    assert results[0].score == 1.0
    assert "Gateway" in results[0].snippet


@pytest.mark.asyncio
async def test_project_config_merges_in_hosted_store(hosted_pair) -> None:
    alice, _ = hosted_pair
    project = await alice.projects.create({"name": "Cfg", "config": {"a": 1}})

    updated = await alice.projects.update(project.id, {"config": {"b": 2}})

    assert updated.config == {"a": 1, "b": 2}
    assert updated.updated_at.endswith("Z")


@pytest.mark.asyncio
async def test_create_schema_on_initialize_then_authenticates(tmp_path) -> None:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'fresh.db'}"
    store = HostedAdapter(database_url, "ctx_not_issued", create_schema=True)
    try:
        with pytest.raises(AuthenticationError):
            await store.initialize()
        key = await store.issue_api_key("dana")
    finally:
        await store.close()

    authed = HostedAdapter(database_url, key, create_schema=True)
    try:
        await authed.initialize()
        assert authed.user_id == "dana"
    finally:
        await authed.close()


@pytest.mark.asyncio
async def test_hosted_list_hides_archived_and_list_archived_shows_them(hosted_pair) -> None:
    alice, _ = hosted_pair
    project = await alice.projects.create({"name": "Work"})
    keep = await _artifact(alice, project.id, title="keep")
    gone = await _artifact(alice, project.id, title="gone")
    await alice.artifacts.archive(gone.id)

    active = await alice.artifacts.list(project.id)
    everything = await alice.artifacts.list(project.id, {"include_archived": True})
    archived = await alice.artifacts.list_archived(project.id)

    assert [item.id for item in active] == [keep.id]
    assert {item.id for item in everything} == {keep.id, gone.id}
    assert [item.id for item in archived] == [gone.id]
    assert (await alice.artifacts.get(gone.id)).is_archived


@pytest.mark.asyncio
async def test_hosted_list_puts_core_first_then_most_recent(hosted_pair) -> None:
    alice, _ = hosted_pair
    project = await alice.projects.create({"name": "Work"})
    older = await _artifact(alice, project.id, title="older", content="x" * 400)
    core = await _artifact(alice, project.id, title="core", priority="core")
    newer = await _artifact(alice, project.id, title="newer")

    listed = await alice.artifacts.list(project.id)

    assert [item.id for item in listed] == [core.id, newer.id, older.id]
    assert listed[2].size_chars == 400
    assert listed[2].tokens_est == 100


@pytest.mark.asyncio
async def test_hosted_count_artifacts_ignores_archived(hosted_pair) -> None:
    alice, _ = hosted_pair
    project = await alice.projects.create({"name": "Work"})
    first = await _artifact(alice, project.id, title="a")
    await _artifact(alice, project.id, title="b")
    await alice.artifacts.archive(first.id)

    assert await alice.projects.count_artifacts(project.id) == 1


@pytest.mark.asyncio
async def test_hosted_update_without_changes_is_a_no_op(hosted_pair) -> None:
    alice, _ = hosted_pair
    project = await alice.projects.create({"name": "Work"})
    artifact = await _artifact(alice, project.id, summary="s")

    same = await alice.artifacts.update(artifact.id, {"content": "A", "summary": "s"})
    empty = await alice.artifacts.update(artifact.id, {})

    assert same.version == 1
    assert empty.version == 1
    assert same.updated_at == artifact.updated_at
    assert await alice.artifacts.get_versions(artifact.id) == []


@pytest.mark.asyncio
async def test_hosted_rollback_rejects_version_of_another_artifact(hosted_pair) -> None:
    alice, _ = hosted_pair
    project = await alice.projects.create({"name": "Work"})
    first = await _artifact(alice, project.id, title="first")
    second = await _artifact(alice, project.id, title="second")
    await alice.artifacts.update(second.id, {"content": "changed"})
    foreign = (await alice.artifacts.get_versions(second.id))[0]

    with pytest.raises(NotFoundError):
        await alice.artifacts.rollback(first.id, foreign.id)
    assert (await alice.artifacts.get(first.id)).version == 1


@pytest.mark.asyncio
async def test_hosted_padded_names_match_the_stored_name(hosted_pair) -> None:
    alice, _ = hosted_pair
    project = await alice.projects.create({"name": " Padded "})
    artifact = await _artifact(alice, project.id, title=" Doc ")

    assert (await alice.projects.get_by_name("padded  ")).id == project.id
    assert (await alice.artifacts.get_by_title(project.id, " DOC")).id == artifact.id
    with pytest.raises(ConflictError):
        await alice.projects.create({"name": "Padded "})
    with pytest.raises(ConflictError):
        await _artifact(alice, project.id, title="  doc")
