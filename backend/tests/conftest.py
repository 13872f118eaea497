from pathlib import Path

import pytest_asyncio

from storage import HostedAdapter, SQLiteAdapter


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


@pytest_asyncio.fixture
async def sqlite_store():
    store = SQLiteAdapter(in_memory=True)
    await store.initialize()
    try:
        yield store
    finally:
        await store.close()


@pytest_asyncio.fixture
async def project(sqlite_store):
    return await sqlite_store.projects.create({"name": "Alpha", "description": "first"})


@pytest_asyncio.fixture
async def hosted_env(tmp_path: Path):
    """
    A provisioned hosted database with two tenants.

    Yields `(database_url, key_for_alice, key_for_bob)`.
    """
    database_url = _sqlite_url(tmp_path / "hosted.db")
    provisioner = HostedAdapter(database_url, api_key=None)
    await provisioner.create_schema()
    alice_key = await provisioner.issue_api_key("alice", name="alice laptop")
    bob_key = await provisioner.issue_api_key("bob")
    await provisioner.close()
    yield database_url, alice_key, bob_key


@pytest_asyncio.fixture
async def hosted_pair(hosted_env):
    database_url, alice_key, bob_key = hosted_env
    alice = HostedAdapter(database_url, alice_key)
    bob = HostedAdapter(database_url, bob_key)
    await alice.initialize()
    await bob.initialize()
    try:
        yield alice, bob
    finally:
        await alice.close()
        await bob.close()
