import re

import pytest

from penguin_bank.sessions import SessionRegistry, new_session_id


def test_session_ids_have_expected_shape_and_differ():
    first, second = new_session_id(), new_session_id()

    assert re.fullmatch(r"session_\d+_[0-9a-f]{12}", first)
    assert first != second


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        SessionRegistry(capacity=0)


@pytest.mark.asyncio
async def test_get_or_create_generates_id_when_missing():
    registry = SessionRegistry()
    session = await registry.get_or_create()

    assert session.id.startswith("session_")
    assert session.initialized is False
    assert session.id in registry


@pytest.mark.asyncio
async def test_get_or_create_reuses_known_session():
    registry = SessionRegistry()
    created = await registry.get_or_create("abc")
    before = created.last_activity

    again = await registry.get_or_create("abc")

    assert again is created
    assert again.last_activity >= before
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_mark_initialized_records_protocol_and_client():
    registry = SessionRegistry()
    session = await registry.mark_initialized(
        "abc", protocol_version="2025-06-18", client_info={"name": "claude"}
    )

    assert session.initialized is True
    assert session.protocol_version == "2025-06-18"
    assert session.client_info == {"name": "claude"}


@pytest.mark.asyncio
async def test_eviction_drops_oldest_inserted_session():
    registry = SessionRegistry(capacity=2)
    await registry.get_or_create("first")
    await registry.get_or_create("second")
    # Access does not protect a session from eviction.
    await registry.touch("first")
    await registry.get_or_create("third")

    assert len(registry) == 2
    assert "first" not in registry
    assert "second" in registry
    assert "third" in registry


@pytest.mark.asyncio
async def test_get_unknown_or_empty_id_returns_none():
    registry = SessionRegistry()

    assert await registry.get(None) is None
    assert await registry.get("missing") is None
    assert await registry.touch("missing") is None
