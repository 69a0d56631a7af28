"""Offline tests for the Cubby storage manager.

Scenarios:
- Initial load returns an empty dataset with correct schema_version
- Save then load returns equal data (roundtrip)
- A version 1 payload is migrated on load and the migration is persisted
- Corrupted (non-dict) and newer-than-supported payloads raise StorageError
- Persisting without setup fails fast; persisting with setup writes a snapshot
- Debounced persist requests coalesce into a single write
"""

from __future__ import annotations

from typing import Any

import pytest
from custom_components.cubby import storage
from custom_components.cubby.backup import export_snapshot, repository_from_snapshot
from custom_components.cubby.const import DOMAIN
from custom_components.cubby.exceptions import StorageError
from custom_components.cubby.repository import Repository
from custom_components.cubby.storage import (
    CURRENT_SCHEMA_VERSION,
    STORAGE_KEY,
    STORAGE_VERSION,
    DomainStore,
)
from homeassistant.core import HomeAssistant


def _stored(key: str, data: Any) -> dict[str, Any]:
    return {"version": STORAGE_VERSION, "minor_version": 1, "key": key, "data": data}


async def test_initial_load_returns_empty_dataset(hass: HomeAssistant) -> None:
    store = DomainStore(hass, key="cubby_test_initial")

    data = await store.async_load()

    assert data["schema_version"] == CURRENT_SCHEMA_VERSION
    assert data["locations"] == []
    assert data["items"] == []
    assert data["tags"] == []
    assert data["reviewHistory"] == []


async def test_save_then_load_roundtrip(hass: HomeAssistant) -> None:
    store = DomainStore(hass, key="cubby_test_roundtrip")
    repo = Repository()
    garage = repo.create_location(name="Garage")
    repo.create_item(name="Screws", location_id=garage.id)

    payload = export_snapshot(repo)
    await store.async_save(payload)
    loaded = await store.async_load()

    assert loaded == {**payload, "schema_version": CURRENT_SCHEMA_VERSION}
    restored = repository_from_snapshot(loaded)
    assert [it.name for it in restored.items_in_location(garage.id)] == ["Screws"]


async def test_v1_payload_is_migrated_and_persisted(
    hass: HomeAssistant, hass_storage: dict[str, Any]
) -> None:
    key = "cubby_test_migrate"
    hass_storage[key] = _stored(
        key,
        {
            "schema_version": 1,
            "version": 1,
            "locations": [],
            "items": [
                {
                    "id": "6f2c1d4e-6a1b-4a59-9d59-7f0b6f1f6c11",
                    "name": "Lamp",
                    "dateAdded": "2025-01-01T00:00:00Z",
                }
            ],
            "tags": [],
            "reviewHistory": [],
        },
    )
    store = DomainStore(hass, key=key)

    loaded = await store.async_load()

    assert loaded["schema_version"] == CURRENT_SCHEMA_VERSION
    assert loaded["items"][0]["isBook"] is False
    persisted = hass_storage[key]["data"]
    assert persisted["schema_version"] == CURRENT_SCHEMA_VERSION
    assert persisted["items"][0]["moveDestination"] is None


async def test_corrupted_payload_raises(hass: HomeAssistant) -> None:
    store = DomainStore(hass, key="cubby_test_corrupt")
    with pytest.raises(StorageError):
        await store.async_migrate_if_needed(["not", "a", "dict"])  # type: ignore[arg-type]


async def test_newer_payload_raises(hass: HomeAssistant, hass_storage: dict[str, Any]) -> None:
    key = "cubby_test_newer"
    hass_storage[key] = _stored(key, {"schema_version": CURRENT_SCHEMA_VERSION + 1})
    store = DomainStore(hass, key=key)

    with pytest.raises(StorageError):
        await store.async_load()
    # Left as found
    assert hass_storage[key]["data"]["schema_version"] == CURRENT_SCHEMA_VERSION + 1


async def test_persist_without_setup_fails_fast(hass: HomeAssistant) -> None:
    hass.data.pop(DOMAIN, None)
    with pytest.raises(StorageError):
        await storage.async_persist_repo(hass)

    hass.data[DOMAIN] = {"store": DomainStore(hass, key="cubby_test_no_repo")}
    with pytest.raises(StorageError):
        await storage.async_persist_repo(hass)


async def test_persist_immediate_writes_snapshot(
    hass: HomeAssistant, hass_storage: dict[str, Any]
) -> None:
    repo = Repository()
    repo.create_tag("Tools")
    hass.data[DOMAIN] = {"store": DomainStore(hass), "repository": repo}

    await storage.async_persist_immediate(hass)

    data = hass_storage[STORAGE_KEY]["data"]
    assert [t["name"] for t in data["tags"]] == ["Tools"]
    assert hass.data[DOMAIN]["persisted_generation"] == repo.generation


async def test_debounced_requests_coalesce(
    hass: HomeAssistant, hass_storage: dict[str, Any], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(storage, "PERSIST_DEBOUNCE_DELAY", 0.01)
    repo = Repository()
    hass.data[DOMAIN] = {"store": DomainStore(hass), "repository": repo}

    await storage.async_request_persist(hass)
    first = hass.data[DOMAIN]["persist_task"]
    repo.create_location(name="Attic")
    await storage.async_request_persist(hass)
    second = hass.data[DOMAIN]["persist_task"]
    await second

    assert first is not second
    assert first.done()
    assert [loc["name"] for loc in hass_storage[STORAGE_KEY]["data"]["locations"]] == ["Attic"]
    assert hass.data[DOMAIN]["persisted_generation"] == repo.generation
