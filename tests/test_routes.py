import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from google.api_core import exceptions as google_exceptions

import config
import main_fastapi
from conftest import FALLBACK, FakeImageGenerator, FakeTextGenerator, FlakyStore
from enrichment_orchestrator import EnrichmentOrchestrator
from entry_store import FirestoreEntryStore
from main_fastapi import create_app
from notification_bus import NotificationBus
from reconciliation_poller import ReconciliationPoller


@pytest.fixture
def services():
    store = FlakyStore()
    bus = NotificationBus()
    orchestrator = EnrichmentOrchestrator(
        store, FakeTextGenerator(), FakeImageGenerator(), bus, image_timeout=1.0, fallback_image=FALLBACK,
    )
    return {
        "firestore_client": None,
        "store": store,
        "bus": bus,
        "orchestrator": orchestrator,
        "poller": ReconciliationPoller(store, interval=0.05, timeout=2.0),
    }


@pytest.fixture
def client(services):
    async def builder():
        return services

    with TestClient(create_app(builder)) as test_client:
        yield test_client


# --- Health ---

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


# --- Lookup API ---

def test_lookup_new_word(client):
    response = client.post("/api/v1/entries/lookup", json={"word": "Apple", "user_meanings": ["I like apples."]})
    assert response.status_code == 201
    data = response.json()
    assert data["is_new"] is True
    assert data["original_text"] == "Apple"
    assert data["entry"]["id"] == "apple"
    assert [m["source"] for m in data["entry"]["meanings"]] == ["user", "generated", "generated"]
    assert data["status"] in ("draft", "enriching", "merged")


def test_lookup_existing_word(client):
    client.post("/api/v1/entries/lookup", json={"word": "apple"})
    response = client.post("/api/v1/entries/lookup", json={"word": "APPLE"})
    assert response.status_code == 201
    assert response.json()["is_new"] is False


def test_lookup_unknown_word_returns_404(client, services):
    response = client.post("/api/v1/entries/lookup", json={"word": "xyzzyqux"})
    assert response.status_code == 404
    assert client.get("/api/v1/entries/").json() == []


def test_lookup_blank_word_returns_422(client):
    response = client.post("/api/v1/entries/lookup", json={"word": "   "})
    assert response.status_code == 422


def test_lookup_persist_failure_returns_500(client, services):
    services["store"].fail_creates = True
    response = client.post("/api/v1/entries/lookup", json={"word": "apple"})
    assert response.status_code == 500


# --- Entry API ---

def test_get_entry(client):
    client.post("/api/v1/entries/lookup", json={"word": "apple"})
    response = client.get("/api/v1/entries/Apple")
    assert response.status_code == 200
    assert response.json()["word"] == "apple"

    assert client.get("/api/v1/entries/missing").status_code == 404
    assert len(client.get("/api/v1/entries/").json()) == 1


def test_wait_for_entry(client):
    client.post("/api/v1/entries/lookup", json={"word": "apple"})
    response = client.get("/api/v1/entries/apple/wait", params={"timeout": 2})
    assert response.status_code == 200
    data = response.json()
    assert data["complete"] is True
    assert data["entry"]["primary_image"] == "img:apple primary"


def test_wait_for_missing_entry_returns_404_immediately(client):
    started = time.monotonic()
    response = client.get("/api/v1/entries/missing/wait", params={"timeout": 60})
    assert response.status_code == 404
    assert time.monotonic() - started < 5


def test_set_primary_image(client, services):
    client.post("/api/v1/entries/lookup", json={"word": "apple"})
    response = client.put("/api/v1/entries/apple/primary-image", json={"image": "custom.png"})
    assert response.status_code == 200
    assert response.json()["primary_image"] == "custom.png"
    assert response.json()["is_primary_image_user_set"] is True

    missing = client.put("/api/v1/entries/missing/primary-image", json={"image": "custom.png"})
    assert missing.status_code == 404


def test_refresh_entry(client):
    client.post("/api/v1/entries/lookup", json={"word": "apple"})
    assert client.post("/api/v1/entries/apple/refresh").status_code == 200
    assert client.post("/api/v1/entries/missing/refresh").status_code == 404


# --- Service wiring ---

@pytest.mark.asyncio
async def test_build_services_checks_firestore_connection(monkeypatch):
    from google.cloud.firestore_v1 import async_client

    db = MagicMock()
    db.collection.return_value.document.return_value.get = AsyncMock(
        side_effect=google_exceptions.PermissionDenied("denied")
    )
    monkeypatch.setattr(async_client, "AsyncClient", MagicMock(return_value=db))
    monkeypatch.setattr(config, "ENTRY_STORE_BACKEND", "firestore")

    services = await main_fastapi.build_services()

    assert isinstance(services["store"], FirestoreEntryStore)
    assert services["firestore_client"] is db
    db.collection.return_value.document.assert_called_with("__test_connection__")
