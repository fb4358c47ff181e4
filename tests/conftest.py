"""
Pytest configuration and shared fixtures.

Contains common test fixtures and setup for all test modules.
"""

from pathlib import Path
from typing import Any, AsyncGenerator, Dict, Generator, List

import pytest
import pytest_asyncio
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from auditpipe.config import (
    DeadLetterSettings,
    DedupSettings,
    HealthSettings,
    QueueSettings,
    SecuritySettings,
    Settings,
)
from auditpipe.core.metrics import MetricsCollector
from auditpipe.core.pipeline import AuditPipeline
from auditpipe.main import create_app
from auditpipe.models import BaseAuditEvent

ADMIN_TOKEN = "test_admin_token_123456789abc"

# Millisecond backoffs so retry tests finish quickly
FAST_LANES: Dict[str, Dict[str, Any]] = {
    "critical": {"backoff_delay_ms": 5},
    "sensitive": {"backoff_delay_ms": 5},
    "default": {"backoff_delay_ms": 5},
    "batch": {"backoff_delay_ms": 5},
}


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings isolated in a temporary directory."""
    return Settings(
        log_level="DEBUG",
        queue=QueueSettings(
            journal_path=tmp_path / "queue",
            lanes=FAST_LANES,
            poll_interval_seconds=0.01,
        ),
        dedup=DedupSettings(ttl_seconds=5.0),
        dead_letter=DeadLetterSettings(fallback_path=tmp_path / "dead-letter"),
        health=HealthSettings(check_interval_seconds=3600),
        security=SecuritySettings(admin_token=ADMIN_TOKEN),
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest_asyncio.fixture
async def pipeline(test_settings: Settings) -> AsyncGenerator[AuditPipeline, None]:
    """Opened pipeline without background loops; drive it with ``flush()``."""
    audit_pipeline = AuditPipeline(test_settings)
    await audit_pipeline.start(background=False)
    yield audit_pipeline
    await audit_pipeline.stop()


@pytest.fixture
def captured_events() -> List[BaseAuditEvent]:
    return []


@pytest.fixture
def app_pipeline(test_settings: Settings) -> AuditPipeline:
    return AuditPipeline(test_settings)


@pytest.fixture
def test_app(
    test_settings: Settings,
    app_pipeline: AuditPipeline,
    captured_events: List[BaseAuditEvent],
) -> FastAPI:
    """Application with a few business routes and a listener recording every event."""
    app = create_app(test_settings, pipeline=app_pipeline)
    app_pipeline.dispatcher.register_listener(captured_events.append)

    @app.get("/api/v1/cidadao/{id}")
    async def get_cidadao(id: str) -> Dict[str, Any]:
        return {"id": id, "nome": "Maria Silva", "cpf": "12345678901"}

    @app.post("/api/v1/cidadao", status_code=201)
    async def create_cidadao(payload: Dict[str, Any]) -> Dict[str, Any]:
        return {"id": "456", **payload}

    @app.delete("/api/v1/cidadao/{id}")
    async def delete_cidadao(id: str) -> Dict[str, Any]:
        return {"id": id, "deleted": True}

    @app.post("/api/v1/beneficio")
    async def create_beneficio(payload: Dict[str, Any]) -> Dict[str, Any]:
        raise HTTPException(status_code=400, detail="Invalid benefit request")

    @app.get("/api/v1/relatorios")
    async def list_reports() -> List[Dict[str, Any]]:
        return [{"id": 1}]

    return app


@pytest.fixture
def test_client(test_app) -> Generator[TestClient, None, None]:
    """FastAPI test client running the pipeline lifespan."""
    with TestClient(test_app) as client:
        yield client


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def make_event():
    """Factory for the wire form of an ENTITY_UPDATED event."""

    def build(**overrides: Any) -> Dict[str, Any]:
        event = {
            "eventType": "ENTITY_UPDATED",
            "entityName": "cidadao",
            "entityId": "123",
            "userId": "user-1",
            "previousData": {"nome": "Maria"},
            "newData": {"nome": "Maria Silva"},
            "changedFields": ["nome"],
        }
        event.update(overrides)
        return event

    return build
