"""
Shared test fixtures for the indexer test suite.

Provides: env configuration, logger and HelperConfig, a fast performance
profile, and in-memory fake embedding / vector store backends served through
httpx.MockTransport so the real clients run unmodified against them.
"""

import logging

import httpx
import pytest

from shared.clients.embed.tei.EmbedClientTei import EmbedClientTei
from shared.clients.rag.qdrant.RAGClientQdrant import RAGClientQdrant
from shared.helper.HelperConfig import HelperConfig
from shared.logging.logging_setup import ColorLogger
from shared.models.config import PerformanceProfile
from tests.fakes import COLLECTION, VECTOR_SIZE, FakeEmbedder, FakeQdrant


@pytest.fixture
def env(monkeypatch, tmp_path):
    """Minimal environment for both clients and the sources."""
    values = {
        "EMBED_ENGINE": "tei",
        "EMBED_TEI_BASE_URL": "http://embed.test",
        "EMBED_VECTOR_SIZE": str(VECTOR_SIZE),
        "RAG_ENGINE": "qdrant",
        "RAG_QDRANT_BASE_URL": "http://qdrant.test",
        "RAG_QDRANT_COLLECTION": COLLECTION,
        "LOG_DIR": str(tmp_path / "logs"),
    }
    for key, val in values.items():
        monkeypatch.setenv(key, val)
    return values


@pytest.fixture
def logger() -> ColorLogger:
    return ColorLogger(logging.getLogger("indexer.tests"))


@pytest.fixture
def helper_config(env, logger) -> HelperConfig:
    return HelperConfig(logger=logger)


@pytest.fixture
def profile() -> PerformanceProfile:
    """Small, delay-free profile."""
    return PerformanceProfile(
        name="test",
        chunk_size=100,
        chunk_overlap=10,
        embedding_batch_size=8,
        embedding_concurrency=2,
        upsert_batch_size=200,
        worker_concurrency=2,
        document_batch_size=3,
        batch_delay_ms=0,
        upsert_delay_ms=0,
        max_retries=2,
        retry_base_delay_ms=0,
        retry_max_delay_ms=0,
        retry_jitter_ms=0,
    )


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def qdrant() -> FakeQdrant:
    return FakeQdrant()


@pytest.fixture
async def embed_client(helper_config, profile, embedder):
    client = EmbedClientTei(helper_config=helper_config, profile=profile)
    await client.boot(transport=httpx.MockTransport(embedder.handler))
    yield client
    await client.close()


@pytest.fixture
async def rag_client(helper_config, profile, qdrant):
    client = RAGClientQdrant(helper_config=helper_config, profile=profile)
    await client.boot(transport=httpx.MockTransport(qdrant.handler))
    yield client
    await client.close()


@pytest.fixture
def tei_client(helper_config, profile) -> EmbedClientTei:
    """Embedding client without an HTTP client, for payload and parsing tests."""
    return EmbedClientTei(helper_config=helper_config, profile=profile)


@pytest.fixture
def qdrant_client(helper_config, profile) -> RAGClientQdrant:
    """Vector store client without an HTTP client, for payload and parsing tests."""
    return RAGClientQdrant(helper_config=helper_config, profile=profile)
