"""
Test suite for the TEI embedding client.

Runs EmbedClientTei against the in-memory FakeEmbedder: batching, order
preservation, retries on transient errors, one-at-a-time fallback and
dimension validation.
"""

import httpx
import pytest

from shared.clients.embed.EmbedClientManager import EmbedClientManager
from shared.clients.embed.tei.EmbedClientTei import EmbedClientTei
from shared.models.errors import DimensionMismatchError, DocumentValidationError, TransientError
from tests.fakes import FakeEmbedder, VECTOR_SIZE


class TestEmbedBatching:
    """Sub-batching and ordering."""

    @pytest.mark.asyncio
    async def test_embed_splits_into_sub_batches(self, embed_client, embedder: FakeEmbedder) -> None:
        """20 texts at batch size 8 are sent as 8 + 8 + 4."""
        texts = [f"text {i}" for i in range(20)]

        result = await embed_client.embed(texts)

        assert sorted(len(r) for r in embedder.requests) == [4, 8, 8]
        assert result.success_count == 20
        assert result.errors == {}

    @pytest.mark.asyncio
    async def test_embed_preserves_input_order(self, embed_client) -> None:
        """Vectors line up with their input text regardless of completion order."""
        texts = ["x" * (i + 1) for i in range(30)]

        result = await embed_client.embed(texts)

        assert [v[0] for v in result.vectors] == [float(len(t)) for t in texts]

    @pytest.mark.asyncio
    async def test_embed_empty_list(self, embed_client, embedder: FakeEmbedder) -> None:
        """No texts means no request."""
        result = await embed_client.embed([])
        assert result.vectors == []
        assert embedder.requests == []


class TestEmbedFailures:
    """Retries, fallback and validation."""

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, embed_client, embedder: FakeEmbedder) -> None:
        """A 503 followed by success yields all vectors."""
        embedder.transient_failures = 1

        result = await embed_client.embed(["a", "b", "c"])

        assert result.success_count == 3
        assert len(embedder.requests) == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_transient_error(self, embed_client, embedder: FakeEmbedder) -> None:
        """With max_retries=2 a permanently failing request is tried three times."""
        embedder.transient_failures = 100

        with pytest.raises(TransientError):
            await embed_client.retry_policy.call(embed_client.do_embed_request, ["a"])
        assert len(embedder.requests) == 3

    @pytest.mark.asyncio
    async def test_batch_failure_falls_back_to_single_requests(self, embed_client, embedder: FakeEmbedder) -> None:
        """If every batch call fails but single calls succeed, no chunk is lost."""
        embedder.fail_batches = True
        texts = [f"chunk {i}" for i in range(8)]

        result = await embed_client.embed(texts)

        assert result.success_count == 8
        assert result.fallbacks == 1
        assert all(v is not None for v in result.vectors)

    @pytest.mark.asyncio
    async def test_poison_text_only_loses_itself(self, embed_client, embedder: FakeEmbedder) -> None:
        """A text that always fails is reported at its position, the rest are embedded."""
        texts = [f"chunk {i}" for i in range(8)]
        embedder.poison_texts = {"chunk 5"}

        result = await embed_client.embed(texts)

        assert result.success_count == 7
        assert list(result.errors) == [5]
        assert result.vectors[5] is None

    @pytest.mark.asyncio
    async def test_dimension_mismatch_in_64_batch(self, helper_config, profile, embedder: FakeEmbedder) -> None:
        """A batch of 64 with text #30 at the wrong dimension yields 63 vectors and one error at 30."""
        profile.embedding_batch_size = 64
        client = EmbedClientTei(helper_config=helper_config, profile=profile)
        await client.boot(transport=httpx.MockTransport(embedder.handler))
        texts = [f"chunk number {i}" for i in range(64)]
        embedder.wrong_dim_texts = {texts[30]}

        try:
            result = await client.embed(texts)
        finally:
            await client.close()

        assert len(embedder.requests) == 1
        assert result.success_count == 63
        assert list(result.errors) == [30]
        assert "dimension" in result.errors[30]

    def test_validate_vector_rejects_wrong_size_and_nan(self, tei_client) -> None:
        """Dimension and finiteness are validated."""
        with pytest.raises(DimensionMismatchError):
            tei_client.validate_vector([1.0] * (VECTOR_SIZE + 1))
        with pytest.raises(DocumentValidationError):
            tei_client.validate_vector([float("nan")] * VECTOR_SIZE)


class TestEmbedResponseFormats:
    """Parsing of the embedding response shapes."""

    def test_nested_and_flat_responses(self, tei_client) -> None:
        """Both [[...]] and a bare [...] are accepted."""
        assert tei_client.extract_embeddings_from_response([[1.0, 2.0]]) == [[1.0, 2.0]]
        assert tei_client.extract_embeddings_from_response([1.0, 2.0]) == [[1.0, 2.0]]

    def test_invalid_response_raises(self, tei_client) -> None:
        """Objects and empty lists are rejected."""
        with pytest.raises(DocumentValidationError):
            tei_client.extract_embeddings_from_response({"data": []})
        with pytest.raises(DocumentValidationError):
            tei_client.extract_embeddings_from_response([])

    def test_payload_uses_inputs(self, tei_client) -> None:
        """The request body carries the texts under "inputs"."""
        assert tei_client.get_embed_payload(["a", "b"]) == {"inputs": ["a", "b"]}


class TestEmbedClientManager:
    """Engine selection."""

    def test_manager_builds_tei_client(self, helper_config, profile) -> None:
        """EMBED_ENGINE=tei resolves to EmbedClientTei."""
        client = EmbedClientManager(helper_config=helper_config, profile=profile).get_client()
        assert isinstance(client, EmbedClientTei)
        assert client.get_vector_size() == VECTOR_SIZE

    def test_manager_rejects_unknown_engine(self, helper_config, monkeypatch) -> None:
        """An engine without implementation is a configuration error."""
        monkeypatch.setenv("EMBED_ENGINE", "nope")
        with pytest.raises(ValueError):
            EmbedClientManager(helper_config=helper_config)
