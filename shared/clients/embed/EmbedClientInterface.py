from abc import abstractmethod
import asyncio
import math
import numbers

from shared.clients.ClientInterface import ClientInterface
from shared.clients.embed.models.EmbeddingResult import EmbeddingBatchResult
from shared.helper.HelperConfig import HelperConfig
from shared.helper.RetryPolicy import RetryPolicy
from shared.models.config import PerformanceProfile
from shared.models.errors import DimensionMismatchError, DocumentValidationError, IndexingError

WARMUP_TEXTS = [
    "Texto de prueba para calentar el servicio de embeddings.",
    "Segundo texto de prueba para verificar el procesamiento por lotes.",
]


class EmbedClientInterface(ClientInterface):
    def __init__(self, helper_config: HelperConfig, profile: PerformanceProfile | None = None):
        super().__init__(helper_config=helper_config)

        # model and embedding config
        self.vector_size = int(helper_config.get_number_val(f"{self.get_client_type().upper()}_VECTOR_SIZE", default=1024))
        self.embed_distance = helper_config.get_string_val(f"{self.get_client_type().upper()}_DISTANCE", default="Cosine")

        # batching and retries
        self.profile = profile or PerformanceProfile(name="default")
        self.retry_policy = RetryPolicy.from_profile(self.logging, self.profile)

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        """
        Returns the type of the client. E.g. "embed"
        """
        return "embed"

    def get_vector_size(self) -> int:
        return self.vector_size

    def get_distance(self) -> str:
        return self.embed_distance

    ################ ENDPOINTS ##################
    @abstractmethod
    def get_endpoint_embedding(self) -> str:
        """
        Returns the endpoint path for embedding requests.

        Returns:
            str: The endpoint path for embedding requests (e.g. "/embed")
        """
        pass

    ################ PAYLOAD BUILDER ##################
    @abstractmethod
    def get_embed_payload(self, texts: list[str] | str) -> dict:
        """Build the backend-specific request body for an embedding request.

        Args:
            texts (list[str] | str): A single text or a batch of texts.

        Returns:
            dict: JSON-serialisable request body (e.g. {"inputs": [...]}).
        """
        pass

    ##########################################
    ################# OTHER ##################
    ##########################################

    @abstractmethod
    def extract_embeddings_from_response(self, response_data) -> list[list[float]]:
        """Extract embedding vectors from a raw embedding API response.

        Args:
            response_data: The parsed JSON response body.

        Returns:
            list[list[float]]: Embedding vectors in the same order as the input texts.

        Raises:
            DocumentValidationError: If the response format is invalid.
        """
        pass

    def validate_vector(self, vector: list[float]) -> list[float]:
        """Check that a vector has the configured dimension and numeric, finite values.

        Raises:
            DimensionMismatchError: If the vector length differs from the vector size.
            DocumentValidationError: If any value is not a finite number.
        """
        if len(vector) != self.vector_size:
            raise DimensionMismatchError(expected=self.vector_size, actual=len(vector))
        for value in vector:
            if isinstance(value, bool) or not isinstance(value, numbers.Real) or not math.isfinite(value):
                raise DocumentValidationError(f"Embedding contains a non-numeric value: {value!r}", stage="embedding")
        return vector

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_embed_request(self, texts: list[str] | str) -> list[list[float]]:
        """Send one embedding request, without retries.

        Args:
            texts (list[str] | str): One text or a batch of texts.

        Returns:
            list[list[float]]: One vector per input text, in input order.

        Raises:
            TransientError: On timeouts, connection failures and 5xx.
            CapacityError: If the batch is too large for the server.
            FatalIndexingError: On other error statuses.
            DocumentValidationError: If the response does not hold one vector per text.
        """
        expected = 1 if isinstance(texts, str) else len(texts)
        response = await self.do_request(
            method="POST",
            endpoint=self.get_endpoint_embedding(),
            json=self.get_embed_payload(texts),
            raise_on_error=True,
        )
        try:
            data = response.json()
        except ValueError as exc:
            raise DocumentValidationError(f"Embedding response is not JSON: {exc}", stage="embedding") from exc
        vectors = self.extract_embeddings_from_response(data)
        if len(vectors) != expected:
            raise DocumentValidationError(
                f"Embedding response holds {len(vectors)} vectors for {expected} inputs.", stage="embedding"
            )
        return vectors

    async def _embed_one(self, text: str) -> list[float]:
        vectors = await self.retry_policy.call(self.do_embed_request, text, description="Embedding request (single)")
        return self.validate_vector(vectors[0])

    async def _embed_sub_batch(self, start: int, texts: list[str], result: EmbeddingBatchResult, sem: asyncio.Semaphore) -> None:
        """Embed one sub-batch and write its vectors into result at their positions.

        On batch failure, falls back to one request per text, so a single bad text
        only loses itself.
        """
        async with sem:
            try:
                result.requests += 1
                vectors = await self.retry_policy.call(
                    self.do_embed_request, texts, description=f"Embedding request ({len(texts)} texts)"
                )
            except IndexingError as exc:
                self.logging.warning(
                    "Embedding batch at position %d (%d texts) failed: %s. Falling back to one-at-a-time.",
                    start, len(texts), exc,
                )
                result.fallbacks += 1
                for i, text in enumerate(texts):
                    result.requests += 1
                    try:
                        result.vectors[start + i] = await self._embed_one(text)
                    except IndexingError as single_exc:
                        result.errors[start + i] = str(single_exc)
                return

            for i, vector in enumerate(vectors):
                try:
                    result.vectors[start + i] = self.validate_vector(vector)
                except DocumentValidationError as exc:
                    # configuration error, never retried
                    result.errors[start + i] = str(exc)

    async def embed(self, texts: list[str]) -> EmbeddingBatchResult:
        """Embed a list of texts in sub-batches of the configured size.

        Sub-batches run concurrently, bounded by the embedding concurrency.
        Texts that cannot be embedded are reported in ``errors`` and left as None.

        Args:
            texts (list[str]): The texts to embed.

        Returns:
            EmbeddingBatchResult: Vectors aligned with texts, plus per-position errors.
        """
        result = EmbeddingBatchResult(vectors=[None] * len(texts))
        if not texts:
            return result
        batch_size = self.profile.embedding_batch_size
        sem = asyncio.Semaphore(self.profile.embedding_concurrency)
        await asyncio.gather(
            *[
                self._embed_sub_batch(start, texts[start:start + batch_size], result, sem)
                for start in range(0, len(texts), batch_size)
            ]
        )
        if result.errors:
            self.logging.warning(
                "Embedded %d/%d texts, %d failed.", result.success_count, len(texts), len(result.errors)
            )
        return result

    async def do_warmup(self) -> None:
        """Send a small batch to load the model before the run starts.

        Raises:
            IndexingError: If the warm-up batch fails after retries or returns wrong dimensions.
        """
        self.logging.info("Warming up embedding service...")
        vectors = await self.retry_policy.call(self.do_embed_request, WARMUP_TEXTS, description="Embedding warm-up")
        for vector in vectors:
            self.validate_vector(vector)
        self.logging.info("Embedding service ready (dimension %d).", self.vector_size, color="green")
