import numbers

from shared.clients.embed.EmbedClientInterface import EmbedClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig, PerformanceProfile
from shared.models.errors import DocumentValidationError


class EmbedClientTei(EmbedClientInterface):
    def __init__(self, helper_config: HelperConfig, profile: PerformanceProfile | None = None):
        super().__init__(helper_config=helper_config, profile=profile)
        self._base_url = self.get_config_val("BASE_URL", default=None, val_type="string")
        self._api_key = self.get_config_val("API_KEY", default="", val_type="string")
        self._endpoint = self.get_config_val("ENDPOINT", default="/embed", val_type="string")
        self._truncate = self.get_config_val("TRUNCATE", default=False, val_type="bool")

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Tei"

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="BASE_URL", val_type="string", default=None),
            EnvConfig(env_key="API_KEY", val_type="string", default=""),
            EnvConfig(env_key="ENDPOINT", val_type="string", default="/embed"),
            EnvConfig(env_key="TRUNCATE", val_type="bool", default=False),
        ]

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        if self._api_key:
            return {"Authorization": f"Bearer {self._api_key}"}
        else:
            return {}

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return self._base_url

    def _get_endpoint_healthcheck(self) -> str:
        return "/health"

    def get_endpoint_embedding(self) -> str:
        return self._endpoint

    ################ PAYLOAD BUILDER ##################
    def get_embed_payload(self, texts: list[str] | str) -> dict:
        """Build the embedding request body.

        Args:
            texts (list[str] | str): A single text or a batch of texts.

        Returns:
            dict: {"inputs": "..."} or {"inputs": [...]}
        """
        payload: dict = {"inputs": texts}
        if self._truncate:
            payload["truncate"] = True
        return payload

    ##########################################
    ################# OTHER ##################
    ##########################################

    def extract_embeddings_from_response(self, response_data) -> list[list[float]]:
        """Extract embedding vectors from an embedding response.

        The server answers ``[[...], [...]]`` for a batch and ``[[...]]`` for a
        single input; a bare ``[...]`` is accepted as one vector.

        Args:
            response_data: The parsed JSON response body.

        Returns:
            list[list[float]]: Embedding vectors in input order.

        Raises:
            DocumentValidationError: If the response is not a list of vectors.
        """
        if not isinstance(response_data, list) or not response_data:
            raise DocumentValidationError(
                f"Unexpected embedding response format: {type(response_data).__name__}", stage="embedding"
            )
        if all(isinstance(v, numbers.Real) for v in response_data):
            return [response_data]
        if not all(isinstance(v, list) for v in response_data):
            raise DocumentValidationError("Embedding response mixes vectors and scalars.", stage="embedding")
        return response_data
