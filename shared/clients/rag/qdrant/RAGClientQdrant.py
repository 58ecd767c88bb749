from typing import Any

import httpx
from shared.helper.HelperConfig import HelperConfig
from shared.clients.rag.RAGClientInterface import RAGClientInterface
from shared.clients.rag.models.SearchHit import SearchHit
from shared.models.config import EnvConfig, PerformanceProfile


class RAGClientQdrant(RAGClientInterface):
    def __init__(self, helper_config: HelperConfig, profile: PerformanceProfile | None = None):
        super().__init__(helper_config=helper_config, profile=profile)
        self._base_url = self.get_config_val("BASE_URL", default=None, val_type="string")
        self._api_key = self.get_config_val("API_KEY", default="", val_type="string")
        self._collection_name = self.get_config_val("COLLECTION", default="documents", val_type="string")

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Qdrant"

    def get_collection_name(self) -> str:
        return self._collection_name

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="BASE_URL", val_type="string", default=None),
            EnvConfig(env_key="API_KEY", val_type="string", default=""),
            EnvConfig(env_key="COLLECTION", val_type="string", default="documents")
        ]

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        if self._api_key:
            return {"api-key": f"{self._api_key}"}
        else:
            return {}

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return self._base_url

    def _get_endpoint_healthcheck(self) -> str:
        return "/healthz"

    def _get_endpoint_collection(self) -> str:
        return f"/collections/{self._collection_name}"

    def _get_endpoint_scroll(self) -> str:
        return f"/collections/{self._collection_name}/points/scroll"

    def _get_endpoint_points(self) -> str:
        return f"/collections/{self._collection_name}/points"

    def _get_endpoint_count(self) -> str:
        return f"/collections/{self._collection_name}/points/count"

    def _get_endpoint_search(self) -> str:
        return f"/collections/{self._collection_name}/points/search"

    def _get_endpoint_delete_points(self) -> str:
        return f"/collections/{self._collection_name}/points/delete"

    ##########################################
    ########### PAYLOAD BUILDER ##############
    ##########################################

    def get_create_collection_payload(self, vector_size: int, distance: str) -> dict:
        return {"vectors": {"size": vector_size, "distance": distance}}

    def get_upsert_payload(self, points: list[dict[str, Any]]) -> dict:
        return {"points": points}

    def get_scroll_payload(self, filters: list[dict], with_payload: bool | list | dict, with_vector: bool | list, limit: int | None = None, offset: str | int | None = None) -> dict:
        payload = {
            "limit": limit,
            "with_payload": with_payload,
            "with_vector": with_vector,
        }
        if filters:
            payload["filter"] = {"must": filters}
        if offset is not None:
            payload["offset"] = offset
        return payload

    def get_count_payload(self, filters: list[dict]) -> dict:
        payload: dict = {"exact": True}
        if filters:
            payload["filter"] = {"must": filters}
        return payload

    def get_search_payload(self, vector: list[float], limit: int, score_threshold: float | None) -> dict:
        payload = {"vector": vector, "limit": limit, "with_payload": True}
        if score_threshold is not None:
            payload["score_threshold"] = score_threshold
        return payload

    def get_delete_payload(self, filter: dict) -> dict:
        return {"filter": filter}

    def get_doc_id_filter(self, doc_id: str) -> dict:
        return {"must": [{"key": "doc_id", "match": {"value": doc_id}}]}

    ##########################################
    ########### RESPONSE PARSER ##############
    ##########################################

    def extract_scroll_content(self, raw_response: dict) -> dict:
        result = raw_response.get("result", {})
        return {
            "result": result.get("points", []),
            "status": raw_response.get("status", "ok"),
            "time": raw_response.get("time", 0),
        }

    def extract_next_page_offset(self, raw_response: dict) -> str | int | None:
        return raw_response.get("result", {}).get("next_page_offset")

    def extract_search_results(self, raw_response: dict) -> list[SearchHit]:
        return [
            SearchHit(id=hit["id"], score=hit.get("score", 0.0), payload=hit.get("payload") or {})
            for hit in raw_response.get("result", [])
        ]

    def is_already_exists_response(self, response: httpx.Response) -> bool:
        if response.status_code == 409:
            return True
        return response.status_code == 400 and "already exists" in response.text.lower()
