from abc import abstractmethod
from typing import Any
import asyncio
import json
import math

import httpx
from shared.clients.ClientInterface import ClientInterface
from shared.clients.rag.models.Scroll import ScrollResult
from shared.clients.rag.models.SearchHit import SearchHit
from shared.clients.rag.models.UpsertResult import UpsertResult
from shared.helper.BatchSizing import upsert_batch_size_for
from shared.helper.HelperConfig import HelperConfig
from shared.helper.RetryPolicy import RetryPolicy
from shared.models.config import PerformanceProfile
from shared.models.document import ChunkError
from shared.models.errors import CapacityError, FatalIndexingError, IndexingError


class RAGClientInterface(ClientInterface):
    def __init__(self, helper_config: HelperConfig, profile: PerformanceProfile | None = None):
        super().__init__(helper_config=helper_config)
        self.profile = profile or PerformanceProfile(name="default")
        self.retry_policy = RetryPolicy.from_profile(self.logging, self.profile)

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        """
        Returns the type of the client. E.g. "rag"
        """
        return "rag"

    @abstractmethod
    def get_collection_name(self) -> str:
        """
        Returns the name of the collection this client writes to.
        """
        pass

    ################ ENDPOINTS ##################
    @abstractmethod
    def _get_endpoint_collection(self) -> str:
        """
        Returns the endpoint path of the collection, used for existence checks (GET) and creation (PUT).

        Returns:
            str: The endpoint path (e.g. "/collections/my_col")
        """
        pass

    @abstractmethod
    def _get_endpoint_points(self) -> str:
        """
        Returns the endpoint path for points upsert requests.

        Returns:
            str: The endpoint path (e.g. "/collections/my_col/points")
        """
        pass

    @abstractmethod
    def _get_endpoint_scroll(self) -> str:
        """
        Returns the endpoint path for scroll requests.

        Returns:
            str: The endpoint path (e.g. "/collections/my_col/points/scroll")
        """
        pass

    @abstractmethod
    def _get_endpoint_count(self) -> str:
        """Returns the endpoint path for counting points matching a filter.

        Returns:
            str: The endpoint path (e.g. "/collections/my_col/points/count")
        """
        pass

    @abstractmethod
    def _get_endpoint_search(self) -> str:
        """Returns the endpoint path for similarity search requests.

        Returns:
            str: The endpoint path (e.g. "/collections/my_col/points/search")
        """
        pass

    @abstractmethod
    def _get_endpoint_delete_points(self) -> str:
        """Returns the endpoint path for deleting points by filter.

        Returns:
            str: The endpoint path (e.g. "/collections/my_col/points/delete")
        """
        pass

    ################ PAYLOAD BUILDER ##################
    @abstractmethod
    def get_create_collection_payload(self, vector_size: int, distance: str) -> dict:
        """Builds the request body for collection creation."""
        pass

    @abstractmethod
    def get_upsert_payload(self, points: list[dict[str, Any]]) -> dict:
        """Builds the request body for a points upsert."""
        pass

    @abstractmethod
    def get_scroll_payload(self, filters: list[dict], with_payload: bool | list | dict, with_vector: bool | list, limit: int | None = None, offset: str | int | None = None) -> dict:
        """
        Returns the payload for scroll requests to the RAG backend.

        Args:
            filters (list[dict]): The filters to apply to the scroll request.
            with_payload (bool | list | dict): Whether to include the payload, or which payload fields to include.
            with_vector (bool | list): Whether to include the vector.
            limit (int | None): The maximum number of results to return.
            offset (str | int | None): Pagination cursor returned by the previous scroll page.

        Returns:
            dict: The payload for the scroll request.
        """
        pass

    @abstractmethod
    def get_count_payload(self, filters: list[dict]) -> dict:
        """Builds the backend-specific request payload for a point count."""
        pass

    @abstractmethod
    def get_search_payload(self, vector: list[float], limit: int, score_threshold: float | None) -> dict:
        """Builds the backend-specific request payload for a similarity search."""
        pass

    @abstractmethod
    def get_delete_payload(self, filter: dict) -> dict:
        """Builds the backend-specific request payload for a delete by filter."""
        pass

    @abstractmethod
    def get_doc_id_filter(self, doc_id: str) -> dict:
        """Builds the filter matching every point of one document."""
        pass

    ################ RESPONSE PARSER ##################
    @abstractmethod
    def extract_scroll_content(self, raw_response: dict) -> dict:
        """
        Extracts the relevant content from a raw scroll response.

        Returns:
            dict: A dict with keys "result", "status", "time".
        """
        pass

    @abstractmethod
    def extract_next_page_offset(self, raw_response: dict) -> str | int | None:
        """
        Extracts the pagination cursor for the next scroll page, or None on the last page.
        """
        pass

    @abstractmethod
    def extract_search_results(self, raw_response: dict) -> list[SearchHit]:
        """Extracts the scored hits from a raw search response."""
        pass

    @abstractmethod
    def is_already_exists_response(self, response: httpx.Response) -> bool:
        """Returns True if a create-collection response reports that the collection already exists."""
        pass

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_existence_check(self) -> bool:
        """Check if the collection exists in the rag backend.

        Returns:
            bool: True if the collection exists, False on 404.

        Raises:
            TransientError: On timeouts and server errors.
            FatalIndexingError: On any other unexpected status.
        """
        resp = await self.do_request(method="GET", endpoint=self._get_endpoint_collection())
        if resp.status_code == 404:
            return False
        self._raise_for_status(resp, self._get_endpoint_collection())
        return True

    async def do_create_collection(self, vector_size: int = 1024, distance: str = "Cosine") -> bool:
        """Create the collection in the rag backend.

        Args:
            vector_size (int): The size of the vectors in the collection.
            distance (str): The distance metric for the vectors.

        Returns:
            bool: True if this call created the collection, False if it already existed.
        """
        resp = await self.do_request(
            method="PUT",
            json=self.get_create_collection_payload(vector_size, distance),
            endpoint=self._get_endpoint_collection())
        if resp.is_success:
            return True
        if self.is_already_exists_response(resp):
            return False
        self._raise_for_status(resp, self._get_endpoint_collection())
        return True

    async def do_ensure_collection(self, vector_size: int = 1024, distance: str = "Cosine") -> bool:
        """Make sure the collection exists. Idempotent and safe under concurrent callers.

        Args:
            vector_size (int): The size of the vectors in the collection.
            distance (str): The distance metric for the vectors.

        Returns:
            bool: True if the collection was created by this call.

        Raises:
            IndexingError: If the backend cannot be reached or refuses the creation.
        """
        name = self.get_collection_name()
        if await self.retry_policy.call(self.do_existence_check, description=f"Collection check '{name}'"):
            self.logging.info("Collection '%s' already exists.", name)
            return False

        self.logging.info("Creating collection '%s' (size=%d, distance=%s)...", name, vector_size, distance)
        created = await self.retry_policy.call(
            self.do_create_collection, vector_size, distance, description=f"Collection create '{name}'"
        )
        if not created:
            # lost a creation race; the winner's collection must be visible now
            if not await self.retry_policy.call(self.do_existence_check, description=f"Collection check '{name}'"):
                raise FatalIndexingError(f"Collection '{name}' reported as existing but cannot be found.", stage="collection")
            self.logging.info("Collection '%s' was created concurrently.", name)
            return False
        self.logging.info("Collection '%s' created.", name, color="green")
        return True

    async def do_upsert_points(self, points: list[dict[str, Any]]) -> httpx.Response:
        """Upsert points into the rag backend collection in a single request.

        Args:
            points (list[dict[str, Any]]): The list of points to upsert.

        Returns:
            httpx.Response: The response from the upsert request.

        Raises:
            CapacityError: If the payload is too large.
            TransientError: On timeouts and server errors.
            FatalIndexingError: On any other error status.
        """
        return await self.do_request(
            method="PUT",
            content=json.dumps(self.get_upsert_payload(points)),
            params={"wait": "true"},
            endpoint=self._get_endpoint_points(),
            additional_headers={"Content-Type": "application/json"},
            raise_on_error=True)

    async def _pause_between_upserts(self, result: UpsertResult) -> None:
        if result.calls > 0 and self.profile.upsert_delay_ms > 0:
            await asyncio.sleep(self.profile.upsert_delay_ms / 1000)

    def _record_failed(self, batch: list[dict[str, Any]], result: UpsertResult, message: str) -> None:
        for point in batch:
            chunk_index = (point.get("payload") or {}).get("chunk_index", -1)
            result.failed.append(ChunkError(chunk_index=chunk_index, stage="upsert", message=message))

    async def _upsert_with_split(self, batch: list[dict[str, Any]], result: UpsertResult) -> None:
        """Upsert a batch, halving it on payload-too-large until single points remain.

        Each halving strictly shrinks the batch, so a batch of n points causes at
        most n - 1 splits.
        """
        await self._pause_between_upserts(result)
        result.calls += 1
        try:
            await self.retry_policy.call(self.do_upsert_points, batch, description=f"Upsert ({len(batch)} points)")
        except CapacityError as exc:
            if len(batch) <= 1:
                self.logging.error("Single point rejected as too large, giving up on it: %s", exc)
                self._record_failed(batch, result, f"Payload too large at minimum batch size: {exc}")
                return
            half = len(batch) // 2
            result.splits += 1
            self.logging.warning("Payload too large for %d points, splitting into %d + %d.", len(batch), half, len(batch) - half)
            await self._upsert_with_split(batch[:half], result)
            await self._upsert_with_split(batch[half:], result)
            return
        except IndexingError as exc:
            self.logging.error("Upsert of %d points failed: %s", len(batch), exc)
            self._record_failed(batch, result, str(exc))
            return
        result.upserted += len(batch)

    async def do_upsert(self, points: list[dict[str, Any]], document_size: int | None = None) -> UpsertResult:
        """Upsert points in batches sized from the source document size.

        Batches are sent one after another with the configured pause in between.
        A batch that cannot be stored is recorded in the result and the remaining
        batches are still sent.

        Args:
            points (list[dict[str, Any]]): The points to write, in chunk order.
            document_size (int | None): Length of the source document text.

        Returns:
            UpsertResult: Counts of stored points, calls, splits and failed chunks.
        """
        batch_size = upsert_batch_size_for(document_size, self.profile)
        result = UpsertResult(batch_size=batch_size)
        for start in range(0, len(points), batch_size):
            await self._upsert_with_split(points[start:start + batch_size], result)
        self.logging.debug(
            "Upserted %d/%d points in %d calls (batch size %d, %d splits).",
            result.upserted, len(points), result.calls, batch_size, result.splits,
        )
        return result

    async def do_delete_points_by_filter(self, filter: dict) -> None:
        """Deletes all points matching the given filter from the RAG backend.
        Used to roll back a document whose points were only partially stored.

        Args:
            filter (dict): The filter that identifies which points to delete.
        """
        await self.do_request(
            method="POST",
            content=json.dumps(self.get_delete_payload(filter)),
            params={"wait": "true"},
            endpoint=self._get_endpoint_delete_points(),
            additional_headers={"Content-Type": "application/json"},
            raise_on_error=True,
        )

    async def do_delete_document(self, doc_id: str) -> None:
        """Deletes every point of one document, with retries.

        Args:
            doc_id (str): The document whose points are removed.
        """
        await self.retry_policy.call(
            self.do_delete_points_by_filter,
            self.get_doc_id_filter(doc_id),
            description=f"Delete points of '{doc_id}'",
        )

    async def do_scroll(self, filters: list[dict], with_payload: bool | list | dict, with_vector: bool | list, limit: int | None = None, offset: str | int | None = None) -> ScrollResult:
        """Scroll a single page from the collection.

        Args:
            filters (list[dict]): The filters to apply to the scroll request.
            with_payload (bool | list | dict): Whether to include the payload, or which payload fields to include.
            with_vector (bool | list): Whether to include the vector in the scroll request.
            limit (int | None): The maximum number of results to return per page.
            offset (str | int | None): Pagination cursor from the previous page, None for the first page.

        Returns:
            ScrollResult: The page, including next_page_offset when further pages are available.
        """
        resp = await self.do_request(
            method="POST",
            content=json.dumps(self.get_scroll_payload(filters, with_payload, with_vector, limit, offset)),
            endpoint=self._get_endpoint_scroll(),
            additional_headers={"Content-Type": "application/json"},
            raise_on_error=True,
        )
        raw_response = resp.json()
        scroll_content = self.extract_scroll_content(raw_response=raw_response)
        return ScrollResult(
            result=scroll_content.get("result", []),
            status=scroll_content.get("status", "ok"),
            time=scroll_content.get("time", 0),
            next_page_offset=self.extract_next_page_offset(raw_response),
        )

    async def do_count(self, filters: list[dict]) -> int:
        """Count the total number of points matching the given filters.

        Args:
            filters (list[dict]): Filter conditions for the count request.

        Returns:
            int: Total number of matching points.
        """
        resp = await self.do_request(
            method="POST",
            content=json.dumps(self.get_count_payload(filters)),
            endpoint=self._get_endpoint_count(),
            additional_headers={"Content-Type": "application/json"},
            raise_on_error=True,
        )
        return resp.json().get("result", {}).get("count", 0)

    async def do_scroll_all(self, filters: list[dict], with_payload: bool | list | dict, with_vector: bool | list, page_size: int = 1000) -> ScrollResult:
        """Scroll through ALL points matching the filter, paginating automatically.

        Args:
            filters (list[dict]): The filters to apply to the scroll request.
            with_payload (bool | list | dict): Whether to include the payload, or which fields.
            with_vector (bool | list): Whether to include the vector in each result point.
            page_size (int): Points per page.

        Returns:
            ScrollResult: All matching points collected across all pages.
        """
        all_points: list[dict] = []
        offset: str | int | None = None
        page = 1
        total_points = await self.retry_policy.call(self.do_count, filters, description="Point count")
        total_pages = math.ceil(total_points / page_size) if total_points > 0 else 1
        while True:
            page_result = await self.retry_policy.call(
                self.do_scroll,
                filters=filters,
                with_payload=with_payload,
                with_vector=with_vector,
                limit=page_size,
                offset=offset,
                description=f"Scroll page {page}",
            )
            all_points.extend(page_result.result)
            self.logging.info(
                "Fetched points page %d of %d from %s, total points so far: %d of %d",
                page, total_pages, self.get_engine_name(), len(all_points), total_points,
            )
            offset = page_result.next_page_offset
            if offset is None or not page_result.result:
                break
            page += 1
        return ScrollResult(result=all_points, status="ok", time=0)

    async def do_fetch_indexed_doc_ids(self) -> set[str]:
        """Collect the distinct doc_id values stored in the collection.

        Returns:
            set[str]: Identifiers of every document that has at least one point.
        """
        scroll = await self.do_scroll_all(filters=[], with_payload=["doc_id"], with_vector=False)
        doc_ids: set[str] = set()
        for point in scroll.result:
            doc_id = (point.get("payload") or {}).get("doc_id")
            if doc_id is not None:
                doc_ids.add(str(doc_id))
        return doc_ids

    async def do_search(self, vector: list[float], limit: int = 10, score_threshold: float | None = None) -> list[SearchHit]:
        """Run a similarity search against the collection.

        Args:
            vector (list[float]): The query vector.
            limit (int): Maximum number of hits.
            score_threshold (float | None): Minimum score of returned hits.

        Returns:
            list[SearchHit]: Hits ordered by descending score.
        """
        resp = await self.do_request(
            method="POST",
            content=json.dumps(self.get_search_payload(vector, limit, score_threshold)),
            endpoint=self._get_endpoint_search(),
            additional_headers={"Content-Type": "application/json"},
            raise_on_error=True,
        )
        return self.extract_search_results(resp.json())
