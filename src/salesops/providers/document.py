"""Document-store Record Provider over the store's REST API.

Each entity type lives in a collection named like its SQL table. Documents carry
typed value wrappers (``stringValue``, ``timestampValue`` ...) which are
converted with field_mapping.from_document_fields / to_document_fields.

Key implementation details:
- Listing follows ``nextPageToken`` until the collection is exhausted
- Transient failures (transport errors, 429, 5xx) are retried with tenacity
  exponential backoff; other HTTP errors propagate immediately
- The document name's last segment is the record id when the body has none
"""

from __future__ import annotations

import uuid
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.salesops.providers.base import RecordProvider
from src.salesops.records.field_mapping import (
    SQL_TABLES,
    from_document_fields,
    to_document_fields,
)
from src.salesops.records.schemas import EntityType

logger = structlog.get_logger(__name__)


class TransientDocumentStoreError(Exception):
    """Retryable HTTP status from the document store."""

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"document store answered {status_code}")


class DocumentRecordProvider(RecordProvider):
    """Record Provider backed by a REST document store.

    Args:
        base_url: Documents root, e.g. ``.../v1/projects/<id>/databases/(default)/documents``.
        token: Optional bearer token.
        client: Optional pre-built httpx.AsyncClient (tests inject a MockTransport).
        collections: Entity type -> collection name. Defaults to the SQL table names.
        page_size: Documents requested per list page.
        max_retries: Retries after the first attempt for transient failures.
        retry_wait_seconds: Base of the exponential backoff.
    """

    writable = True

    def __init__(
        self,
        base_url: str,
        token: str = "",
        client: httpx.AsyncClient | None = None,
        collections: dict[EntityType, str] | None = None,
        page_size: int = 300,
        max_retries: int = 2,
        retry_wait_seconds: float = 0.5,
        name: str = "document",
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), headers=headers)
        self._owns_client = client is None
        self._collections = collections or SQL_TABLES
        self._page_size = page_size
        self._max_retries = max_retries
        self._retry_wait = retry_wait_seconds
        self.name = name

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying transient failures with exponential backoff."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._retry_wait, max=5),
            retry=retry_if_exception_type((httpx.TransportError, TransientDocumentStoreError)),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self._client.request(method, path, **kwargs)
                if response.status_code == 429 or response.status_code >= 500:
                    logger.warning(
                        "document_provider.transient_status",
                        method=method,
                        path=path,
                        status_code=response.status_code,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise TransientDocumentStoreError(response.status_code)
        return response

    @staticmethod
    def _from_document(document: dict[str, Any]) -> dict[str, Any]:
        record = from_document_fields(document.get("fields", {}))
        name = document.get("name", "")
        if name and not record.get("id"):
            record["id"] = name.rsplit("/", 1)[-1]
        if "createTime" in document:
            record.setdefault("createdAt", document["createTime"])
        return record

    async def fetch(self, entity_type: EntityType) -> list[dict[str, Any]]:
        collection = self._collections[entity_type]
        records: list[dict[str, Any]] = []
        page_token: str | None = None

        while True:
            params: dict[str, Any] = {"pageSize": self._page_size}
            if page_token:
                params["pageToken"] = page_token
            response = await self._request("GET", f"/{collection}", params=params)
            response.raise_for_status()
            body = response.json()
            records.extend(self._from_document(doc) for doc in body.get("documents", []))
            page_token = body.get("nextPageToken")
            if not page_token:
                break

        logger.debug("document_provider.fetched", entity_type=entity_type.value, count=len(records))
        return records

    async def create(self, entity_type: EntityType, record: dict[str, Any]) -> dict[str, Any]:
        collection = self._collections[entity_type]
        document_id = str(record.get("id") or uuid.uuid4())
        fields = {**record, "id": document_id}

        response = await self._request(
            "POST",
            f"/{collection}",
            params={"documentId": document_id},
            json={"fields": to_document_fields(fields)},
        )
        response.raise_for_status()
        logger.info(
            "document_provider.record_created",
            entity_type=entity_type.value,
            record_id=document_id,
        )
        return self._from_document(response.json())

    async def update(
        self, entity_type: EntityType, record_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        collection = self._collections[entity_type]
        changes = {key: value for key, value in changes.items() if key != "id"}
        params = [("updateMask.fieldPaths", field) for field in changes]
        params.append(("currentDocument.exists", "true"))

        response = await self._request(
            "PATCH",
            f"/{collection}/{record_id}",
            params=params,
            json={"fields": to_document_fields(changes)},
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        logger.info("document_provider.record_updated", entity_type=entity_type.value, record_id=record_id)
        return self._from_document(response.json())

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
