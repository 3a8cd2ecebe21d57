"""Postman API client: the remote collection store."""
import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import HTTP_TIMEOUT_S, POSTMAN_API_URL, Credentials
from .errors import AuthFailure, NotFound, RemoteError, UnsupportedOperation
from .models import COLLECTION_SCHEMA, CollectionSummary, CollectionTree

logger = logging.getLogger(__name__)

# Status codes on the single-request update route that mean "not offered by this store"
UNSUPPORTED_STATUSES = {405, 501}


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_details(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:300]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return error.get("message") or error.get("name") or str(error)
    return str(payload)[:300]


class PostmanStore:
    """Async client for the Postman collection endpoints the engine needs.

    The API key comes from the ``Credentials`` handed in; nothing is read from
    the environment here.
    """

    def __init__(
        self,
        credentials: Credentials,
        base_url: str = POSTMAN_API_URL,
        timeout: float = HTTP_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "x-api-key": credentials.require_postman_key(),
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "PostmanStore":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _request(self, method: str, endpoint: str, idempotent: bool = True, **kwargs: Any) -> Dict[str, Any]:
        """Send one call. Creation calls pass ``idempotent=False``: they are only marked
        retryable when the server cannot have acted on them (no connection, or 429)."""
        logger.debug("Making %s request to %s%s", method, self.base_url, endpoint)
        try:
            response = await self._client.request(method, endpoint, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            # never reached the server
            raise RemoteError(f"Could not connect to Postman API: {method} {endpoint}: {e}", retryable=True) from e
        except httpx.TimeoutException as e:
            raise RemoteError(f"Postman API request timed out: {method} {endpoint}", retryable=idempotent) from e
        except httpx.HTTPError as e:
            raise RemoteError(f"Postman API request failed: {method} {endpoint}: {e}", retryable=idempotent) from e
        return self._handle_response(response, method, endpoint, idempotent)

    def _handle_response(self, response: httpx.Response, method: str, endpoint: str,
                         idempotent: bool = True) -> Dict[str, Any]:
        status = response.status_code
        if status < 400:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise RemoteError(f"Invalid JSON response from Postman API ({method} {endpoint})", status) from e

        details = _error_details(response)
        logger.error("Postman API %s %s returned %s: %s", method, endpoint, status, details)
        if status in (401, 403):
            raise AuthFailure(f"Postman API rejected the credentials ({status}): {details}")
        if status == 404:
            raise NotFound(f"Not found on Postman API: {endpoint} ({details})")
        if status == 429:
            raise RemoteError(f"Postman API rate limit hit: {details}", status, retryable=True,
                              retry_after=_retry_after(response))
        if status >= 500:
            raise RemoteError(f"Postman API server error {status}: {details}", status, retryable=idempotent,
                              retry_after=_retry_after(response))
        raise RemoteError(f"Postman API request failed ({status}): {details}", status)

    # --- Collections ---

    async def list_collections(self, workspace_id: Optional[str] = None) -> List[CollectionSummary]:
        params = {"workspace": workspace_id} if workspace_id else None
        data = await self._request("GET", "/collections", params=params)
        return [CollectionSummary.model_validate(c) for c in data.get("collections", [])]

    async def fetch_tree(self, collection_id: str) -> CollectionTree:
        data = await self._request("GET", f"/collections/{collection_id}")
        collection = data.get("collection")
        if not collection:
            raise NotFound(f"Collection {collection_id} not found.")
        tree = CollectionTree.from_source(collection)
        if tree.id is None:
            tree.id = collection_id
        return tree

    async def create_collection(self, name: str, workspace_id: Optional[str] = None) -> CollectionSummary:
        params = {"workspace": workspace_id} if workspace_id else None
        body = {"collection": {"info": {"name": name, "schema": COLLECTION_SCHEMA}, "item": []}}
        data = await self._request("POST", "/collections", idempotent=False, params=params, json=body)
        collection = data.get("collection") or {}
        if not collection.get("id"):
            raise RemoteError(f"Postman API did not return an id for new collection {name!r}")
        return CollectionSummary.model_validate(collection)

    async def replace_whole_tree(self, collection_id: str, tree: CollectionTree) -> Dict[str, Any]:
        data = await self._request("PUT", f"/collections/{collection_id}", json=tree.to_payload())
        return data.get("collection", data)

    # --- Folders & requests ---

    async def create_folder(self, collection_id: str, parent_folder_id: Optional[str], name: str) -> str:
        body: Dict[str, Any] = {"name": name}
        if parent_folder_id:
            body["folder"] = parent_folder_id
        data = await self._request("POST", f"/collections/{collection_id}/folders", idempotent=False, json=body)
        folder_id = (data.get("data") or {}).get("id")
        if not folder_id:
            raise RemoteError(f"Postman API did not return an id for folder {name!r}")
        return folder_id

    async def create_request(self, collection_id: str, parent_folder_id: Optional[str], payload: Dict[str, Any]) -> str:
        params = {"folder": parent_folder_id} if parent_folder_id else None
        data = await self._request("POST", f"/collections/{collection_id}/requests", idempotent=False,
                                   params=params, json=payload)
        request_id = (data.get("data") or {}).get("id")
        if not request_id:
            raise RemoteError(f"Postman API did not return an id for request {payload.get('name')!r}")
        return request_id

    async def update_single_request(self, collection_id: str, request_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        try:
            data = await self._request("PUT", f"/collections/{collection_id}/requests/{request_id}", json=patch)
        except RemoteError as e:
            if e.status_code in UNSUPPORTED_STATUSES:
                raise UnsupportedOperation(
                    f"Single-request update is not available: {e}", e.status_code) from e
            raise
        return data.get("data", data)
