from typing import Optional
import asyncio
import copy
import time

import httpx

from safewatch.errors import ApiUnavailableError, SyncConflict

ZONES = "safe_zones"
ALERT_JOBS = "alert_jobs"
SHARE_SESSIONS = "share_sessions"
HISTORY = "emergency_events"


class DocumentStoreClient:
    """REST document store: one record per document, scoped by user id."""

    def __init__(self, base_url: str, api_key: str, user_id: str, logger) -> None:
        self.base_url = str(base_url or "").rstrip("/")
        self.api_key = api_key
        self.user_id = str(user_id)
        self.logger = logger
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=10.0, write=10.0, pool=5.0),
            headers={"User-Agent": "safewatch/1.0"},
            follow_redirects=True,
        )

    def _build_url(self, collection: str, doc_id: str | None = None, action: str | None = None) -> str:
        url = f"{self.base_url}/users/{self.user_id}/{collection}"
        if doc_id is not None:
            url = f"{url}/{doc_id}"
        if action:
            url = f"{url}:{action}"
        return url

    async def aclose(self) -> None:
        await self._client.aclose()

    def _require_config(self) -> None:
        if not self.base_url or not self.api_key:
            raise RuntimeError("STORE_API_BASE/STORE_API_KEY не заданы.")

    async def _request(
        self,
        method: str,
        url: str,
        json_data: Optional[dict] = None,
    ) -> httpx.Response:
        self._require_config()
        params = {"key": self.api_key}

        network_backoff = [0.3, 0.8, 1.8]
        status_backoff = [0.3, 0.8]
        network_errors = (
            httpx.ConnectTimeout,
            httpx.ReadTimeout,
            httpx.WriteTimeout,
            httpx.PoolTimeout,
            httpx.ConnectError,
            httpx.ReadError,
            httpx.RemoteProtocolError,
        )

        for attempt in range(1, len(network_backoff) + 2):
            self.logger.debug("STORE_REQUEST attempt=%s method=%s url=%s", attempt, method, url)
            try:
                response = await self._client.request(method, url, params=params, json=json_data)
            except network_errors as exc:
                self.logger.warning(
                    "STORE_REQUEST_EXCEPTION attempt=%s method=%s url=%s error_type=%s error=%s",
                    attempt,
                    method,
                    url,
                    type(exc).__name__,
                    exc,
                )
                if attempt <= len(network_backoff):
                    await asyncio.sleep(network_backoff[attempt - 1])
                    continue
                raise ApiUnavailableError("temporary_store_error") from exc
            except httpx.HTTPError as exc:
                self.logger.warning(
                    "STORE_REQUEST_EXCEPTION attempt=%s method=%s url=%s error_type=%s error=%s",
                    attempt,
                    method,
                    url,
                    type(exc).__name__,
                    exc,
                )
                raise ApiUnavailableError("temporary_store_error") from exc

            if response.status_code in {502, 503, 504}:
                if attempt <= len(status_backoff):
                    self.logger.warning(
                        "STORE_REQUEST_RETRY_STATUS attempt=%s method=%s url=%s status=%s",
                        attempt,
                        method,
                        url,
                        response.status_code,
                    )
                    await asyncio.sleep(status_backoff[attempt - 1])
                    continue
                raise ApiUnavailableError(f"temporary_store_error status={response.status_code}")

            if response.status_code >= 500:
                self.logger.error("STORE_ERROR_STATUS method=%s url=%s status=%s", method, url, response.status_code)
                raise ApiUnavailableError(f"temporary_store_error status={response.status_code}")

            return response

        raise ApiUnavailableError("temporary_store_error")

    def _json(self, response: httpx.Response) -> dict:
        try:
            payload = response.json()
        except ValueError as exc:
            self.logger.error("STORE_ERROR_JSON url=%s status=%s", response.request.url, response.status_code)
            raise ApiUnavailableError("temporary_store_error") from exc
        return payload if isinstance(payload, dict) else {}

    def _raise_for_client_error(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            self.logger.warning(
                "STORE_NON_2XX url=%s status=%s body=%s",
                response.request.url,
                response.status_code,
                response.text[:300],
            )
            raise ApiUnavailableError(f"store_rejected status={response.status_code}")

    async def list(self, collection: str) -> list[dict]:
        response = await self._request("GET", self._build_url(collection))
        self._raise_for_client_error(response)
        documents = self._json(response).get("documents")
        return [doc for doc in documents if isinstance(doc, dict)] if isinstance(documents, list) else []

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        response = await self._request("GET", self._build_url(collection, doc_id))
        if response.status_code == 404:
            return None
        self._raise_for_client_error(response)
        document = self._json(response).get("document")
        return document if isinstance(document, dict) else None

    async def put(self, collection: str, doc_id: str, data: dict) -> None:
        payload = dict(data)
        payload["user_id"] = self.user_id
        response = await self._request("PUT", self._build_url(collection, doc_id), json_data=payload)
        self._raise_for_client_error(response)

    async def patch(self, collection: str, doc_id: str, changes: dict) -> None:
        response = await self._request("PATCH", self._build_url(collection, doc_id), json_data=changes)
        if response.status_code == 404:
            raise SyncConflict(f"{collection}/{doc_id} not found")
        self._raise_for_client_error(response)

    async def delete(self, collection: str, doc_id: str) -> None:
        response = await self._request("DELETE", self._build_url(collection, doc_id))
        if response.status_code == 404:
            return
        self._raise_for_client_error(response)

    async def conditional_update(self, collection: str, doc_id: str, expected: dict, changes: dict) -> dict:
        """Apply ``changes`` only if every ``expected`` field still matches."""
        response = await self._request(
            "POST",
            self._build_url(collection, doc_id, "update"),
            json_data={"expected": expected, "changes": changes},
        )
        if response.status_code in {404, 409, 412}:
            raise SyncConflict(f"{collection}/{doc_id} status={response.status_code}")
        self._raise_for_client_error(response)
        document = self._json(response).get("document")
        return document if isinstance(document, dict) else {}


class MemoryDocumentStore:
    """In-process store with the same contract, used offline and in tests."""

    def __init__(self, user_id: str = "local") -> None:
        self.user_id = str(user_id)
        self._collections: dict[str, dict[str, dict]] = {}
        self._lock = asyncio.Lock()

    def _docs(self, collection: str) -> dict[str, dict]:
        return self._collections.setdefault(collection, {})

    async def aclose(self) -> None:
        return None

    async def list(self, collection: str) -> list[dict]:
        return [copy.deepcopy(doc) for doc in self._docs(collection).values()]

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        doc = self._docs(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def put(self, collection: str, doc_id: str, data: dict) -> None:
        doc = copy.deepcopy(data)
        doc["user_id"] = self.user_id
        doc["updated_ts"] = time.time()
        self._docs(collection)[doc_id] = doc

    async def patch(self, collection: str, doc_id: str, changes: dict) -> None:
        doc = self._docs(collection).get(doc_id)
        if doc is None:
            raise SyncConflict(f"{collection}/{doc_id} not found")
        doc.update(copy.deepcopy(changes))
        doc["updated_ts"] = time.time()

    async def delete(self, collection: str, doc_id: str) -> None:
        self._docs(collection).pop(doc_id, None)

    async def conditional_update(self, collection: str, doc_id: str, expected: dict, changes: dict) -> dict:
        async with self._lock:
            doc = self._docs(collection).get(doc_id)
            if doc is None:
                raise SyncConflict(f"{collection}/{doc_id} not found")
            for key, value in expected.items():
                if doc.get(key) != value:
                    raise SyncConflict(f"{collection}/{doc_id} field={key} expected={value} actual={doc.get(key)}")
            doc.update(copy.deepcopy(changes))
            doc["updated_ts"] = time.time()
            return copy.deepcopy(doc)
