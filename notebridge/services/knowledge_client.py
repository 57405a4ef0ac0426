"""
HTTP client for the remote knowledge base service.

Every RPC goes through `_call`, which folds transport problems (request
errors, timeouts, non-2xx) into RemoteTransportError and a 2xx envelope with
`Success: false` into RemoteApplicationError. Callers never see raw httpx
exceptions.
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx

import notebridge.config as config
from notebridge.errors import RemoteApplicationError, RemoteTransportError
from notebridge.services.shared import logger

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
# Failures raised before any request bytes reached the server
UNSENT_REQUEST_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)
SOURCE_TYPE_DATA_CENTER_FILE = "DATA_CENTER_FILE"
CATEGORY_TYPE_UNSTRUCTURED = "UNSTRUCTURED"


@dataclass(frozen=True)
class UploadLease:
    lease_id: str
    upload_url: str
    upload_method: str = "PUT"
    upload_headers: dict = field(default_factory=dict)


class RemoteCircuitBreaker:
    """
    Per-RPC breaker over transport failures.

    Only failures where the service could not be reached or answered with an
    unusable response count. A `Success: false` envelope proves the service is
    up, so it resets the action's streak like any other answer. A run of
    failures on one action (say CreateIndex) cools that action down without
    blocking retrieval or uploads.
    """

    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._failures: dict[str, int] = {}
        self._cooldown_until: dict[str, float] = {}
        self._last_error: Optional[str] = None
        self._last_failure_ts: Optional[float] = None
        self._last_reachable_ts: Optional[float] = None

    def allows(self, action: str) -> bool:
        with self._lock:
            return time.time() >= self._cooldown_until.get(action, 0.0)

    def record_reachable(self, action: str) -> None:
        with self._lock:
            self._failures.pop(action, None)
            self._cooldown_until.pop(action, None)
            self._last_reachable_ts = time.time()

    def record_transport_failure(self, action: str, error: str) -> None:
        with self._lock:
            now = time.time()
            count = self._failures.get(action, 0) + 1
            self._failures[action] = count
            self._last_error = error
            self._last_failure_ts = now
            if count >= self._failure_threshold:
                self._cooldown_until[action] = now + self._cooldown_seconds

    def status(self) -> dict:
        with self._lock:
            now = time.time()
            cooling = sorted(a for a, until in self._cooldown_until.items() if now < until)
            return {
                "open": bool(cooling),
                "open_actions": cooling,
                "failures": dict(self._failures),
                "last_error": self._last_error,
                "last_failure_epoch": int(self._last_failure_ts) if self._last_failure_ts else None,
                "last_reachable_epoch": int(self._last_reachable_ts) if self._last_reachable_ts else None,
            }


remote_circuit_breaker = RemoteCircuitBreaker(
    failure_threshold=config.KB_FAILURE_THRESHOLD,
    cooldown_seconds=config.KB_COOLDOWN_SECONDS,
)


def _sleep_backoff(attempt: int) -> None:
    base = config.KB_RETRY_BACKOFF_SECONDS * (2 ** attempt)
    jitter = random.uniform(0, config.KB_RETRY_JITTER_SECONDS)
    time.sleep(base + jitter)


def _data(body: dict) -> dict:
    data = body.get("Data")
    return data if isinstance(data, dict) else {}


class KnowledgeBaseClient:
    """Thin RPC wrapper around the remote knowledge base API."""

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        workspace_id: str,
        *,
        timeout_seconds: float = 30.0,
        retry_max: int = 2,
        breaker: Optional[RemoteCircuitBreaker] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.workspace_id = workspace_id
        self._retry_max = max(0, retry_max)
        self._breaker = breaker
        timeout = httpx.Timeout(timeout_seconds)
        self._http = httpx.Client(
            base_url=endpoint,
            timeout=timeout,
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )
        # Lease uploads go to pre-signed URLs and must not carry our credentials
        self._upload_http = httpx.Client(timeout=timeout, transport=transport)

    @classmethod
    def from_config(cls) -> "KnowledgeBaseClient":
        if not config.kb_credentials_configured():
            raise RemoteTransportError("Knowledge base client not configured (KB_API_KEY/KB_WORKSPACE_ID)")
        logger.info(f"Creating knowledge base client for endpoint: {config.KB_ENDPOINT}")
        return cls(
            config.KB_ENDPOINT,
            config.KB_API_KEY,
            config.KB_WORKSPACE_ID,
            timeout_seconds=config.KB_TIMEOUT_SECONDS,
            retry_max=config.KB_RETRY_MAX,
            breaker=remote_circuit_breaker,
        )

    def close(self) -> None:
        self._http.close()
        self._upload_http.close()

    def _record_failure(self, action: str, error: str) -> None:
        if self._breaker is not None:
            self._breaker.record_transport_failure(action, error)

    def _record_reachable(self, action: str) -> None:
        if self._breaker is not None:
            self._breaker.record_reachable(action)

    def _call(self, action: str, payload: dict, *, idempotent: bool = False) -> dict:
        """
        POST one RPC. Idempotent actions are retried on any request error and
        on RETRYABLE_STATUS_CODES. Anything else is retried only when the
        request never reached the server, since a timeout or 5xx after it was
        sent may already have created a file, job or index.
        """
        if self._breaker is not None and not self._breaker.allows(action):
            raise RemoteTransportError(f"{action}: circuit breaker open")
        path = f"/workspaces/{self.workspace_id}/{action}"

        response = None
        for attempt in range(self._retry_max + 1):
            try:
                response = self._http.post(path, json=payload)
            except httpx.RequestError as exc:
                unsent = isinstance(exc, UNSENT_REQUEST_ERRORS)
                if attempt >= self._retry_max or not (idempotent or unsent):
                    self._record_failure(action, f"{action}: {exc}")
                    raise RemoteTransportError(f"{action}: {exc}") from exc
                _sleep_backoff(attempt)
                continue
            if idempotent and response.status_code in RETRYABLE_STATUS_CODES and attempt < self._retry_max:
                _sleep_backoff(attempt)
                continue
            break

        if response.status_code >= 400:
            self._record_failure(action, f"{action}: status {response.status_code}")
            raise RemoteTransportError(
                f"{action}: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            self._record_failure(action, f"{action}: invalid JSON")
            raise RemoteTransportError(f"{action}: invalid JSON response") from exc
        if not isinstance(body, dict):
            self._record_failure(action, f"{action}: unexpected response shape")
            raise RemoteTransportError(f"{action}: unexpected response shape")

        self._record_reachable(action)
        if body.get("Success") is False:
            code = body.get("Code")
            message = body.get("Message") or "unknown error"
            logger.warning(
                "kb_application_error",
                extra={"action": action, "code": code, "request_id": body.get("RequestId")},
            )
            raise RemoteApplicationError(
                f"{action}: {code} - {message}",
                code=code,
                request_id=body.get("RequestId"),
            )
        return body

    # -------------------------------------------------------------------------
    # RPCs
    # -------------------------------------------------------------------------

    def apply_upload_lease(
        self,
        category_id: str,
        file_name: str,
        checksum: str,
        size_bytes: int,
    ) -> UploadLease:
        body = self._call(
            "ApplyFileUploadLease",
            {
                "CategoryId": category_id,
                "CategoryType": CATEGORY_TYPE_UNSTRUCTURED,
                "FileName": file_name,
                "Md5": checksum,
                "SizeInBytes": str(size_bytes),
            },
            idempotent=True,
        )
        data = _data(body)
        param = data.get("Param") or {}
        lease_id = data.get("FileUploadLeaseId")
        if not lease_id:
            raise RemoteApplicationError("ApplyFileUploadLease: no lease id in response")
        if not param.get("Url"):
            raise RemoteApplicationError("ApplyFileUploadLease: no upload URL in lease response")
        headers = param.get("Headers") or {}
        return UploadLease(
            lease_id=lease_id,
            upload_url=param["Url"],
            upload_method=(param.get("Method") or "PUT").upper(),
            upload_headers={str(k): str(v) for k, v in headers.items()},
        )

    def transmit_bytes(
        self,
        upload_url: str,
        upload_method: str,
        upload_headers: dict,
        payload: bytes,
    ) -> None:
        method = "PUT" if (upload_method or "").upper() == "PUT" else "POST"
        logger.info(f"Uploading {len(payload)} bytes via {method}")
        try:
            response = self._upload_http.request(
                method,
                upload_url,
                content=payload,
                headers=upload_headers or {},
            )
        except httpx.RequestError as exc:
            raise RemoteTransportError(f"upload: {exc}") from exc
        if response.status_code >= 300:
            raise RemoteTransportError(
                f"upload: HTTP {response.status_code}",
                status_code=response.status_code,
            )

    def register_file(self, category_id: str, lease_id: str, parser_hint: str) -> str:
        body = self._call(
            "AddFile",
            {"CategoryId": category_id, "LeaseId": lease_id, "Parser": parser_hint},
        )
        file_id = _data(body).get("FileId")
        if not file_id:
            raise RemoteApplicationError("AddFile: no file id returned")
        return str(file_id)

    def submit_index_ingestion(self, index_id: str, source_type: str, file_ids: list[str]) -> Optional[str]:
        body = self._call(
            "SubmitIndexAddDocumentsJob",
            {"IndexId": index_id, "SourceType": source_type, "DocumentIds": list(file_ids)},
        )
        return _data(body).get("Id")

    def delete_remote_file(self, remote_file_id: str) -> bool:
        body = self._call("DeleteFile", {"FileId": remote_file_id}, idempotent=True)
        return body.get("Success") is True

    def similarity_search(self, index_id: str, query: str, top_k: int) -> dict:
        body = self._call(
            "Retrieve",
            {"IndexId": index_id, "Query": query, "DenseSimilarityTopK": top_k},
            idempotent=True,
        )
        nodes = _data(body).get("Nodes") or []
        return {"request_id": body.get("RequestId"), "nodes": nodes}

    def create_remote_index(self, name: str, embedding_model: str, description: str) -> str:
        body = self._call(
            "CreateIndex",
            {
                "Name": name,
                "StructureType": "unstructured",
                "SinkType": "DEFAULT",
                "SourceType": SOURCE_TYPE_DATA_CENTER_FILE,
                "EmbeddingModelName": embedding_model,
                "Description": description,
            },
        )
        index_id = _data(body).get("Id")
        if not index_id:
            raise RemoteApplicationError(f"CreateIndex: no index id returned ({body.get('Message')})")
        return str(index_id)


# =============================================================================
# Process-wide handle
# =============================================================================

class KB:
    """Knowledge base client holder (created at most once per process)."""

    client = None


_CLIENT_LOCK = threading.Lock()


def get_client() -> KnowledgeBaseClient:
    if KB.client is None:
        with _CLIENT_LOCK:
            if KB.client is None:
                KB.client = KnowledgeBaseClient.from_config()
    return KB.client


def init_client() -> None:
    """Eagerly create the client at startup when credentials are present."""
    if not config.kb_credentials_configured():
        logger.warning("Knowledge base credentials missing; client not initialized")
        return
    get_client()
    logger.info("Knowledge base client initialized")


def close_client() -> None:
    with _CLIENT_LOCK:
        if KB.client is not None:
            KB.client.close()
            KB.client = None
            logger.info("Knowledge base client closed")
