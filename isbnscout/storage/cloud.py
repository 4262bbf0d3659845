"""Cloud record store for isbnscout.

Talks to the hosted Postgres database through its PostgREST interface
(``{backend_url}/rest/v1/{table}``), the same API the Supabase client uses.
Zero DB coupling: pure HTTP.

HTTP and transport failures are translated into the store error taxonomy
here, where the real cause is known:

- 409 with SQLSTATE 23505 (unique_violation) -> IdentityConflictError
- 409 with SQLSTATE 23503 (foreign_key_violation) -> ReferentialIntegrityError
- timeouts, transport errors, 408/425/429/5xx -> TransientStoreError
- any other 4xx -> PermanentStoreError
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from isbnscout.errors import (
    IdentityConflictError,
    PermanentStoreError,
    ReferentialIntegrityError,
    TransientStoreError,
)
from isbnscout.types import ApiCredentials, EntityType, record_from_dict, record_to_dict, utc_now

from .base import RecordTable, table_for

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class CloudStorage:
    """Remote record store backed by PostgREST.

    Args:
        backend_url: Base URL of the hosted project (no trailing slash).
        api_key: Service or anon key, sent as ``apikey`` and bearer token.
        timeout: Per-request timeout in seconds. Expiry is a transient failure.
        client: Optional preconfigured ``httpx.Client`` (tests inject one
            with a ``MockTransport``).
    """

    def __init__(
        self,
        backend_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.backend_url = backend_url.rstrip("/")
        self.timeout = timeout
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._headers = headers
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None

    def close(self):
        if self._owns_client:
            self._client.close()

    # === HTTP plumbing ===

    def _url(self, spec: RecordTable) -> str:
        return f"{self.backend_url}/rest/v1/{spec.table}"

    @staticmethod
    def _eq(value: Any) -> str:
        if isinstance(value, datetime):
            value = value.isoformat()
        return f"eq.{value}"

    def _request(
        self,
        method: str,
        spec: RecordTable,
        *,
        params: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        prefer: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Send one request and return the decoded row list."""
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        entity = spec.entity_type.value

        try:
            response = self._client.request(
                method,
                self._url(spec),
                params=params,
                json=json_body,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientStoreError(
                f"Timed out calling {method} {spec.table}: {e}", entity_type=entity
            ) from e
        except httpx.TransportError as e:
            raise TransientStoreError(
                f"Connection failed for {method} {spec.table}: {e}", entity_type=entity
            ) from e

        if response.is_success:
            if not response.content:
                return []
            data = response.json()
            return data if isinstance(data, list) else [data]

        raise self._error_for_response(response, spec)

    def _error_for_response(self, response: httpx.Response, spec: RecordTable) -> Exception:
        entity = spec.entity_type.value
        status = response.status_code
        code = None
        message = response.text[:300]
        try:
            body = response.json()
            if isinstance(body, dict):
                code = body.get("code")
                message = body.get("message") or message
        except ValueError:
            pass

        if code == UNIQUE_VIOLATION:
            return IdentityConflictError(f"Duplicate {entity}: {message}", entity_type=entity)
        if code == FOREIGN_KEY_VIOLATION:
            return ReferentialIntegrityError(
                f"Missing parent record for {entity}: {message}", entity_type=entity
            )
        if status in RETRYABLE_STATUS_CODES:
            return TransientStoreError(
                f"HTTP {status} from {spec.table}: {message}",
                entity_type=entity,
                status_code=status,
            )
        if status == 409:
            # Conflict without a SQLSTATE: treat as an identity clash
            return IdentityConflictError(f"Duplicate {entity}: {message}", entity_type=entity)
        return PermanentStoreError(f"HTTP {status} from {spec.table}: {message}", entity_type=entity)

    def _row_to_record(self, spec: RecordTable, row: Dict[str, Any]) -> Any:
        return record_from_dict(spec.record_cls, row)

    # === Record operations ===

    def create(self, entity_type: EntityType, record: Any) -> Any:
        spec = table_for(entity_type)
        body = record_to_dict(record)
        if not body.get("id"):
            body.pop("id", None)  # server assigns one
        now = utc_now()
        for name in spec.created_fields:
            if body.get(name) is None:
                body[name] = now
        rows = self._request("POST", spec, json_body=body, prefer="return=representation")
        return self._row_to_record(spec, rows[0]) if rows else record

    def get(self, entity_type: EntityType, key: str) -> Optional[Any]:
        return self.find_one(entity_type, id=key)

    def find_one(self, entity_type: EntityType, **filters: Any) -> Optional[Any]:
        spec = table_for(entity_type)
        if not filters:
            raise ValueError("find_one requires at least one filter")
        params = {name: self._eq(value) for name, value in filters.items()}
        params["limit"] = "1"
        rows = self._request("GET", spec, params=params)
        return self._row_to_record(spec, rows[0]) if rows else None

    def list_for_owner(self, entity_type: EntityType, owner_key: str, **filters: Any) -> List[Any]:
        spec = table_for(entity_type)
        if spec.owner_field is None:
            raise ValueError(f"{spec.entity_type.value} records have no owner")
        params = {name: self._eq(value) for name, value in filters.items()}
        params[spec.owner_field] = self._eq(owner_key)
        params["order"] = f"{spec.order_by}.desc"
        rows = self._request("GET", spec, params=params)
        return [self._row_to_record(spec, row) for row in rows]

    def update(self, entity_type: EntityType, key: str, updates: Dict[str, Any]) -> Optional[Any]:
        spec = table_for(entity_type)
        body = {
            k: (v.isoformat() if isinstance(v, datetime) else v)
            for k, v in updates.items()
            if k != "id"
        }
        now = utc_now()
        for name in spec.touched_fields:
            body.setdefault(name, now)
        rows = self._request(
            "PATCH",
            spec,
            params={"id": self._eq(key)},
            json_body=body,
            prefer="return=representation",
        )
        return self._row_to_record(spec, rows[0]) if rows else None

    def upsert_credentials(
        self,
        user_id: str,
        platform: str,
        credentials: Dict[str, Any],
        record_id: Optional[str] = None,
    ) -> ApiCredentials:
        spec = table_for(EntityType.API_CREDENTIALS)
        now = utc_now()
        body = {
            "user_id": user_id,
            "platform": platform,
            "credentials": credentials,
            "is_active": "true",
            "updated_at": now,
        }
        existing = self.find_one(EntityType.API_CREDENTIALS, user_id=user_id, platform=platform)
        if existing is not None:
            rows = self._request(
                "PATCH",
                spec,
                params={"id": self._eq(existing.id)},
                json_body=body,
                prefer="return=representation",
            )
        else:
            if record_id:
                body["id"] = record_id
            body["created_at"] = now
            rows = self._request(
                "POST",
                spec,
                params={"on_conflict": "user_id,platform"},
                json_body=body,
                prefer="return=representation,resolution=merge-duplicates",
            )
        if not rows:
            return self.find_one(EntityType.API_CREDENTIALS, user_id=user_id, platform=platform)
        return self._row_to_record(spec, rows[0])

    # === Connectivity ===

    def health_check(self, timeout: float = 3.0) -> Dict[str, Any]:
        """Test backend connectivity.

        Returns:
            Dict with keys:
            - 'healthy': bool indicating if the backend is reachable
            - 'latency_ms': response time in milliseconds (if healthy)
            - 'error': error message (if not healthy)
        """
        start = time.time()
        try:
            response = self._client.get(
                f"{self.backend_url}/rest/v1/", headers=self._headers, timeout=timeout
            )
        except httpx.HTTPError as e:
            logger.debug("Cloud health check failed: %s", e)
            return {"healthy": False, "error": f"Connection failed: {e}"}

        latency_ms = (time.time() - start) * 1000
        if response.status_code < 500:
            return {"healthy": True, "latency_ms": round(latency_ms, 2)}
        return {"healthy": False, "error": f"HTTP {response.status_code}"}
