from __future__ import annotations

import base64
import binascii
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx

from scopevault.config import Settings
from scopevault.logging import get_logger
from scopevault.storage.errors import (
    BackendError,
    ResourceAlreadyExists,
    ResourceNotFound,
    TransientBackendError,
)
from scopevault.storage.models import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    Scope,
    ScopePhase,
)

logger = get_logger(__name__)

# Besides these, every 5xx status is transient.
_TRANSIENT_STATUS = {408, 429}


def _encode_data(data: Dict[str, str]) -> Dict[str, str]:
    return {
        key: base64.b64encode(value.encode("utf-8")).decode("ascii")
        for key, value in data.items()
    }


def _decode_data(data: Optional[Dict[str, str]], *, name: str) -> Dict[str, str]:
    result: Dict[str, str] = {}
    for key, value in (data or {}).items():
        try:
            result[key] = base64.b64decode(value, validate=True).decode("utf-8")
        except (binascii.Error, ValueError) as exc:
            # UnicodeDecodeError is a ValueError.
            raise BackendError(
                f"secret {name!r}: key {key!r} is not UTF-8 text",
                kind="secret",
                name=name,
                detail={"key": key},
            ) from exc
    return result


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _scope_from_object(obj: Dict[str, Any]) -> Scope:
    metadata = obj.get("metadata") or {}
    raw_phase = (obj.get("status") or {}).get("phase")
    try:
        phase = ScopePhase(raw_phase) if raw_phase else ScopePhase.PENDING
    except ValueError:
        phase = ScopePhase.PENDING
    return Scope(
        name=metadata.get("name", ""),
        phase=phase,
        finalizers=list((obj.get("spec") or {}).get("finalizers") or []),
        labels=dict(metadata.get("labels") or {}),
        created_at=_parse_timestamp(metadata.get("creationTimestamp")),
    )


class KubernetesBackend:
    """Tenant scopes as namespaces, secret resources as ``Opaque`` secrets.

    Talks to the core/v1 REST API with a single long-lived ``httpx`` client
    built at startup; credentials are never re-read after construction.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        verify: Union[bool, str] = True,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            verify=verify,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "KubernetesBackend":
        token = settings.kube_token
        token_path = Path(settings.kube_token_path)
        if not token and token_path.exists():
            token = token_path.read_text().strip()
        if not token:
            logger.warning("kube_token_missing", path=str(token_path))
        verify: Union[bool, str] = settings.kube_verify_tls
        ca_path = Path(settings.kube_ca_path)
        if settings.kube_verify_tls and ca_path.exists():
            verify = str(ca_path)
        return cls(
            settings.kube_api_url,
            token=token,
            verify=verify,
            timeout=settings.kube_request_timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        kind: str,
        name: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as exc:
            raise TransientBackendError(
                f"{kind} {name!r}: request timed out", kind=kind, name=name
            ) from exc
        except httpx.TransportError as exc:
            raise TransientBackendError(
                f"{kind} {name!r}: {exc.__class__.__name__}", kind=kind, name=name
            ) from exc
        self._raise_for_status(response, kind=kind, name=name)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(
                f"{kind} {name!r}: unreadable response body", kind=kind, name=name
            ) from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response, *, kind: str, name: str) -> None:
        status = response.status_code
        if status < 400:
            return
        reason = ""
        try:
            body = response.json()
            if isinstance(body, dict):
                reason = body.get("message") or body.get("reason") or ""
        except ValueError:
            reason = response.text[:200]
        message = f"{kind} {name!r}: {reason or response.reason_phrase}"
        detail = {"status_code": status}
        if status == 404:
            raise ResourceNotFound(message, kind=kind, name=name, detail=detail)
        if status == 409:
            raise ResourceAlreadyExists(message, kind=kind, name=name, detail=detail)
        if status in _TRANSIENT_STATUS or status >= 500:
            raise TransientBackendError(message, kind=kind, name=name, detail=detail)
        raise BackendError(message, kind=kind, name=name, detail=detail)

    # -- secrets ----------------------------------------------------------

    async def create_secret(self, scope: str, name: str, data: Dict[str, str]) -> None:
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {
                "name": name,
                "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            },
            "type": "Opaque",
            "data": _encode_data(data),
        }
        await self._request(
            "POST",
            f"/api/v1/namespaces/{scope}/secrets",
            kind="secret",
            name=name,
            json=body,
        )

    async def get_secret(self, scope: str, name: str) -> Dict[str, str]:
        obj = await self._request(
            "GET", f"/api/v1/namespaces/{scope}/secrets/{name}", kind="secret", name=name
        )
        return _decode_data(obj.get("data"), name=name)

    async def update_secret(self, scope: str, name: str, data: Dict[str, str]) -> None:
        path = f"/api/v1/namespaces/{scope}/secrets/{name}"
        obj = await self._request("GET", path, kind="secret", name=name)
        # Full replace: drop stringData (which merges) and any stale keys, and
        # send no resourceVersion so the write is unconditional.
        metadata = dict(obj.get("metadata") or {})
        metadata.pop("resourceVersion", None)
        metadata.pop("managedFields", None)
        obj["metadata"] = metadata
        obj.pop("stringData", None)
        obj["data"] = _encode_data(data)
        await self._request("PUT", path, kind="secret", name=name, json=obj)

    async def delete_secret(self, scope: str, name: str) -> None:
        await self._request(
            "DELETE",
            f"/api/v1/namespaces/{scope}/secrets/{name}",
            kind="secret",
            name=name,
        )

    async def list_secrets(self, scope: str) -> List[str]:
        obj = await self._request(
            "GET",
            f"/api/v1/namespaces/{scope}/secrets",
            kind="scope",
            name=scope,
            params={"labelSelector": f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"},
        )
        names = [
            (item.get("metadata") or {}).get("name", "")
            for item in obj.get("items") or []
        ]
        return sorted(n for n in names if n)

    # -- scopes -----------------------------------------------------------

    async def create_scope(self, name: str) -> None:
        body = {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {
                "name": name,
                "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            },
        }
        await self._request("POST", "/api/v1/namespaces", kind="scope", name=name, json=body)

    async def get_scope(self, name: str) -> Scope:
        obj = await self._request("GET", f"/api/v1/namespaces/{name}", kind="scope", name=name)
        return _scope_from_object(obj)

    async def delete_scope(self, name: str) -> None:
        try:
            await self._request("DELETE", f"/api/v1/namespaces/{name}", kind="scope", name=name)
        except ResourceAlreadyExists:
            # The API server answers 409 while the namespace is already terminating.
            logger.info("scope_already_terminating", scope=name)

    async def finalize_scope(self, name: str) -> List[str]:
        """Clear ``spec.finalizers`` through the namespace finalize subresource."""
        obj = await self._request("GET", f"/api/v1/namespaces/{name}", kind="scope", name=name)
        spec = dict(obj.get("spec") or {})
        cleared = list(spec.get("finalizers") or [])
        spec["finalizers"] = []
        obj["spec"] = spec
        await self._request(
            "PUT",
            f"/api/v1/namespaces/{name}/finalize",
            kind="scope",
            name=name,
            json=obj,
        )
        return cleared
