"""
Off-chain API client for authorized mutations.

Every mutation carries the confirmed transaction hash in the ``X-Tx-Hash``
header so the server can verify it against the chain. Error bodies come in
two shapes and both are surfaced:

    {"error": {"msg": "..."}}
    {"error": [{"type": "...", "value": "...", "msg": "...", "path": "..."}]}
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from .exceptions import MissingProofError, OffchainSyncError
from .models import FieldError, OfferDraft, Role, UserView

logger = logging.getLogger(__name__)

TX_HASH_HEADER = "X-Tx-Hash"


def parse_error_body(body: Any) -> Tuple[str, List[FieldError]]:
    """Extract a message and field errors from an error response body."""
    if not isinstance(body, dict):
        return (str(body) if body else "", [])
    error = body.get("error", body.get("message"))
    if isinstance(error, list):
        fields = [
            FieldError(path=str(item.get("path", "")), msg=str(item.get("msg", "")))
            for item in error
            if isinstance(item, dict)
        ]
        message = "; ".join(f"{f.path}: {f.msg}" if f.path else f.msg for f in fields)
        return message or "validation failed", fields
    if isinstance(error, dict):
        return str(error.get("msg") or error.get("message") or error), []
    if error:
        return str(error), []
    return "", []


class OffchainSyncClient:
    """Bearer-token client for the application API."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            transport=transport,
        )

    def _headers(self, tx_hash: Optional[str] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if tx_hash:
            headers[TX_HASH_HEADER] = tx_hash
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        tx_hash: Optional[str] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(
                method, path, headers=self._headers(tx_hash), **kwargs
            )
        except httpx.TimeoutException as e:
            raise OffchainSyncError(f"{method} {path} timed out: {e}", transient=True) from e
        except httpx.HTTPError as e:
            raise OffchainSyncError(f"{method} {path} failed: {e}", transient=True) from e

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = response.text

        if response.is_success:
            if isinstance(body, dict) and body.get("error"):
                message, fields = parse_error_body(body)
                raise OffchainSyncError(message, response.status_code, fields)
            return body if isinstance(body, dict) else {"data": body}

        message, fields = parse_error_body(body)
        if not message:
            message = f"HTTP {response.status_code}"
        logger.warning(f"{method} {path} returned {response.status_code}: {message}")
        raise OffchainSyncError(
            message,
            status_code=response.status_code,
            field_errors=fields,
            transient=response.status_code >= 500,
        )

    @staticmethod
    def _require_proof(tx_hash: Optional[str]) -> str:
        if not tx_hash:
            raise MissingProofError("Refusing an off-chain mutation without a transaction hash")
        return tx_hash

    # ------------------------------------------------------------------
    # Authorized mutations
    # ------------------------------------------------------------------

    async def grant_role(self, user_id: int, role_id: int, tx_hash: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            f"/user/{user_id}/roles",
            self._require_proof(tx_hash),
            json={"roleID": role_id},
        )

    async def revoke_role(self, user_id: int, role_id: int, tx_hash: str) -> Dict[str, Any]:
        return await self._request(
            "DELETE",
            f"/user/{user_id}/roles/{role_id}",
            self._require_proof(tx_hash),
        )

    async def create_offer(
        self,
        draft: OfferDraft,
        contract_address: Optional[str],
        tx_hash: str,
        documents: Sequence[Tuple[str, bytes]] = (),
    ) -> Dict[str, Any]:
        """Post the offer as a multipart form."""
        files: List[Tuple[str, Tuple[Optional[str], Any]]] = [
            (name, (None, value)) for name, value in draft.to_form(contract_address).items()
        ]
        files.extend(("documents", (filename, content)) for filename, content in documents)
        return await self._request(
            "POST",
            "/tender/offer",
            self._require_proof(tx_hash),
            files=files,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_user(self, user_id: int) -> UserView:
        body = await self._request("GET", f"/user/{user_id}")
        return UserView.from_dict(body.get("user", body))

    async def list_roles(self) -> List[Role]:
        body = await self._request("GET", "/roles")
        return [Role.from_dict(r) for r in body.get("roles") or []]

    async def find_role(self, name: str) -> Optional[Role]:
        for role in await self.list_roles():
            if role.name.lower() == name.lower():
                return role
        return None

    async def list_users(self, page: int = 1, limit: int = 50) -> Tuple[List[UserView], int]:
        """One page of users and the total page count."""
        body = await self._request("GET", "/users", params={"page": page, "limit": limit})
        users = [UserView.from_dict(u) for u in body.get("users") or []]
        total_pages = int((body.get("pagination") or {}).get("totalPages", 1))
        return users, total_pages

    async def iter_users(self, limit: int = 50):
        page, total_pages = 1, 1
        while page <= total_pages:
            users, total_pages = await self.list_users(page, limit)
            for user in users:
                yield user
            page += 1

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "OffchainSyncClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
