"""
konter_client.py

A small API client for this backend, for scripts and chat bots.

What it provides:
- JWT login + authenticated requests (re-login once on 401)
- Stock movements with an idempotency key. A movement call that dies on a
  connection error or timeout is retried once with the same key, so the
  server records it at most once.
- Checkout, service tickets and report helpers

Environment variables expected (see `from_env`):
- KONTER_API_URL: e.g. "https://your-domain.com/api"
- KONTER_API_EMAIL / KONTER_API_PASSWORD: an existing user with a branch
- KONTER_API_TOKEN (optional): pre-seeded token, otherwise we login
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import requests

logger = logging.getLogger(__name__)


class ApiError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ApiTransportError(ApiError):
    """The request never got an HTTP response (connection refused, timeout ...)."""


@dataclass
class KonterApiClient:
    base_url: str
    email: str
    password: str
    token: Optional[str] = None
    timeout: float = 30

    @classmethod
    def from_env(cls) -> "KonterApiClient":
        base_url = os.getenv("KONTER_API_URL", "").strip()
        email = os.getenv("KONTER_API_EMAIL", "").strip()
        password = os.getenv("KONTER_API_PASSWORD", "")
        if not base_url or not email or not password:
            raise RuntimeError("Missing KONTER_API_URL / KONTER_API_EMAIL / KONTER_API_PASSWORD")
        return cls(base_url=base_url, email=email, password=password, token=os.getenv("KONTER_API_TOKEN") or None)

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def login(self) -> str:
        """
        FastAPI-Users JWT login endpoint.
        POST /auth/jwt/login with form fields: username, password
        """
        try:
            resp = requests.post(
                self._url("/auth/jwt/login"),
                data={"username": self.email, "password": self.password},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ApiTransportError(f"Login failed: {e}") from e
        if resp.status_code >= 400:
            raise ApiError(f"Login failed ({resp.status_code}): {resp.text}", resp.status_code)
        token = resp.json().get("access_token")
        if not token:
            raise ApiError("Login response missing access_token")
        self.token = token
        return token

    def _send(self, method: str, path: str, *, json: Any = None, params: Optional[Dict[str, Any]] = None):
        try:
            return requests.request(
                method,
                self._url(path),
                json=json,
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ApiTransportError(f"{method} {path} failed: {e}") from e

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        retry_transport: bool = False,
    ) -> Any:
        if not self.token:
            self.login()

        try:
            resp = self._send(method, path, json=json, params=params)
        except ApiTransportError:
            if not retry_transport:
                raise
            logger.warning("%s %s: connection error, retrying once", method, path)
            resp = self._send(method, path, json=json, params=params)

        # Token expired: log in again and retry once.
        if resp.status_code == 401:
            self.login()
            resp = self._send(method, path, json=json, params=params)

        if resp.status_code >= 400:
            detail = resp.text
            try:
                detail = resp.json().get("detail", detail)
            except ValueError:
                pass
            raise ApiError(f"{method} {path} failed ({resp.status_code}): {detail}", resp.status_code)

        if resp.status_code == 204:
            return None
        return resp.json()

    # ----------------------------
    # Inventory
    # ----------------------------

    def record_movement(
        self,
        *,
        movement_type: str,  # "IN" | "OUT" | "ADJUSTMENT" | "TRANSFER"
        items: Iterable[Dict[str, Any]],  # {"product_id", "quantity", optional "variant_id", "unit_cost"}
        from_location_id: Optional[str] = None,
        to_location_id: Optional[str] = None,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Calls: POST /inventory/movements

        The idempotency key is generated when not given, and reused for the retry.
        The response has `replayed=true` when the server had already recorded it.
        """
        payload = {
            "movement_type": movement_type,
            "from_location_id": from_location_id,
            "to_location_id": to_location_id,
            "items": [dict(it) for it in items],
            "notes": notes,
            "idempotency_key": idempotency_key or str(uuid.uuid4()),
        }
        return self._request("POST", "/inventory/movements", json=payload, retry_transport=True)

    def stock_in(self, *, location_id: str, product_id: str, quantity: int, **kwargs) -> Dict[str, Any]:
        return self.record_movement(
            movement_type="IN",
            to_location_id=location_id,
            items=[{"product_id": product_id, "quantity": quantity}],
            **kwargs,
        )

    def stock_out(self, *, location_id: str, product_id: str, quantity: int, **kwargs) -> Dict[str, Any]:
        return self.record_movement(
            movement_type="OUT",
            from_location_id=location_id,
            items=[{"product_id": product_id, "quantity": quantity}],
            **kwargs,
        )

    def transfer(
        self, *, from_location_id: str, to_location_id: str, product_id: str, quantity: int, **kwargs
    ) -> Dict[str, Any]:
        return self.record_movement(
            movement_type="TRANSFER",
            from_location_id=from_location_id,
            to_location_id=to_location_id,
            items=[{"product_id": product_id, "quantity": quantity}],
            **kwargs,
        )

    def list_stock(self, *, low_stock_only: bool = False, q: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"low_stock_only": str(low_stock_only).lower()}
        if q:
            params["q"] = q
        return self._request("GET", "/inventory/stock", params=params)

    # ----------------------------
    # Sales / service / reports
    # ----------------------------

    def checkout(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Calls: POST /sales/checkout (not retried: a checkout has no idempotency key)."""
        return self._request("POST", "/sales/checkout", json=payload)

    def create_ticket(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/service/tickets", json=payload)

    def set_ticket_status(self, ticket_id: str, status: str) -> Dict[str, Any]:
        return self._request("POST", f"/service/tickets/{ticket_id}/status", json={"status": status})

    def dashboard(self) -> Dict[str, Any]:
        return self._request("GET", "/reports/dashboard")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    client = KonterApiClient.from_env()
    client.login()
    print(client.dashboard())
