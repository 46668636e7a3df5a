"""HTTP access to the workshop backend."""
from __future__ import annotations

import base64
import json
import logging
import random
import time
from typing import Any, Dict, Optional

import requests

SESSION_EXPIRED = "Session expired, please log in again"

HOSTED_SUFFIXES = (".railway.app", ".vercel.app")


class ApiError(Exception):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class AuthError(ApiError):
    """The session is missing or expired; the user has to log in again."""

    def __init__(self, message: str = SESSION_EXPIRED) -> None:
        super().__init__(message or SESSION_EXPIRED, status=401)


def normalize_base_url(url: str, production: bool = False) -> str:
    url = (url or "").strip()
    if url and not url.startswith(("http://", "https://")):
        hosted = production or any(s in url for s in HOSTED_SUFFIXES)
        url = f"{'https' if hosted else 'http'}://{url}"
    return url.rstrip("/")


def token_expired(token: Optional[str], leeway: float = 5.0) -> bool:
    """Check the ``exp`` claim of a JWT without verifying it."""
    if not token:
        return True
    parts = token.split(".")
    if len(parts) != 3:
        return True
    try:
        padded = parts[1] + "=" * (-len(parts[1]) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded))
    except ValueError:
        return True
    exp = payload.get("exp") if isinstance(payload, dict) else None
    if not exp:
        return False
    return time.time() >= float(exp) - leeway


def _error_message(resp: requests.Response) -> Optional[str]:
    try:
        data = resp.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        return data.get("error") or data.get("message")
    return None


class WorkshopClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10,
        retries: int = 3,
    ) -> None:
        self.base_url = normalize_base_url(base_url)
        self.token = token
        self.timeout = timeout
        self.retries = retries
        self.session = requests.Session()
        self.session.headers.update(
            {"Content-Type": "application/json", "Accept": "application/json"}
        )

    def _auth_headers(self) -> Dict[str, str]:
        if token_expired(self.token):
            raise AuthError()
        return {"Authorization": f"Bearer {self.token}"}

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
    ) -> Any:
        """Send one request and return the ``data`` member of the envelope.

        Only reads are retried; a write is attempted once so a slow create
        never lands twice.
        """
        url = f"{self.base_url}{path}"
        headers = self._auth_headers()
        attempts = self.retries if method == "GET" else 1
        tries = 0
        while True:
            tries += 1
            start = time.monotonic()
            try:
                r = self.session.request(
                    method, url, params=params, json=json_body,
                    headers=headers, timeout=self.timeout,
                )
            except requests.RequestException as e:
                if tries < attempts:
                    time.sleep(min(2 ** tries, 30) + random.random())
                    continue
                logging.error("API %s %s failed: %s", method, url, e)
                raise ApiError(f"Cannot connect to backend at {self.base_url}") from e
            latency = (time.monotonic() - start) * 1000
            logging.info("API %s %s %s %.1fms", method, path, r.status_code, latency)

            if (r.status_code == 429 or r.status_code >= 500) and tries < attempts:
                time.sleep(min(2 ** tries, 30) + random.random())
                continue
            if r.status_code == 401:
                raise AuthError(_error_message(r) or SESSION_EXPIRED)
            if r.status_code >= 400:
                raise ApiError(
                    _error_message(r) or f"HTTP {r.status_code}: {r.reason}",
                    status=r.status_code,
                )
            return self._unwrap(r)

    @staticmethod
    def _unwrap(r: requests.Response) -> Any:
        if not r.content:
            return None
        try:
            payload = r.json()
        except ValueError as e:
            raise ApiError("Malformed response from backend", status=r.status_code) from e
        if isinstance(payload, dict) and "success" in payload:
            if not payload.get("success"):
                raise ApiError(
                    payload.get("message") or payload.get("error") or "Request was rejected",
                    status=r.status_code,
                )
            return payload.get("data")
        return payload

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, body: Any) -> Any:
        return self.request("POST", path, json_body=body)

    def put(self, path: str, body: Any) -> Any:
        return self.request("PUT", path, json_body=body)

    def delete(self, path: str) -> Any:
        return self.request("DELETE", path)
