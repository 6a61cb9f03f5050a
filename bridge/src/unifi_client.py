# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""aiohttp client for the UniFi Network controller API with health tracking.

Supports both the classic controller (``/api/login``, ``/api/s/...``) and
UniFi OS consoles (``/api/auth/login``, ``/proxy/network/api/s/...``). UniFi
OS is detected from the ``x-csrf-token`` header on the console root unless
it is configured explicitly.

Replies use the controller's envelope::

    {"meta": {"rc": "ok" | "error", "msg": "..."}, "data": [...]}
"""

import asyncio
import logging
import time
from typing import Any

import aiohttp

from .errors import AuthError, TransportError, WriteRejected

logger = logging.getLogger(__name__)

UNIFI_OS_PREFIX = "/proxy/network"
CSRF_HEADER = "x-csrf-token"


class UniFiClient:
    """HTTP gateway to one UniFi controller."""

    def __init__(self, host: str, port: int = 8443, username: str = "",
                 password: str = "", *, verify_ssl: bool = False,
                 timeout: float = 10.0, scheme: str = "https",
                 unifi_os: bool | None = None):
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._verify_ssl = verify_ssl
        self._timeout = timeout
        self.base_url = f"{scheme}://{host}:{port}"

        self._session: aiohttp.ClientSession | None = None
        self._unifi_os = unifi_os
        self._logged_in = False
        self._csrf_token: str | None = None

        # Health tracking
        self._total_requests = 0
        self._failed_requests = 0
        self._total_writes = 0
        self._failed_writes = 0
        self._logins = 0
        self._consecutive_failures = 0
        self._last_success_time: float | None = None
        self._last_error_time: float | None = None
        self._last_error_msg: str | None = None

    @property
    def unifi_os(self) -> bool | None:
        return self._unifi_os

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def get_health(self) -> dict:
        """Return controller connection health metrics."""
        return {
            "target": self.base_url,
            "unifi_os": self._unifi_os,
            "logged_in": self._logged_in,
            "logins": self._logins,
            "total_requests": self._total_requests,
            "failed_requests": self._failed_requests,
            "total_writes": self._total_writes,
            "failed_writes": self._failed_writes,
            "consecutive_failures": self._consecutive_failures,
            "last_success": self._last_success_time,
            "last_error": self._last_error_time,
            "last_error_msg": self._last_error_msg,
            "reachable": self._consecutive_failures < 10,
        }

    def reset_health(self) -> None:
        self._consecutive_failures = 0
        self._last_error_msg = None

    def _record_success(self):
        self._consecutive_failures = 0
        self._last_success_time = time.time()

    def _record_failure(self, msg: str):
        self._failed_requests += 1
        self._consecutive_failures += 1
        self._last_error_time = time.time()
        self._last_error_msg = msg
        if self._consecutive_failures <= 3 or self._consecutive_failures % 30 == 0:
            logger.warning("UniFi request failed (%d consecutive): %s",
                           self._consecutive_failures, msg)

    # -- Session ----------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # unsafe=True keeps cookies for controllers addressed by IP
            self._session = aiohttp.ClientSession(
                cookie_jar=aiohttp.CookieJar(unsafe=True),
                connector=aiohttp.TCPConnector(ssl=None if self._verify_ssl else False),
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
            self._logged_in = False
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            logger.debug("Closing UniFi HTTP session")
            await self._session.close()
        self._session = None
        self._logged_in = False

    def _url(self, path: str) -> str:
        prefix = UNIFI_OS_PREFIX if self._unifi_os else ""
        return f"{self.base_url}{prefix}{path}"

    def _update_csrf(self, resp: aiohttp.ClientResponse):
        token = resp.headers.get(CSRF_HEADER)
        if token:
            self._csrf_token = token

    async def _detect_unifi_os(self, session: aiohttp.ClientSession) -> bool:
        try:
            async with session.get(f"{self.base_url}/", allow_redirects=False) as resp:
                return CSRF_HEADER in resp.headers
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._record_failure(f"GET /: {e}")
            raise TransportError(f"cannot reach controller at {self.base_url}: {e}") from e

    # -- Authentication ---------------------------------------------------

    async def login(self, force: bool = False) -> None:
        """Log in unless a session is already authenticated."""
        if self._logged_in and not force:
            return
        session = await self._get_session()
        if self._unifi_os is None:
            self._unifi_os = await self._detect_unifi_os(session)
            logger.info("UniFi controller at %s detected as %s",
                        self.base_url, "UniFi OS" if self._unifi_os else "classic controller")

        path = "/api/auth/login" if self._unifi_os else "/api/login"
        payload = {"username": self._username, "password": self._password, "remember": True}
        self._total_requests += 1
        try:
            async with session.post(f"{self.base_url}{path}", json=payload) as resp:
                self._update_csrf(resp)
                status = resp.status
                if status in (400, 401, 403):
                    self._record_failure(f"login: HTTP {status}")
                    raise AuthError(
                        f"controller rejected credentials for user {self._username!r}"
                    )
                if status >= 400:
                    self._record_failure(f"login: HTTP {status}")
                    raise TransportError(f"login failed with HTTP {status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._record_failure(f"login: {e}")
            raise TransportError(f"login to {self.base_url} failed: {e}") from e

        self._logged_in = True
        self._logins += 1
        self._record_success()
        logger.debug("Logged in to UniFi controller %s as %s", self.base_url, self._username)

    # -- Requests ---------------------------------------------------------

    async def _request(self, method: str, path: str, body: dict | None = None,
                       *, retry_auth: bool = True) -> tuple[int, Any]:
        """Send one API request; returns (HTTP status, decoded JSON or None)."""
        session = await self._get_session()
        headers = {CSRF_HEADER: self._csrf_token} if self._csrf_token else {}
        self._total_requests += 1
        try:
            async with session.request(method, self._url(path), json=body,
                                       headers=headers) as resp:
                self._update_csrf(resp)
                status = resp.status
                try:
                    payload = await resp.json(content_type=None)
                except ValueError:
                    payload = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._record_failure(f"{method} {path}: {e}")
            raise TransportError(f"{method} {path} failed: {e}") from e

        if status == 401:
            self._logged_in = False
            if retry_auth:
                logger.info("UniFi session expired; logging in again")
                await self.login(force=True)
                return await self._request(method, path, body, retry_auth=False)
            self._record_failure(f"{method} {path}: HTTP 401")
            raise AuthError(f"{method} {path} unauthorized after re-login")
        return status, payload

    @staticmethod
    def _envelope(payload: Any) -> tuple[bool, str, list]:
        """Split a reply into (ok, message, data)."""
        if isinstance(payload, list):
            return True, "", payload
        if not isinstance(payload, dict):
            return False, "malformed reply", []
        meta = payload.get("meta") or {}
        ok = meta.get("rc", "ok") == "ok"
        data = payload.get("data")
        return ok, str(meta.get("msg") or ""), data if isinstance(data, list) else []

    async def _read(self, method: str, path: str, body: dict | None = None) -> list[dict]:
        status, payload = await self._request(method, path, body)
        ok, msg, data = self._envelope(payload)
        if status >= 400 or not ok:
            detail = msg or f"HTTP {status}"
            self._record_failure(f"{method} {path}: {detail}")
            raise TransportError(f"{method} {path} failed: {detail}")
        self._record_success()
        return data

    async def list_sites(self) -> list[dict[str, Any]]:
        return await self._read("GET", "/api/self/sites")

    async def list_devices(self, site: str, mac: str | None = None) -> list[dict[str, Any]]:
        path = f"/api/s/{site}/stat/device"
        if mac:
            return await self._read("POST", path, {"macs": [mac.lower()]})
        return await self._read("GET", path)

    async def push_overrides(self, site: str, device_id: str,
                             patch: dict[str, Any]) -> None:
        self._total_writes += 1
        path = f"/api/s/{site}/rest/device/{device_id}"
        try:
            status, payload = await self._request("PUT", path, patch)
        except TransportError:
            self._failed_writes += 1
            raise
        ok, msg, _data = self._envelope(payload)
        if status >= 400 or not ok:
            self._failed_writes += 1
            detail = msg or f"HTTP {status}"
            self._record_failure(f"PUT {path}: {detail}")
            raise WriteRejected(device_id, detail)
        self._record_success()
