"""Availity insurance eligibility client (OAuth client-credentials)."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

from clinic_scheduling.audit import redact_pii
from clinic_scheduling.config import settings
from clinic_scheduling.errors import CollaboratorError
from clinic_scheduling.models.verification import InsuranceResult
from clinic_scheduling.services.base import InsuranceVerifier

log = logging.getLogger("clinic_scheduling.services.availity")

SERVICE = "availity"

# Refresh a little before the token actually expires.
TOKEN_EXPIRY_MARGIN_SECONDS = 30


class AvailityClient(InsuranceVerifier):
    """InsuranceVerifier backed by the Availity eligibility API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        secret: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_url = (base_url or settings.availity_base_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.availity_api_key
        self._secret = secret if secret is not None else settings.availity_secret
        self._timeout = timeout or settings.http_timeout_seconds
        self._transport = transport
        self._clock = clock
        self._access_token: Optional[str] = None
        self._token_expiry = 0.0

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _post(self, path: str, payload: dict) -> Any:
        try:
            async with self._client() as client:
                resp = await client.post(path, json=payload)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as exc:
            log.error("Availity POST %s failed: status %s", path, exc.response.status_code)
            raise CollaboratorError(
                SERVICE, f"POST {path} returned {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            log.error("Availity POST %s failed: %s", path, exc)
            raise CollaboratorError(SERVICE, f"POST {path} failed: {exc}") from exc

    # ── Auth ────────────────────────────────────────────────────

    async def authenticate(self) -> str:
        data = await self._post("/auth/token", {
            "client_id": self._api_key,
            "client_secret": self._secret,
            "grant_type": "client_credentials",
        })
        self._access_token = data["access_token"]
        self._token_expiry = self._clock() + float(data.get("expires_in", 0))
        log.info("Availity token acquired")
        return self._access_token

    async def ensure_authenticated(self) -> None:
        if (
            not self._access_token
            or self._clock() >= self._token_expiry - TOKEN_EXPIRY_MARGIN_SECONDS
        ):
            await self.authenticate()

    # ── InsuranceVerifier ───────────────────────────────────────

    async def verify(self, insurer: str, member_fields: dict) -> InsuranceResult:
        await self.ensure_authenticated()

        name = member_fields.get("name", "")
        first_name, _, last_name = name.partition(" ")
        data = await self._post("/eligibility/verify", {
            "member_id": member_fields.get("member_id"),
            "date_of_birth": member_fields.get("date_of_birth"),
            "first_name": first_name,
            "last_name": last_name,
            "insurance_provider": insurer,
            "verification_date": datetime.now(tz=timezone.utc).isoformat(),
        })

        active = bool(data.get("active"))
        log.info("Eligibility for member %s with %s: active=%s",
                 redact_pii(member_fields.get("member_id") or ""), insurer, active)
        return InsuranceResult(
            verified=active,
            provider=data.get("insurance_provider") or insurer,
            copay=data.get("copay_amount"),
            deductible=data.get("deductible_amount"),
            deductible_met=data.get("deductible_met"),
            error=None if active else (data.get("status") or "Coverage is not active"),
        )
