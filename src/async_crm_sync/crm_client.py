# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""HTTP client for the remote CRM record API.

``CrmClient`` implements the record service and field metadata loader the
pipeline consumes. Every failure surfaces as ``CrmApiError`` with the HTTP
status attached, so the error classifier sees both the message and the
status code.

Example:
    Pushing a lead::

        client = CrmClient("https://www.zohoapis.eu/crm/v2", credentials)
        result = await client.create_or_update("Leads", {"Last_Name": "Rossi"})
        result["external_id"]
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import aiohttp

from .collaborators import CredentialProvider
from .errors import CrmApiError
from .logger import get_logger
from .models import FieldMetadata

DEFAULT_TIMEOUT = 30.0


class CrmClient:
    """Minimal async client for CRM record upserts and field metadata.

    Attributes:
        base_url: API root, without trailing slash.
        credential_name: Name of the credential requested from the provider.
        logger: Logger instance for diagnostic output.
    """

    def __init__(
        self,
        base_url: str,
        credentials: CredentialProvider,
        *,
        credential_name: str = "crm",
        timeout: float = DEFAULT_TIMEOUT,
        session_factory: Callable[[], aiohttp.ClientSession] | None = None,
        logger=None,
    ):
        """Initialize the client.

        Args:
            base_url: API root, e.g. ``https://www.zohoapis.eu/crm/v2``.
            credentials: Provider of the OAuth access token.
            credential_name: Name passed to the provider.
            timeout: Total request timeout in seconds.
            session_factory: Callable returning a new ``aiohttp.ClientSession``.
                Defaults to a session with ``timeout`` applied.
            logger: Custom logger instance. If None, uses default logger.
        """
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.credential_name = credential_name
        self._timeout = float(timeout)
        self._session_factory = session_factory or self._default_session
        self.logger = logger or get_logger()

    def _default_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout))

    async def _headers(self) -> dict[str, str]:
        token = await self.credentials.get_valid_token(self.credential_name)
        if not token:
            raise CrmApiError("No valid access_token available for CRM", code="AUTHENTICATION_FAILURE")
        return {"Authorization": f"Zoho-oauthtoken {token}"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = await self._headers()
        try:
            async with self._session_factory() as session:
                async with session.request(method, url, headers=headers, **kwargs) as resp:
                    try:
                        body = await resp.json(content_type=None)
                    except ValueError:
                        body = {}
                    if resp.status >= 400:
                        raise CrmApiError(
                            f"CRM API error {resp.status}: {_describe(body)}",
                            status=resp.status,
                            code=(body or {}).get("code") if isinstance(body, dict) else None,
                        )
                    return body if isinstance(body, dict) else {}
        except asyncio.TimeoutError:
            raise CrmApiError(f"CRM request timeout after {self._timeout}s") from None
        except aiohttp.ClientError as exc:
            raise CrmApiError(f"Network connection error contacting CRM: {exc}") from exc

    async def create_or_update(self, module: str, record: dict[str, Any]) -> dict[str, Any]:
        """Upsert one record into ``module``.

        Returns:
            Dict with ``external_id`` and the CRM ``action`` (insert/update).

        Raises:
            CrmApiError: On HTTP errors, transport failures, or a per-record
                error reported inside a successful response.
        """
        body = await self._request("POST", f"/{module}/upsert", json={"data": [record]})
        results = body.get("data") or []
        if not results:
            raise CrmApiError("CRM server error: empty upsert response")
        result = results[0]
        if str(result.get("status", "")).lower() != "success":
            details = result.get("details") or {}
            field = details.get("api_name")
            message = result.get("message") or "record rejected"
            if field:
                message = f"{message} (field {field})"
            raise CrmApiError(f"CRM rejected record: {message}", code=result.get("code"))
        external_id = (result.get("details") or {}).get("id")
        self.logger.info("CRM %s record %s in %s", result.get("action", "upsert"), external_id, module)
        return {"external_id": str(external_id) if external_id is not None else None, "action": result.get("action")}

    async def get_module_fields(self, module: str) -> list[FieldMetadata]:
        """Fetch the field descriptions of ``module``."""
        body = await self._request("GET", "/settings/fields", params={"module": module})
        fields = []
        for item in body.get("fields") or []:
            api_name = item.get("api_name")
            if not api_name:
                continue
            fields.append(
                FieldMetadata(
                    api_name=api_name,
                    label=item.get("field_label") or "",
                    data_type=item.get("data_type") or "text",
                    max_length=item.get("length") or None,
                    is_custom_field=bool(item.get("custom_field")),
                )
            )
        return fields


def _describe(body: Any) -> str:
    if isinstance(body, dict):
        message = body.get("message") or body.get("code")
        if message:
            return str(message)
    return "no details"
