from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Any

import httpx

from leadsync.domain.formatting import digits_only
from leadsync.domain.normalization import ensure_sequence, extract_custom_field


_TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}
_MAX_ATTEMPTS = 3
_BACKOFF_BASE_SECONDS = 0.25
_BACKOFF_CAP_SECONDS = 2.0
# Kommo answers 429 above 7 requests/second per account
_RETRY_AFTER_CAP_SECONDS = 5.0


class KommoProviderError(Exception):
    """Kommo REST failure tagged with a category the pipeline can act on."""

    def __init__(self, message: str, *, status_code: int | None = None, category: str = "unknown") -> None:
        super().__init__(message)
        self.status_code = status_code
        self._category = category

    @property
    def category(self) -> str:
        return self._category

    @property
    def retryable(self) -> bool:
        return self._category == "transient"


@dataclass(frozen=True)
class KommoContact:
    contact_id: str
    name: str | None
    phone: str | None


def _base_url(subdomain: str) -> str:
    return f"https://{subdomain}.kommo.com/api/v4"


def _retry_delay(attempt: int, response: httpx.Response | None = None) -> float:
    retry_after = response.headers.get("Retry-After") if response is not None else None
    if retry_after and retry_after.strip().isdigit():
        return min(float(retry_after), _RETRY_AFTER_CAP_SECONDS)
    delay = min(_BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)), _BACKOFF_CAP_SECONDS)
    return delay + random.uniform(0, delay * 0.2)


def _request_with_retry(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    timeout_seconds: float,
    params: dict[str, Any] | None = None,
) -> httpx.Response:
    attempt = 0
    while True:
        attempt += 1
        try:
            with httpx.Client(timeout=timeout_seconds) as client:
                response = client.request(method=method, url=url, headers=headers, params=params)
        except httpx.HTTPError:
            if attempt >= _MAX_ATTEMPTS:
                raise
            time.sleep(_retry_delay(attempt))
            continue
        if response.status_code not in _TRANSIENT_STATUS_CODES or attempt >= _MAX_ATTEMPTS:
            return response
        time.sleep(_retry_delay(attempt, response))


def _get(
    *,
    subdomain: str,
    access_token: str,
    path: str,
    timeout_seconds: float,
    params: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    if not subdomain or not access_token:
        raise KommoProviderError("Missing Kommo subdomain or access token", category="terminal")
    try:
        response = _request_with_retry(
            method="GET",
            url=f"{_base_url(subdomain)}{path}",
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            timeout_seconds=timeout_seconds,
            params=params,
        )
    except httpx.HTTPError as exc:
        raise KommoProviderError(f"Kommo API connectivity error: {exc}", category="transient") from exc
    status_code = response.status_code
    if status_code == 401:
        raise KommoProviderError("Invalid Kommo access token", status_code=401, category="terminal")
    if status_code in (204, 404):
        return None
    if status_code in _TRANSIENT_STATUS_CODES:
        raise KommoProviderError(
            f"Kommo API unavailable: HTTP {status_code}", status_code=status_code, category="transient"
        )
    if status_code >= 400:
        raise KommoProviderError(
            f"Kommo API rejected request: HTTP {status_code}: {response.text[:200]}",
            status_code=status_code,
            category="terminal",
        )
    try:
        body = response.json()
    except ValueError as exc:
        raise KommoProviderError("Unexpected Kommo response payload") from exc
    return body if isinstance(body, dict) else None


def get_lead(*, subdomain: str, access_token: str, lead_id: str, timeout_seconds: float = 10.0) -> dict[str, Any] | None:
    return _get(
        subdomain=subdomain,
        access_token=access_token,
        path=f"/leads/{lead_id}",
        params={"with": "contacts"},
        timeout_seconds=timeout_seconds,
    )


def get_contact(
    *, subdomain: str, access_token: str, contact_id: str, timeout_seconds: float = 10.0
) -> dict[str, Any] | None:
    return _get(
        subdomain=subdomain,
        access_token=access_token,
        path=f"/contacts/{contact_id}",
        timeout_seconds=timeout_seconds,
    )


def _main_contact_id(lead: dict[str, Any]) -> str | None:
    embedded = lead.get("_embedded") if isinstance(lead.get("_embedded"), dict) else {}
    contacts = [item for item in ensure_sequence(embedded.get("contacts")) if isinstance(item, dict)]
    if not contacts:
        return None
    main = next((item for item in contacts if item.get("is_main")), contacts[0])
    return str(main["id"]) if main.get("id") is not None else None


def fetch_lead_contact(
    *,
    subdomain: str,
    access_token: str,
    lead_id: str,
    timeout_seconds: float = 10.0,
) -> KommoContact | None:
    lead = get_lead(subdomain=subdomain, access_token=access_token, lead_id=lead_id, timeout_seconds=timeout_seconds)
    if not lead:
        return None
    contact_id = _main_contact_id(lead)
    if not contact_id:
        return None
    contact = get_contact(
        subdomain=subdomain,
        access_token=access_token,
        contact_id=contact_id,
        timeout_seconds=timeout_seconds,
    )
    if not contact:
        return None
    phone = extract_custom_field(contact.get("custom_fields_values"), "PHONE")
    return KommoContact(
        contact_id=contact_id,
        name=contact.get("name") or None,
        phone=digits_only(phone) or None,
    )
