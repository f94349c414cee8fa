"""HTTP client for the remote credential issuance service."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import httpx

from ..config import Settings, get_settings
from ..exceptions import CredentialRetrievalError
from ..models import OAuthCredential

logger = logging.getLogger(__name__)


def _parse_expiry(value: Any) -> Optional[datetime]:
    """Accept ISO-8601 strings or epoch seconds/milliseconds."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unparseable credential expiry: {value!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _field(data: Mapping[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    if snake in data:
        return data[snake]
    return data.get(camel, default)


def parse_credential(provider: str, data: Mapping[str, Any]) -> Optional[OAuthCredential]:
    """Build an ``OAuthCredential`` from one provider entry, or None without a token."""
    access_token = _field(data, "access_token", "accessToken")
    if not access_token:
        return None
    scopes = _field(data, "scopes", "scopes") or []
    if isinstance(scopes, str):
        scopes = scopes.split()
    return OAuthCredential(
        provider=provider,
        access_token=str(access_token),
        refresh_token=_field(data, "refresh_token", "refreshToken"),
        expires_at=_parse_expiry(_field(data, "expires_at", "expiresAt")),
        scopes=list(scopes),
        metadata=dict(_field(data, "metadata", "metadata") or {}),
    )


class CredentialIssuanceClient:
    """Issues and releases per-provider OAuth credentials for an account."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.base_url = (base_url or settings.credential_service_url).rstrip("/")
        self.token = token if token is not None else settings.credential_service_token
        self.timeout = timeout or settings.credential_request_timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def issue(
        self,
        account_id: str,
        providers: List[str],
        context: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, OAuthCredential]:
        """Request credentials for every provider in one call.

        Providers missing from the response are skipped with a warning.

        Raises:
            CredentialRetrievalError: on transport errors, non-2xx responses,
                an explicit ``success: false`` or an unusable body
        """
        payload = {
            "account_tool_instance_id": account_id,
            "required_providers": list(providers),
            "context_metadata": dict(context or {}),
        }
        try:
            response = await self._get_client().post(
                self.base_url, json=payload, headers=self._headers(), timeout=self.timeout
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise CredentialRetrievalError(
                f"Credential service returned HTTP {e.response.status_code}",
                account_id=account_id,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise CredentialRetrievalError(
                f"Credential service request failed: {e}", account_id=account_id
            ) from e
        except ValueError as e:
            raise CredentialRetrievalError(
                "Credential service returned invalid JSON", account_id=account_id
            ) from e

        if not isinstance(body, dict):
            raise CredentialRetrievalError("Unexpected credential response shape", account_id=account_id)
        if body.get("success") is False:
            raise CredentialRetrievalError(
                f"Failed to retrieve credentials: {body.get('error') or 'Unknown error'}",
                account_id=account_id,
            )
        if isinstance(body.get("data"), dict):
            body = body["data"]
        entries = _field(body, "oauth_credentials", "oauthCredentials", body)

        credentials: Dict[str, OAuthCredential] = {}
        for provider in providers:
            data = entries.get(provider) if isinstance(entries, dict) else None
            credential = parse_credential(provider, data) if isinstance(data, dict) else None
            if credential is None:
                logger.warning(f"No credential available for provider {provider} on account {account_id}")
                continue
            credentials[provider] = credential
        return credentials

    async def cleanup(self, account_id: str) -> None:
        """Tell the service the account's credentials were released.

        Raises:
            CredentialRetrievalError: if the notification fails
        """
        try:
            response = await self._get_client().post(
                f"{self.base_url}/cleanup",
                json={"account_tool_instance_id": account_id},
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise CredentialRetrievalError(
                f"Credential cleanup notification failed: {e}", account_id=account_id
            ) from e

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
