"""Memory-only OAuth credential cache with TTL expiry and automatic refresh.

Credentials are cached per account id for a fixed TTL. The cache entry is
dropped when the TTL lapses even if a refresh is still pending; a refresh
re-fetches using the provider set remembered for the account.
"""

import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from ..config import Settings, get_settings
from ..events import CredentialEvent, EventBus
from ..exceptions import ConfigurationError, CredentialRetrievalError
from ..models import OAuthCredential, utc_now
from ..observability.logging import set_log_context
from ..observability.metrics import record_credential_injection, set_cached_credential_accounts
from ..timers import TimerRegistry
from .client import CredentialIssuanceClient

logger = logging.getLogger(__name__)

# Extra variable names some MCP servers look for.
PROVIDER_ALIASES: Dict[str, List[str]] = {
    "github": ["GITHUB_TOKEN", "GH_TOKEN"],
    "google": ["GOOGLE_ACCESS_TOKEN", "GOOGLE_OAUTH_TOKEN"],
    "microsoft": ["MICROSOFT_ACCESS_TOKEN", "MS_GRAPH_TOKEN"],
    "slack": ["SLACK_BOT_TOKEN", "SLACK_OAUTH_TOKEN"],
}

IMMEDIATE_REFRESH_DELAY = 1.0
AUDIT_WINDOW = timedelta(hours=24)


@dataclass
class _CacheEntry:
    credentials: Dict[str, OAuthCredential]
    cached_at: float


@dataclass
class InjectionRecord:
    timestamp: datetime
    providers: List[str] = field(default_factory=list)
    success: bool = True

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp.isoformat(), "providers": list(self.providers), "success": self.success}


def credentials_to_environment(credentials: Mapping[str, OAuthCredential]) -> Dict[str, str]:
    """Flatten credentials into environment variables."""
    env: Dict[str, str] = {}
    for provider, credential in credentials.items():
        prefix = f"OAUTH_{provider.upper()}"
        env[f"{prefix}_ACCESS_TOKEN"] = credential.access_token
        if credential.refresh_token:
            env[f"{prefix}_REFRESH_TOKEN"] = credential.refresh_token
        if credential.expires_at:
            env[f"{prefix}_EXPIRES_AT"] = credential.expires_at.isoformat()
        if credential.scopes:
            env[f"{prefix}_SCOPES"] = ",".join(credential.scopes)

        for alias in PROVIDER_ALIASES.get(provider.lower(), []):
            env[alias] = credential.access_token

        for key, value in (credential.metadata or {}).items():
            if isinstance(value, str):
                env[f"{prefix}_{key.upper()}"] = value
    return env


class CredentialInjector:
    """Retrieves, caches and refreshes OAuth credentials for deployed servers."""

    def __init__(
        self,
        client: Optional[CredentialIssuanceClient] = None,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self.client = client or CredentialIssuanceClient(settings=self.settings)
        self.events = events or EventBus()
        self.ttl = self.settings.credential_cache_ttl
        self.refresh_buffer = self.settings.credential_refresh_buffer
        self._clock = clock
        self._wall_clock = wall_clock
        self._cache: Dict[str, _CacheEntry] = {}
        self._providers: Dict[str, List[str]] = {}
        self._contexts: Dict[str, Dict[str, Any]] = {}
        self._history: Dict[str, Deque[InjectionRecord]] = {}
        self._timers = TimerRegistry("credentials")

    # ------------------------------------------------------------------
    # Injection
    # ------------------------------------------------------------------

    async def prepare_credentials(
        self,
        account_id: str,
        providers: List[str],
        context: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, str]:
        """Fetch credentials for ``providers`` and return them as environment variables.

        Raises:
            CredentialRetrievalError: if the service fails or returns nothing usable
        """
        providers = list(dict.fromkeys(providers))
        if not providers:
            return {}

        logger.info(f"Preparing OAuth credentials for account {account_id}: {', '.join(providers)}")
        try:
            credentials = await self._retrieve(account_id, providers, context)
        except CredentialRetrievalError as e:
            self._record(account_id, providers, success=False)
            self.events.publish(CredentialEvent("failed", account_id, providers, error=str(e)))
            raise

        self._providers[account_id] = providers
        self._contexts[account_id] = dict(context or {})
        self._store(account_id, credentials)
        self._record(account_id, providers, success=True)
        self.events.publish(CredentialEvent("injected", account_id, list(credentials)))
        return credentials_to_environment(credentials)

    async def _retrieve(
        self, account_id: str, providers: List[str], context: Optional[Mapping[str, Any]]
    ) -> Dict[str, OAuthCredential]:
        credentials = await self.client.issue(account_id, providers, context)
        if not credentials:
            raise CredentialRetrievalError(
                "No valid OAuth credentials retrieved for any requested provider",
                account_id=account_id,
            )
        return credentials

    def _store(self, account_id: str, credentials: Dict[str, OAuthCredential]):
        entry = _CacheEntry(credentials=credentials, cached_at=self._clock())
        self._cache[account_id] = entry
        self._timers.call_later(f"ttl:{account_id}", self.ttl, self._expire, account_id, entry)
        self._schedule_refresh(account_id, credentials)
        set_cached_credential_accounts(len(self._cache))

    def _expire(self, account_id: str, entry: _CacheEntry):
        if self._cache.get(account_id) is entry:
            del self._cache[account_id]
            set_cached_credential_accounts(len(self._cache))
            logger.info(f"Credential cache expired for account {account_id}")

    def _schedule_refresh(self, account_id: str, credentials: Mapping[str, OAuthCredential]):
        expiries = [c.expires_at for c in credentials.values() if c.expires_at]
        key = f"refresh:{account_id}"
        if not expiries:
            self._timers.cancel(key)
            return

        delay = (min(expiries) - self._wall_clock()).total_seconds() - self.refresh_buffer
        if delay <= 0:
            logger.warning(f"Credentials for account {account_id} expire too soon, refreshing now")
            delay = IMMEDIATE_REFRESH_DELAY
        else:
            logger.info(f"Credential refresh for account {account_id} in {round(delay)} seconds")
        self._timers.call_later(key, delay, self._scheduled_refresh, account_id)

    async def _scheduled_refresh(self, account_id: str):
        set_log_context(account_id=account_id, operation="credential_refresh")
        await self._refresh(account_id, "automatic_refresh")

    async def _refresh(self, account_id: str, reason: str) -> bool:
        providers = self._providers.get(account_id)
        if not providers:
            logger.info(f"No providers known for account {account_id}, skipping refresh")
            return False

        logger.info(f"Refreshing credentials for account {account_id}")
        try:
            credentials = await self._retrieve(account_id, providers, self._contexts.get(account_id))
        except CredentialRetrievalError as e:
            logger.error(f"Failed to refresh credentials for account {account_id}: {e}")
            self._record(account_id, providers, success=False)
            self.events.publish(CredentialEvent("failed", account_id, providers, reason=reason, error=str(e)))
            return False

        if account_id not in self._providers:
            # Cleaned up while the request was in flight
            return False
        self._store(account_id, credentials)
        self._record(account_id, providers, success=True)
        self.events.publish(CredentialEvent("updated", account_id, list(credentials), reason=reason))
        return True

    async def force_refresh(self, account_id: str) -> bool:
        """Refresh now, regardless of the scheduled timer."""
        return await self._refresh(account_id, "manual_refresh")

    async def cleanup_credentials(self, account_id: str):
        """Drop everything held for the account. Safe to call repeatedly."""
        self._cache.pop(account_id, None)
        self._providers.pop(account_id, None)
        self._contexts.pop(account_id, None)
        self._timers.cancel(f"ttl:{account_id}")
        self._timers.cancel(f"refresh:{account_id}")
        set_cached_credential_accounts(len(self._cache))

        try:
            await self.client.cleanup(account_id)
        except CredentialRetrievalError as e:
            logger.warning(f"Failed to notify credential service about cleanup for {account_id}: {e}")

        self.events.publish(CredentialEvent("cleanup", account_id))
        logger.info(f"Credential cleanup completed for account {account_id}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _live_entry(self, account_id: str) -> Optional[_CacheEntry]:
        entry = self._cache.get(account_id)
        if entry is None:
            return None
        if self._clock() - entry.cached_at >= self.ttl:
            del self._cache[account_id]
            self._timers.cancel(f"ttl:{account_id}")
            set_cached_credential_accounts(len(self._cache))
            return None
        return entry

    def get_credential_status(self, account_id: str) -> Dict[str, Any]:
        entry = self._live_entry(account_id)
        if entry is None or not entry.credentials:
            return {"has_credentials": False, "providers": [], "expiry_status": {}}

        now = self._wall_clock()
        expiry_status = {}
        for provider, credential in entry.credentials.items():
            expires_at = credential.expires_at
            expiry_status[provider] = {
                "expires_at": expires_at.isoformat() if expires_at else None,
                "is_expired": bool(expires_at and now > expires_at),
                "expires_in_seconds": (expires_at - now).total_seconds() if expires_at else None,
            }
        return {
            "has_credentials": True,
            "providers": list(entry.credentials),
            "expiry_status": expiry_status,
        }

    def _record(self, account_id: str, providers: List[str], success: bool):
        history = self._history.get(account_id)
        if history is None:
            history = deque(maxlen=self.settings.credential_history_size)
            self._history[account_id] = history
        history.append(InjectionRecord(self._wall_clock(), list(providers), success))
        record_credential_injection(success)

    def get_injection_history(self, account_id: str) -> List[InjectionRecord]:
        return list(self._history.get(account_id, ()))

    def get_security_audit_summary(self) -> Dict[str, Any]:
        live = [e for e in (self._live_entry(a) for a in list(self._cache)) if e is not None]
        by_provider: Dict[str, int] = {}
        for entry in live:
            for provider in entry.credentials:
                by_provider[provider] = by_provider.get(provider, 0) + 1

        cutoff = self._wall_clock() - AUDIT_WINDOW
        injections = failures = 0
        for history in self._history.values():
            for record in history:
                if record.timestamp > cutoff:
                    if record.success:
                        injections += 1
                    else:
                        failures += 1

        return {
            "total_accounts_with_credentials": len(live),
            "total_active_credentials": sum(len(e.credentials) for e in live),
            "credentials_by_provider": by_provider,
            "recent_injections": injections,
            "recent_failures": failures,
        }

    def generate_config_files(self, account_id: str, fmt: str = "json") -> Dict[str, str]:
        """Render cached credentials as file contents keyed by file name."""
        entry = self._live_entry(account_id)
        if entry is None:
            raise CredentialRetrievalError(
                f"No cached credentials found for account {account_id}", account_id=account_id
            )

        if fmt == "json":
            data = {
                provider: {
                    "access_token": c.access_token,
                    "refresh_token": c.refresh_token,
                    "expires_at": c.expires_at.isoformat() if c.expires_at else None,
                    "scopes": list(c.scopes),
                    "metadata": dict(c.metadata),
                }
                for provider, c in entry.credentials.items()
            }
            return {"oauth_credentials.json": json.dumps(data, indent=2)}
        if fmt == "env":
            env = credentials_to_environment(entry.credentials)
            return {".env.oauth": "\n".join(f"{k}={v}" for k, v in env.items())}
        raise ConfigurationError(f"Unsupported credential file format: {fmt}")

    @property
    def cached_accounts(self) -> List[str]:
        return list(self._cache)

    async def shutdown(self):
        """Cancel timers and wipe all credentials from memory."""
        await self._timers.shutdown()
        self._cache.clear()
        self._providers.clear()
        self._contexts.clear()
        set_cached_credential_accounts(0)
        await self.client.close()
        logger.info("Credential injector shut down; all credentials cleared from memory")
