"""OAuth credential retrieval, caching and injection."""

from .client import CredentialIssuanceClient
from .injector import CredentialInjector, credentials_to_environment

__all__ = ["CredentialIssuanceClient", "CredentialInjector", "credentials_to_environment"]
