"""
Authentication helpers for the Dataverse Web API.

Dataverse tokens are requested for the environment itself, so the scope is
derived from the environment URL rather than fixed.

Classes:
    TokenManager: Thread-safe access token cache
    CredentialFactory: Builds the Azure credential chain
"""

import time
import logging
import threading
from typing import Optional, List

from azure.identity import (
    InteractiveBrowserCredential,
    ClientSecretCredential,
    DefaultAzureCredential,
    ChainedTokenCredential,
)
from azure.core.credentials import TokenCredential

logger = logging.getLogger(__name__)


def dataverse_scope(server_url: str) -> str:
    """Return the token scope for an environment, e.g. ``https://org.crm.dynamics.com/.default``."""
    if not server_url:
        raise ValueError("server_url is required to build a token scope")
    return f"{server_url.rstrip('/')}/.default"


class CredentialFactory:
    """Create the Azure credential chain for a Dataverse connection.

    Example:
        >>> credential = CredentialFactory.create_credential(
        ...     tenant_id="...", client_id="...", client_secret="...", use_interactive_auth=False)
    """

    @staticmethod
    def create_credential(
        tenant_id: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        use_interactive_auth: bool = False,
    ) -> TokenCredential:
        """Create a chained credential.

        Order of the chain:
        1. Service principal (tenant, client id and secret all present)
        2. Interactive browser (if enabled)
        3. DefaultAzureCredential (managed identity, environment, CLI)
        """
        credentials: List[TokenCredential] = []

        if client_id and client_secret and tenant_id:
            logger.info("Adding client secret credential to auth chain")
            credentials.append(
                ClientSecretCredential(
                    tenant_id=tenant_id,
                    client_id=client_id,
                    client_secret=client_secret,
                )
            )

        if use_interactive_auth:
            logger.info("Adding interactive browser credential to auth chain")
            # Empty strings fail azure-identity validation
            interactive_kwargs = {}
            if tenant_id:
                interactive_kwargs['tenant_id'] = tenant_id
            if client_id:
                interactive_kwargs['client_id'] = client_id
            credentials.append(InteractiveBrowserCredential(**interactive_kwargs))

        credentials.append(DefaultAzureCredential())

        return ChainedTokenCredential(*credentials)


class TokenManager:
    """Thread-safe access token cache for one scope.

    Token lifetimes belong to the credential provider; this class only
    caches the current token until shortly before it expires.

    Example:
        >>> manager = TokenManager(credential, dataverse_scope("https://org.crm.dynamics.com"))
        >>> headers = {"Authorization": f"Bearer {manager.get_access_token()}"}
    """

    def __init__(
        self,
        credential: TokenCredential,
        scope: str,
        token_buffer_seconds: int = 300,
    ):
        self._credential = credential
        self._scope = scope
        self._token_buffer_seconds = token_buffer_seconds
        self._access_token: Optional[str] = None
        self._token_expires: float = 0
        self._token_lock = threading.RLock()

    @property
    def scope(self) -> str:
        return self._scope

    def get_access_token(self) -> str:
        """Return a cached token, acquiring a new one when it is close to expiry.

        Raises:
            AuthenticationError: If token acquisition fails
        """
        with self._token_lock:
            current_time = time.time()

            if self._access_token and current_time < self._token_expires - self._token_buffer_seconds:
                logger.debug("Using cached access token")
                return self._access_token

            logger.info(f"Acquiring access token for {self._scope}")

            try:
                token = self._credential.get_token(self._scope)
            except Exception as e:
                logger.error(f"Authentication failed: {e}")
                raise AuthenticationError(f"Failed to acquire access token: {e}")

            if not token or not token.token:
                raise AuthenticationError("Received empty token from credential provider")

            self._access_token = token.token
            self._token_expires = token.expires_on

            logger.info("Access token acquired successfully")
            return self._access_token

    def invalidate_token(self) -> None:
        """Drop the cached token so the next request acquires a new one."""
        with self._token_lock:
            self._access_token = None
            self._token_expires = 0
            logger.debug("Token cache invalidated")

    @property
    def is_token_valid(self) -> bool:
        with self._token_lock:
            if not self._access_token:
                return False
            return time.time() < self._token_expires - self._token_buffer_seconds


class AuthenticationError(Exception):
    """Raised when no credential in the chain can produce a token."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)
