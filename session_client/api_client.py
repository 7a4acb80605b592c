"""
ApiClient: one object holding every sub-client over a single shared TokenStore.
All sub-clients register with the store as they are constructed, so there is nothing to
copy between them when the credential changes.
"""
import httpx

from session_client.clients import (
    AdminUsersClient,
    ApiKeysClient,
    AuthClient,
    EntitiesClient,
    MFAClient,
    SessionsClient,
)
from session_client.config import API_BASE_URL, API_KEY, REQUEST_TIMEOUT
from session_client.pipeline import BaseApiClient
from session_client.retry_policy import RetryPolicy
from session_client.storage import create_storage
from session_client.token_store import TokenStore


class ApiClient(BaseApiClient):
    def __init__(
        self,
        token_store: TokenStore | None = None,
        *,
        base_url: str = API_BASE_URL,
        api_key: str | None = API_KEY,
        timeout: float = REQUEST_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        token_store = token_store if token_store is not None else TokenStore(create_storage())
        shared = {
            "base_url": base_url,
            "api_key": api_key,
            "timeout": timeout,
            "retry_policy": retry_policy,
            "transport": transport,
        }
        super().__init__(token_store, **shared)
        self.auth = AuthClient(token_store, **shared)
        self.mfa = MFAClient(token_store, **shared)
        self.api_keys = ApiKeysClient(token_store, **shared)
        self.sessions = SessionsClient(token_store, **shared)
        self.entities = EntitiesClient(token_store, **shared)
        self.admin_users = AdminUsersClient(token_store, **shared)

    def sub_clients(self) -> list[BaseApiClient]:
        """Every pipeline sharing the store, this client included."""
        return [self, self.auth, self.mfa, self.api_keys, self.sessions, self.entities, self.admin_users]

    def set_api_key(self, key: str | None) -> None:
        """Machine-to-machine key for every sub-client (the bearer token still wins)."""
        for client in self.sub_clients():
            BaseApiClient.set_api_key(client, key)

    async def aclose(self) -> None:
        for client in self.sub_clients():
            await BaseApiClient.aclose(client)
