"""
Resource-scoped sub-clients. Each one is a BaseApiClient over the shared TokenStore, so a
credential set by SessionCoordinator is visible to all of them before their next request.
None of them stores or clears credentials itself.
"""
from dataclasses import replace
from typing import Any
from urllib.parse import quote

from session_client.errors import ApiError
from session_client.pipeline import BaseApiClient, RequestOptions


def _with(options: RequestOptions | None, **overrides) -> RequestOptions:
    return replace(options or RequestOptions(), **overrides)


def _seg(value: str) -> str:
    """One path segment, percent-encoded."""
    return quote(str(value), safe="")


class AuthClient(BaseApiClient):
    async def login(self, email: str, password: str, options: RequestOptions | None = None) -> dict:
        """POST /auth/login. Returns the raw auth response (user, accessToken, refreshToken)."""
        return await self.post(
            "/auth/login", {"email": email, "password": password}, _with(options, authenticated=False)
        )

    async def register(self, email: str, password: str, name: str | None = None, options: RequestOptions | None = None) -> dict:
        payload: dict[str, Any] = {"email": email, "password": password}
        if name:
            payload["name"] = name
        return await self.post("/auth/register", payload, _with(options, authenticated=False))

    async def logout(self, access_token: str | None = None, options: RequestOptions | None = None) -> None:
        """
        POST /auth/logout (server-side revoke). With access_token the call is made for that
        token explicitly, independent of the current session.
        """
        opts = options or RequestOptions()
        if access_token:
            opts = _with(opts, headers={**opts.headers, "Authorization": f"Bearer {access_token}"})
        await self.post("/auth/logout", None, opts)

    async def refresh(self, refresh_token: str, options: RequestOptions | None = None) -> dict:
        return await self.post(
            "/auth/refresh", {"refreshToken": refresh_token}, _with(options, authenticated=False)
        )

    async def get_profile(self, options: RequestOptions | None = None) -> dict:
        return await self.get("/auth/profile", options)

    async def update_profile(self, data: dict, options: RequestOptions | None = None) -> dict:
        return await self.put("/auth/profile", data, options)

    async def change_password(self, current_password: str, new_password: str, options: RequestOptions | None = None) -> None:
        await self.post(
            "/auth/change-password",
            {"currentPassword": current_password, "newPassword": new_password},
            options,
        )

    async def request_password_reset(self, email: str, options: RequestOptions | None = None) -> None:
        await self.post("/auth/forgot-password", {"email": email}, _with(options, authenticated=False))

    async def reset_password(self, token: str, new_password: str, options: RequestOptions | None = None) -> None:
        await self.post(
            "/auth/reset-password",
            {"token": token, "newPassword": new_password},
            _with(options, authenticated=False),
        )

    async def validate_token(self, options: RequestOptions | None = None) -> bool:
        """True if the server accepts the current credential."""
        try:
            await self.get("/auth/validate", options)
            return True
        except ApiError:
            return False


class MFAClient(BaseApiClient):
    async def setup(self, options: RequestOptions | None = None) -> dict:
        return await self.get("/auth/mfa/setup", options)

    async def enable(self, token: str, secret: str, options: RequestOptions | None = None) -> dict:
        return await self.post("/auth/mfa/enable", {"token": token, "secret": secret}, options)

    async def verify(self, token: str, options: RequestOptions | None = None) -> dict:
        return await self.post("/auth/mfa/verify", {"token": token}, options)

    async def disable(self, password: str, options: RequestOptions | None = None) -> None:
        await self.post("/auth/mfa/disable", {"password": password}, options)

    async def generate_backup_codes(self, password: str, options: RequestOptions | None = None) -> dict:
        return await self.post("/auth/mfa/backup-codes", {"password": password}, options)

    async def get_status(self, options: RequestOptions | None = None) -> dict:
        return await self.get("/auth/mfa/status", options)


class ApiKeysClient(BaseApiClient):
    async def list_keys(self, options: RequestOptions | None = None) -> list:
        return await self.get("/auth/api-keys", options)

    async def get_key(self, key_id: str, options: RequestOptions | None = None) -> dict:
        return await self.get(f"/auth/api-keys/{_seg(key_id)}", options)

    async def create_key(
        self,
        name: str,
        *,
        permissions: list[str] | None = None,
        expires_at: str | None = None,
        rate_limit: int | None = None,
        allowed_ips: list[str] | None = None,
        options: RequestOptions | None = None,
    ) -> dict:
        payload: dict[str, Any] = {"name": name}
        if permissions is not None:
            payload["permissions"] = permissions
        if expires_at is not None:
            payload["expiresAt"] = expires_at
        if rate_limit is not None:
            payload["rateLimit"] = rate_limit
        if allowed_ips is not None:
            payload["allowedIps"] = allowed_ips
        return await self.post("/auth/api-keys", payload, options)

    async def rotate_key(self, key_id: str, reason: str | None = None, options: RequestOptions | None = None) -> dict:
        return await self.post(f"/auth/api-keys/{_seg(key_id)}/rotate", {"reason": reason}, options)

    async def revoke_key(self, key_id: str, reason: str | None = None, options: RequestOptions | None = None) -> None:
        await self.post(f"/auth/api-keys/{_seg(key_id)}/revoke", {"reason": reason}, options)

    async def delete_key(self, key_id: str, options: RequestOptions | None = None) -> None:
        await self.delete(f"/auth/api-keys/{_seg(key_id)}", options)

    async def update_permissions(self, key_id: str, permissions: list[str], options: RequestOptions | None = None) -> dict:
        return await self.put(f"/auth/api-keys/{_seg(key_id)}/permissions", {"permissions": permissions}, options)

    async def get_usage_stats(self, key_id: str | None = None, options: RequestOptions | None = None) -> Any:
        path = f"/auth/api-keys/{_seg(key_id)}/usage-stats" if key_id else "/auth/api-keys/usage-stats"
        return await self.get(path, options)


class SessionsClient(BaseApiClient):
    async def list_sessions(self, options: RequestOptions | None = None) -> list:
        return await self.get("/auth/sessions", options)

    async def get_current_session(self, options: RequestOptions | None = None) -> dict:
        return await self.get("/auth/sessions/current", options)

    async def revoke_session(self, session_id: str, options: RequestOptions | None = None) -> None:
        await self.delete(f"/auth/sessions/{_seg(session_id)}", options)

    async def revoke_all_sessions(self, options: RequestOptions | None = None) -> None:
        """Revoke every session except the current one."""
        await self.delete("/auth/sessions", options)

    async def get_trusted_devices(self, options: RequestOptions | None = None) -> list:
        return await self.get("/auth/sessions/trusted-devices", options)

    async def trust_device(self, device_name: str | None = None, options: RequestOptions | None = None) -> dict:
        return await self.post("/auth/sessions/trust-device", {"deviceName": device_name}, options)


class EntitiesClient(BaseApiClient):
    async def list_entities(self, filters: dict | None = None, options: RequestOptions | None = None) -> list:
        return await self.get("/entities", _with(options, params=filters))

    async def get_entity(self, entity_id: str, options: RequestOptions | None = None) -> dict:
        return await self.get(f"/entities/{_seg(entity_id)}", options)

    async def create_entity(self, data: dict, options: RequestOptions | None = None) -> dict:
        return await self.post("/entities", data, options)

    async def update_entity(self, entity_id: str, data: dict, options: RequestOptions | None = None) -> dict:
        return await self.put(f"/entities/{_seg(entity_id)}", data, options)

    async def delete_entity(self, entity_id: str, options: RequestOptions | None = None) -> None:
        await self.delete(f"/entities/{_seg(entity_id)}", options)

    async def list_records(self, entity_name: str, filters: dict | None = None, options: RequestOptions | None = None) -> dict:
        """Paginated records of a dynamic entity: {data: [...], meta: {...}}."""
        return await self.get(f"/{_seg(entity_name)}", _with(options, params=filters))

    async def get_record(self, entity_name: str, record_id: str, options: RequestOptions | None = None) -> dict:
        return await self.get(f"/{_seg(entity_name)}/{_seg(record_id)}", options)

    async def create_record(
        self,
        entity_name: str,
        data: dict,
        idempotency_key: str | None = None,
        options: RequestOptions | None = None,
    ) -> dict:
        """Create a record. Pass an idempotency key to make the write safe to retry."""
        opts = options or RequestOptions()
        if idempotency_key:
            opts = _with(opts, idempotency_key=idempotency_key)
        return await self.post(f"/{_seg(entity_name)}", data, opts)

    async def update_record(self, entity_name: str, record_id: str, data: dict, options: RequestOptions | None = None) -> dict:
        return await self.put(f"/{_seg(entity_name)}/{_seg(record_id)}", data, options)

    async def delete_record(self, entity_name: str, record_id: str, options: RequestOptions | None = None) -> None:
        await self.delete(f"/{_seg(entity_name)}/{_seg(record_id)}", options)

    async def validate_data(self, entity_name: str, data: dict, options: RequestOptions | None = None) -> dict:
        return await self.post(f"/{_seg(entity_name)}/validate", data, options)


class AdminUsersClient(BaseApiClient):
    async def list_users(self, filters: dict | None = None, options: RequestOptions | None = None) -> dict:
        return await self.get("/admin/users", _with(options, params=filters))

    async def get_user(self, user_id: str, options: RequestOptions | None = None) -> dict:
        return await self.get(f"/admin/users/{_seg(user_id)}", options)

    async def create_user(self, data: dict, options: RequestOptions | None = None) -> dict:
        return await self.post("/admin/users", data, options)

    async def update_user(self, user_id: str, data: dict, options: RequestOptions | None = None) -> dict:
        return await self.put(f"/admin/users/{_seg(user_id)}", data, options)

    async def delete_user(self, user_id: str, options: RequestOptions | None = None) -> None:
        await self.delete(f"/admin/users/{_seg(user_id)}", options)

    async def revoke_user_sessions(self, user_id: str, options: RequestOptions | None = None) -> dict:
        return await self.post(f"/admin/users/{_seg(user_id)}/revoke-sessions", {}, options)
