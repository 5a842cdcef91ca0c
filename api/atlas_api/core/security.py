import hashlib
import hmac
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from atlas_api.core.auth import ACCESS_POLICY, ROLE_SCOPES, SCHEDULER_SCOPES, Principal, PrincipalType
from atlas_api.core.config import Settings, get_settings

SCHEDULER_KEY_HEADER = "X-Scheduler-Key"


async def get_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
    x_scheduler_key: str | None = Header(default=None, alias=SCHEDULER_KEY_HEADER),
) -> Principal:
    """Resolve the caller: the scheduler key wins over a bearer token when both are sent."""
    if x_scheduler_key is not None:
        return _scheduler_principal(settings, x_scheduler_key)
    return await _human_principal(settings, authorization)


def require_action(action: str) -> Callable[..., Awaitable[Principal]]:
    async def _authorize(principal: Principal = Depends(get_principal)) -> Principal:
        try:
            ACCESS_POLICY.authorize(principal, action)
        except PermissionError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        return principal

    return _authorize


def hash_scheduler_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def _scheduler_principal(settings: Settings, raw_key: str) -> Principal:
    if not settings.scheduler_key_hash:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="scheduler auth is not configured",
        )
    if not raw_key or not hmac.compare_digest(settings.scheduler_key_hash, hash_scheduler_key(raw_key)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid scheduler key")

    return Principal(
        principal_type=PrincipalType.SCHEDULER,
        subject="scheduler",
        scopes=set(SCHEDULER_SCOPES),
        actor_id="scheduler",
    )


async def _human_principal(settings: Settings, authorization: str | None) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"auth requires bearer token or {SCHEDULER_KEY_HEADER}",
        )

    token = authorization.split(" ", maxsplit=1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth is not configured",
        )

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    role = _resolve_human_role(user)

    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=user_id,
        role=role,
        scopes=set(ROLE_SCOPES.get(role, ROLE_SCOPES["user"])),
        actor_id=user_id,
    )


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }
    url = f"{supabase_url.rstrip('/')}/auth/v1/user"

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification failed",
        )

    return response.json()


def _resolve_human_role(user: dict[str, Any]) -> str:
    # user_metadata is writable by the user and never grants a role
    metadata = user.get("app_metadata")
    if isinstance(metadata, dict):
        role = metadata.get("role")
        if isinstance(role, str) and role:
            return role
    return "user"
