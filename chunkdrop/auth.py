from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException
import jwt
from jwt import InvalidTokenError

from chunkdrop.config import settings


@dataclass(frozen=True)
class AuthUser:
    user_id: str
    source: str
    is_admin: bool = False


def _parse_api_key_mappings() -> dict[str, str]:
    mapping: dict[str, str] = {}
    raw = settings.api_key_mappings.strip()
    if not raw:
        return mapping

    for item in raw.split(","):
        pair = item.strip()
        if ":" not in pair:
            continue
        api_key, user_id = pair.split(":", 1)
        api_key = api_key.strip()
        user_id = user_id.strip()
        if api_key and user_id:
            mapping[api_key] = user_id
    return mapping


def _parse_bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Unauthorized: No token provided")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise HTTPException(status_code=401, detail="Unauthorized: No token provided")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized: Empty token")
    return token


def _resolve_from_jwt(authorization: str | None) -> str:
    if not settings.jwt_secret:
        raise HTTPException(status_code=500, detail="jwt auth is enabled but jwt_secret is not configured")
    token = _parse_bearer_token(authorization)
    decode_kwargs = {
        "key": settings.jwt_secret,
        "algorithms": [settings.jwt_algorithm],
    }
    if settings.jwt_audience:
        decode_kwargs["audience"] = settings.jwt_audience
    if settings.jwt_issuer:
        decode_kwargs["issuer"] = settings.jwt_issuer
    try:
        payload = jwt.decode(token, **decode_kwargs)
    except InvalidTokenError as exc:
        raise HTTPException(status_code=401, detail="Unauthorized: Invalid or expired token") from exc
    user_id = str(payload.get("sub") or payload.get("uid") or payload.get("user_id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized: token has no subject")
    return user_id


def _resolve_from_api_key(x_api_key: str | None) -> str:
    if not x_api_key:
        raise HTTPException(status_code=401, detail="Unauthorized: No API key provided")
    user_id = _parse_api_key_mappings().get(x_api_key)
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized: Invalid API key")
    return user_id


def _authenticate(x_api_key: str | None, authorization: str | None) -> AuthUser:
    mode = settings.auth_mode.lower().strip()
    if mode not in {"api_key", "jwt", "hybrid"}:
        raise HTTPException(status_code=500, detail=f"unsupported auth_mode: {settings.auth_mode}")

    if mode == "jwt" or (mode == "hybrid" and authorization):
        user_id = _resolve_from_jwt(authorization)
        source = "jwt"
    else:
        user_id = _resolve_from_api_key(x_api_key)
        source = "api_key"

    admin_ids = {item.strip() for item in settings.admin_user_ids.split(",") if item.strip()}
    return AuthUser(user_id=user_id, source=source, is_admin=user_id in admin_ids)


def require_api_user(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> AuthUser:
    return _authenticate(x_api_key, authorization)


def optional_api_user(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> AuthUser | None:
    if not x_api_key and not authorization:
        return None
    return _authenticate(x_api_key, authorization)


def require_admin_user(user: AuthUser = Depends(require_api_user)) -> AuthUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="admin access required")
    return user
