from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

AUTH_MODE_JWT = "jwt"
AUTH_MODE_AUTHORIZER = "authorizer"
AUTH_MODES = {AUTH_MODE_JWT, AUTH_MODE_AUTHORIZER}

DEFAULT_OWNER_INDEX = "OwnerIdIndex"
DEFAULT_SCHEMA_VERSION = "2026-10-01"
DEFAULT_LEGACY_OWNER_ID = "0"


def _env_str(env: Mapping[str, str], name: str, default: str = "") -> str:
    return str(env.get(name) or default).strip()


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _env_str(env, name)
    if not raw:
        return default
    try:
        val = float(raw)
    except ValueError:
        return default
    return val if val > 0 else default


def cognito_issuer(user_pool_id: str) -> str:
    pool = (user_pool_id or "").strip()
    if "_" not in pool:
        return ""
    region = pool.split("_")[0]
    return f"https://cognito-idp.{region}.amazonaws.com/{pool}"


@dataclass(frozen=True)
class Settings:
    table_name: str
    owner_index: str = DEFAULT_OWNER_INDEX
    auth_mode: str = AUTH_MODE_JWT
    token_issuer: str = ""
    token_audience: str = ""
    token_use: str = "id"
    cors_origin: str = "*"
    schema_version: str = DEFAULT_SCHEMA_VERSION
    legacy_owner_id: str = DEFAULT_LEGACY_OWNER_ID
    aws_region: str = ""
    ddb_connect_timeout: float = 3.0
    ddb_read_timeout: float = 5.0

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        issuer = _env_str(env, "TODO_TOKEN_ISSUER") or cognito_issuer(
            _env_str(env, "COGNITO_USER_POOL_ID")
        )
        return cls(
            table_name=_env_str(env, "TODO_TABLE_NAME"),
            owner_index=_env_str(env, "TODO_OWNER_INDEX", DEFAULT_OWNER_INDEX),
            auth_mode=_env_str(env, "TODO_AUTH_MODE", AUTH_MODE_JWT).lower(),
            token_issuer=issuer.rstrip("/"),
            token_audience=_env_str(env, "TODO_TOKEN_AUDIENCE") or _env_str(env, "COGNITO_CLIENT_ID"),
            # Empty string is meaningful here: it disables the token_use check.
            token_use=str(env.get("TODO_TOKEN_USE", "id")).strip(),
            cors_origin=_env_str(env, "TODO_CORS_ORIGIN", "*"),
            schema_version=_env_str(env, "TODO_SCHEMA_VERSION", DEFAULT_SCHEMA_VERSION),
            legacy_owner_id=_env_str(env, "TODO_LEGACY_OWNER_ID", DEFAULT_LEGACY_OWNER_ID),
            aws_region=_env_str(env, "AWS_REGION"),
            ddb_connect_timeout=_env_float(env, "TODO_DDB_CONNECT_TIMEOUT", 3.0),
            ddb_read_timeout=_env_float(env, "TODO_DDB_READ_TIMEOUT", 5.0),
        )

    def problems(self) -> list[str]:
        out: list[str] = []
        if not self.table_name:
            out.append("TODO_TABLE_NAME is required")
        if self.auth_mode not in AUTH_MODES:
            out.append(f"TODO_AUTH_MODE must be one of {sorted(AUTH_MODES)}")
        if self.auth_mode == AUTH_MODE_JWT:
            if not self.token_issuer:
                out.append("TODO_TOKEN_ISSUER or COGNITO_USER_POOL_ID is required")
            if not self.token_audience:
                out.append("TODO_TOKEN_AUDIENCE or COGNITO_CLIENT_ID is required")
        return out

    @property
    def jwks_url(self) -> str:
        return f"{self.token_issuer}/.well-known/jwks.json" if self.token_issuer else ""
