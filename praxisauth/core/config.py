"""Configuration management for praxisauth.

:class:`AuthzConfigManager` loads the authorization settings from YAML (or
TOML) and validates them with Pydantic. Every section is optional; an empty
file yields the built-in defaults (role ranks, clearance table, consent gate,
fail-closed failure policy and a JSON-lines audit trail).
"""
from __future__ import annotations

import asyncio
import ipaddress
import os
import tomllib
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from praxisauth.security.constraints import DEFAULT_CONSENT_PERMISSIONS
from praxisauth.security.loader import FailMode
from praxisauth.security.models import ConfidentialityTier
from praxisauth.security.permissions import Permission
from praxisauth.security.roles import DEFAULT_RANKS, Role
from praxisauth.utils.errors import ConfigurationError
from praxisauth.utils.logging import get_logger

logger = get_logger(__name__)


def _parse_permission(value: str) -> str:
    return str(Permission.parse(value))


class RoleSettings(BaseModel):
    """Rank table for the role hierarchy."""

    ranks: Dict[Role, int] = Field(default_factory=lambda: dict(DEFAULT_RANKS))

    @model_validator(mode="after")
    def validate_ranks(self) -> "RoleSettings":
        missing = [role.value for role in Role if role not in self.ranks]
        if missing:
            raise ValueError(f"ranks missing for: {', '.join(missing)}")
        if len(set(self.ranks.values())) != len(self.ranks):
            raise ValueError("ranks must be distinct")
        return self


class ConstraintSettings(BaseModel):
    """Inputs for the named contextual guards."""

    timezone: str = "Europe/Vienna"
    business_hours_start: int = Field(default=8, ge=0, le=23)
    business_hours_end: int = Field(default=18, ge=1, le=24)
    business_days: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])
    allowed_weekdays: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])
    ip_allow_list: List[str] = Field(default_factory=list)

    @field_validator("business_days", "allowed_weekdays")
    @classmethod
    def validate_days(cls, value: List[int]) -> List[int]:
        invalid = [day for day in value if day not in range(7)]
        if invalid:
            raise ValueError(f"weekdays must be 0 (Monday) to 6 (Sunday), got {invalid}")
        return value

    @field_validator("ip_allow_list")
    @classmethod
    def validate_networks(cls, value: List[str]) -> List[str]:
        for entry in value:
            ipaddress.ip_network(entry, strict=False)
        return value

    @model_validator(mode="after")
    def validate_window(self) -> "ConstraintSettings":
        if self.business_hours_end <= self.business_hours_start:
            raise ValueError("business hours must end after they start")
        return self


class FailurePolicySettings(BaseModel):
    """How infrastructure faults are treated, per permission."""

    default: FailMode = FailMode.FAIL_CLOSED
    overrides: Dict[str, FailMode] = Field(default_factory=dict)
    loader_timeout: float = Field(default=2.0, gt=0)

    @field_validator("overrides")
    @classmethod
    def validate_overrides(cls, value: Dict[str, FailMode]) -> Dict[str, FailMode]:
        return {_parse_permission(key): mode for key, mode in value.items()}


class AuditSettings(BaseModel):
    """Where and how audit entries are persisted."""

    backend: Literal["jsonl", "sqlite"] = "jsonl"
    path: Path = Field(default=Path(".praxisauth/audit.jsonl"))
    batch_size: int = Field(default=50, ge=1)
    max_retries: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=0.05, ge=0)
    durable: bool = True


class LoggingSettings(BaseModel):
    level: str = "INFO"
    directory: Optional[Path] = None


class AuthzSettings(BaseModel):
    """Root configuration schema."""

    roles: RoleSettings = Field(default_factory=RoleSettings)
    catalog_overrides: Dict[str, Role] = Field(default_factory=dict)
    self_service: Optional[Dict[str, List[str]]] = None
    consent_permissions: List[str] = Field(default_factory=lambda: list(DEFAULT_CONSENT_PERMISSIONS))
    clearance: Dict[ConfidentialityTier, Role] = Field(
        default_factory=lambda: {
            ConfidentialityTier.SENSITIVE: Role.ARZT,
            ConfidentialityTier.HIGHLY_SENSITIVE: Role.ARZT,
        }
    )
    constraints: ConstraintSettings = Field(default_factory=ConstraintSettings)
    failure_policy: FailurePolicySettings = Field(default_factory=FailurePolicySettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("catalog_overrides")
    @classmethod
    def validate_catalog_overrides(cls, value: Dict[str, Role]) -> Dict[str, Role]:
        parsed = {}
        for key, role in value.items():
            permission = Permission.parse(key)
            if permission.is_wildcard:
                raise ValueError(f"catalog overrides must name a concrete permission, got {key!r}")
            parsed[str(permission)] = role
        return parsed

    @field_validator("consent_permissions")
    @classmethod
    def validate_consent(cls, value: List[str]) -> List[str]:
        return [_parse_permission(item) for item in value]

    @field_validator("clearance")
    @classmethod
    def validate_clearance(cls, value: Dict[ConfidentialityTier, Role]) -> Dict[ConfidentialityTier, Role]:
        if ConfidentialityTier.NORMAL in value:
            raise ValueError("the normal tier has no clearance requirement")
        return value


class AuthzConfigManager:
    """Load authorization settings and notify listeners on reload."""

    def __init__(self, config_path: Optional[Path] = None) -> None:
        self.config_path = config_path or Path(os.environ.get("PRAXISAUTH_CONFIG", "config/praxisauth.yml"))
        self._settings: Optional[AuthzSettings] = None
        self._callbacks: List[Callable[[AuthzSettings], Awaitable[None]]] = []
        self._lock = asyncio.Lock()

    async def load(self) -> AuthzSettings:
        """Load configuration from disk and validate it."""

        async with self._lock:
            logger.debug("loading configuration", extra={"rule": str(self.config_path)})
            data = self._read_file(self.config_path)
            try:
                settings = AuthzSettings(**data)
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
            self._settings = settings
            return settings

    async def reload(self) -> AuthzSettings:
        """Reload configuration explicitly."""

        settings = await self.load()
        await self._notify(settings)
        return settings

    def register_callback(self, callback: Callable[[AuthzSettings], Awaitable[None]]) -> None:
        """Register a coroutine callback executed after reloads."""

        self._callbacks.append(callback)

    async def get_settings(self) -> AuthzSettings:
        """Return the last loaded settings, loading them if necessary."""

        if self._settings is None:
            return await self.load()
        return self._settings

    async def _notify(self, settings: AuthzSettings) -> None:
        for callback in self._callbacks:
            try:
                await callback(settings)
            except Exception as exc:  # pragma: no cover - logging side effects only
                logger.exception("configuration callback failed", exc_info=exc)

    @staticmethod
    def _read_file(path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise ConfigurationError(f"Configuration file {path} does not exist")
        try:
            if path.suffix in {".yml", ".yaml"}:
                with path.open("r", encoding="utf-8") as handle:
                    data = yaml.safe_load(handle) or {}
            elif path.suffix == ".toml":
                with path.open("rb") as handle:
                    data = tomllib.load(handle)
            else:
                raise ConfigurationError(f"Unsupported configuration format: {path.suffix}")
        except (yaml.YAMLError, tomllib.TOMLDecodeError) as exc:
            raise ConfigurationError(f"Could not parse {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping")
        return data


__all__ = [
    "AuthzConfigManager",
    "AuthzSettings",
    "RoleSettings",
    "ConstraintSettings",
    "FailurePolicySettings",
    "AuditSettings",
    "LoggingSettings",
]
