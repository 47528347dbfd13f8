import asyncio
from pathlib import Path

import pytest

from praxisauth.core.config import AuthzConfigManager, AuthzSettings
from praxisauth.security.loader import FailMode
from praxisauth.security.models import ConfidentialityTier
from praxisauth.security.roles import Role
from praxisauth.utils.errors import ConfigurationError


def test_load_yaml_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "praxisauth.yml"
    config_path.write_text(
        "catalog_overrides:\n"
        "  reports:read: arzt\n"
        "failure_policy:\n"
        "  overrides:\n"
        "    appointment:*: fail_open\n"
        "  loader_timeout: 0.5\n"
        "constraints:\n"
        "  ip_allow_list: ['10.0.0.0/8']\n"
        "audit:\n"
        "  backend: sqlite\n"
        f"  path: {tmp_path / 'audit.sqlite'}\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("PRAXISAUTH_CONFIG", str(config_path))
    manager = AuthzConfigManager()
    settings = asyncio.run(manager.load())
    assert settings.catalog_overrides == {"reports:read": Role.ARZT}
    assert settings.failure_policy.overrides == {"appointment:*": FailMode.FAIL_OPEN}
    assert settings.failure_policy.loader_timeout == 0.5
    assert settings.audit.backend == "sqlite"
    assert settings.roles.ranks[Role.SUPER_ADMIN] == 100
    assert settings.clearance[ConfidentialityTier.HIGHLY_SENSITIVE] is Role.ARZT


def test_load_toml_config(tmp_path: Path) -> None:
    config_path = tmp_path / "praxisauth.toml"
    config_path.write_text(
        '[constraints]\ntimezone = "Europe/Vienna"\nbusiness_hours_start = 7\nbusiness_hours_end = 19\n',
        encoding="utf-8",
    )
    settings = asyncio.run(AuthzConfigManager(config_path).load())
    assert settings.constraints.business_hours_start == 7
    assert settings.consent_permissions == ["*:export", "*:share", "xds_document:submit"]


@pytest.mark.parametrize(
    "body",
    [
        "roles:\n  ranks:\n    super_admin: 100\n",
        "catalog_overrides:\n  'patient:*': admin\n",
        "constraints:\n  business_hours_start: 18\n  business_hours_end: 8\n",
        "constraints:\n  ip_allow_list: ['not-a-network']\n",
        "clearance:\n  normal: patient\n",
        "- just\n- a list\n",
    ],
)
def test_invalid_config_raises_configuration_error(tmp_path: Path, body: str) -> None:
    config_path = tmp_path / "bad.yml"
    config_path.write_text(body, encoding="utf-8")
    with pytest.raises(ConfigurationError):
        asyncio.run(AuthzConfigManager(config_path).load())


def test_missing_and_unsupported_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        asyncio.run(AuthzConfigManager(tmp_path / "absent.yml").load())
    ini = tmp_path / "config.ini"
    ini.write_text("[x]\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        asyncio.run(AuthzConfigManager(ini).load())


def test_reload_notifies_callbacks(tmp_path: Path) -> None:
    config_path = tmp_path / "praxisauth.yml"
    config_path.write_text("logging:\n  level: DEBUG\n", encoding="utf-8")
    manager = AuthzConfigManager(config_path)
    seen = []

    async def _callback(settings: AuthzSettings) -> None:
        seen.append(settings.logging.level)

    manager.register_callback(_callback)

    async def _run() -> None:
        await manager.get_settings()
        config_path.write_text("logging:\n  level: WARNING\n", encoding="utf-8")
        await manager.reload()

    asyncio.run(_run())
    assert seen == ["WARNING"]
