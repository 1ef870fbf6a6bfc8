"""AdminConfig のテスト."""

import pytest

from relay_admin.config import AdminConfig


def test_admin_config_defaults():
    """環境変数が無い場合はデフォルト値."""
    config = AdminConfig.from_env({})
    assert config == AdminConfig()
    assert config.config_file_path == "../mediamtx.yml"
    assert config.relay_api_url == "http://mediamtx:9997"
    assert config.relay_username is None
    assert config.upstream_timeout == 5.0
    assert config.restart_command == ("docker", "restart", "mediamtx")
    assert config.cors_origins == ("http://localhost:5173",)


def test_admin_config_from_env():
    """環境変数の値が反映されることを確認."""
    config = AdminConfig.from_env(
        {
            "CONFIG_FILE_PATH": "/mediamtx.yml",
            "MEDIAMTX_API_URL": "http://relay:9997",
            "MEDIAMTX_API_USER": "admin",
            "MEDIAMTX_API_PASS": "secret",
            "UPSTREAM_TIMEOUT": "2.5",
            "RESTART_COMMAND": "docker compose restart 'media mtx'",
            "RESTART_SETTLE_SECONDS": "0",
            "CORS_ORIGIN": "http://a.local, http://b.local,",
            "LOG_LEVEL": "debug",
        }
    )
    assert config.config_file_path == "/mediamtx.yml"
    assert config.relay_api_url == "http://relay:9997"
    assert config.relay_username == "admin"
    assert config.relay_password == "secret"
    assert config.upstream_timeout == 2.5
    assert config.restart_command == ("docker", "compose", "restart", "media mtx")
    assert config.restart_settle_seconds == 0.0
    assert config.cors_origins == ("http://a.local", "http://b.local")
    assert config.log_level == "DEBUG"


def test_empty_restart_command_disables_restart():
    assert AdminConfig.from_env({"RESTART_COMMAND": ""}).restart_command == ()


def test_invalid_number_raises():
    with pytest.raises(ValueError):
        AdminConfig.from_env({"UPSTREAM_TIMEOUT": "soon"})
