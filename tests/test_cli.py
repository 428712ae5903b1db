"""Tests for the command-line entry point."""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from multi_ip_sync.cli import Config, NetworkError, app, create_syncer

ENV_VARS = ("IP_SET_COUNT", "API_KEY", "API_SECRET", "API", "SITE_DOMAIN")

runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path: Path) -> str:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "ip_set_count": 2,
                "api_key": "key",
                "api_secret": "secret",
                "api": "https://waf.example.com/api",
                "site_domain": "example.com",
            }
        ),
        encoding="utf-8",
    )
    return str(path)


def test_run_uses_config_file(tmp_path: Path) -> None:
    path = write_config(tmp_path)

    with patch("multi_ip_sync.cli.create_syncer") as mock_create:
        syncer = MagicMock()
        syncer.sync_once.return_value = True
        mock_create.return_value = syncer

        result = runner.invoke(app, ["-c", path])

    assert result.exit_code == 0
    config = mock_create.call_args[0][0]
    assert config.api_key == "key"
    assert config.site_domain == "example.com"
    syncer.sync_once.assert_called_once_with()


def test_run_without_any_config_exits_with_error(tmp_path: Path) -> None:
    with patch("multi_ip_sync.cli.create_syncer") as mock_create:
        result = runner.invoke(app, ["-c", str(tmp_path / "missing.json")])

    assert result.exit_code == 1
    mock_create.assert_not_called()


def test_run_error_exits_with_error(tmp_path: Path) -> None:
    path = write_config(tmp_path)

    with patch("multi_ip_sync.cli.create_syncer") as mock_create:
        mock_create.return_value.sync_once.side_effect = NetworkError("Connection refused")

        result = runner.invoke(app, ["--config", path])

    assert result.exit_code == 1


def test_unexpected_error_exits_with_error(tmp_path: Path) -> None:
    path = write_config(tmp_path)

    with patch("multi_ip_sync.cli.create_syncer") as mock_create:
        mock_create.return_value.sync_once.side_effect = RuntimeError("boom")

        result = runner.invoke(app, ["-c", path])

    assert result.exit_code == 1


def test_default_config_path_is_config_json(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    write_config(tmp_path)
    monkeypatch.chdir(tmp_path)

    with patch("multi_ip_sync.cli.create_syncer") as mock_create:
        result = runner.invoke(app, [])

    assert result.exit_code == 0
    assert mock_create.call_args[0][0].api_key == "key"


def test_create_syncer_wires_shared_client() -> None:
    config = Config(
        ip_set_count=3,
        api_key="key",
        api_secret="secret",
        api="https://waf.example.com/api",
        site_domain="example.com",
    )

    syncer = create_syncer(config)

    assert syncer.reconciler.client is syncer.site_client
    assert syncer.ip_set_count == 3
    assert syncer.site_domain == "example.com"
    assert syncer.site_client._session.headers["api-key"] == "key"
