"""Tests for configuration loading."""

import json

import pytest

from sitekv.config import load_config
from sitekv.errors import ConfigurationError


@pytest.fixture
def config_file(tmp_path):
    def _write(data):
        path = tmp_path / ".sitekv.json"
        path.write_text(json.dumps(data) if not isinstance(data, str) else data)
        return str(path)
    return _write


def test_load_config_accepts_original_option_names(config_file):
    """Option records exported from the settings table load unchanged."""
    path = config_file({
        "apiToken": "token-from-file",
        "accountID": "acc1",
        "namespaceID": "ns1",
        "useBulkUpload": False,
    })

    config = load_config(config_file=path, environ={})

    assert config.api_token.get_secret_value() == "token-from-file"
    assert config.account_id == "acc1"
    assert config.namespace_id == "ns1"
    assert config.use_bulk_upload is False


def test_environment_overrides_config_file(config_file):
    path = config_file({"account_id": "file-acc", "namespace_id": "file-ns", "workers": 6})

    config = load_config(
        config_file=path,
        environ={"CLOUDFLARE_ACCOUNT_ID": "env-acc", "CLOUDFLARE_API_TOKEN": "env-token"},
    )

    assert config.account_id == "env-acc"
    assert config.namespace_id == "file-ns"
    assert config.workers == 6
    assert config.api_token.get_secret_value() == "env-token"


def test_env_file_is_read(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# Cloudflare credentials\n"
        "export CLOUDFLARE_API_TOKEN='dotenv-token'\n"
        "CLOUDFLARE_ACCOUNT_ID=dotenv-acc\n"
        "CLOUDFLARE_NAMESPACE_ID=\"dotenv-ns\"\n"
        "SITEKV_USE_BULK_UPLOAD=0\n"
    )

    config = load_config(env_file=str(env_file), environ={})

    assert config.api_token.get_secret_value() == "dotenv-token"
    assert config.account_id == "dotenv-acc"
    assert config.namespace_id == "dotenv-ns"
    assert config.use_bulk_upload is False
    assert config.missing_credentials() == []


def test_process_environment_overrides_env_file(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("CLOUDFLARE_ACCOUNT_ID=dotenv-acc\n")

    config = load_config(env_file=str(env_file), environ={"CLOUDFLARE_ACCOUNT_ID": "real-acc"})

    assert config.account_id == "real-acc"


def test_missing_env_file_is_ignored(tmp_path):
    config = load_config(env_file=str(tmp_path / "missing.env"), environ={})
    assert config.missing_credentials() == ["api_token", "account_id", "namespace_id"]


def test_keyword_overrides_win_and_none_is_ignored(config_file):
    path = config_file({"workers": 8, "incremental": True})

    config = load_config(config_file=path, environ={}, workers=None, incremental=False)

    assert config.workers == 8
    assert config.incremental is False


def test_missing_config_file_raises(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_config(config_file=str(tmp_path / "nope.json"), environ={})


def test_invalid_json_raises(config_file):
    path = config_file("{not json")
    with pytest.raises(ConfigurationError, match="Invalid JSON"):
        load_config(config_file=path, environ={})


def test_non_object_config_raises(config_file):
    path = config_file([1, 2, 3])
    with pytest.raises(ConfigurationError, match="JSON object"):
        load_config(config_file=path, environ={})


def test_invalid_value_raises_configuration_error():
    with pytest.raises(ConfigurationError, match="Invalid configuration"):
        load_config(environ={"CLOUDFLARE_ACCOUNT_ID": "bad/account"})


def test_malformed_env_file_raises(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("CLOUDFLARE_ACCOUNT_ID\n")

    with pytest.raises(ConfigurationError):
        load_config(env_file=str(env_file), environ={})


def test_token_never_appears_in_repr():
    config = load_config(environ={"CLOUDFLARE_API_TOKEN": "super-secret-token-value"})

    assert "super-secret-token-value" not in repr(config)
    assert "super-secret-token-value" not in str(config)
    assert "super-secret-token-value" not in config.model_dump_json()
