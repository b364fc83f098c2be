import pytest

from courier import ClientConfig, load_client_config_from_env


def test_defaults_when_nothing_set(monkeypatch):
    for name in ("COURIER_BASE_URL", "COURIER_TIMEOUT", "COURIER_MAX_ATTEMPTS"):
        monkeypatch.delenv(name, raising=False)
    cfg = load_client_config_from_env()
    assert cfg == ClientConfig()


def test_env_and_file_precedence(monkeypatch, tmp_path):
    envp = tmp_path / ".env"
    envp.write_text(
        "# client settings\n"
        "COURIER_BASE_URL='https://file.test'\n"
        "export COURIER_MAX_ATTEMPTS=5\n"
        'COURIER_AUTH_SCHEME="Token"\n'
        "not a pair\n"
    )
    monkeypatch.setenv("COURIER_BASE_URL", "https://env.test")
    monkeypatch.setenv("COURIER_TIMEOUT", "12.5")
    monkeypatch.setenv("COURIER_CONCURRENCY_LIMIT", "6")
    cfg = load_client_config_from_env(env_path=str(envp))
    # real environment wins over the file
    assert cfg.base_url == "https://env.test"
    assert cfg.timeout == 12.5  # noqa: PLR2004
    assert cfg.concurrency_limit == 6  # noqa: PLR2004
    assert cfg.retry.max_attempts == 5  # noqa: PLR2004
    assert cfg.retry.base_delay == 1.0
    assert cfg.auth.scheme == "Token"
    assert cfg.auth.header == "Authorization"


def test_custom_prefix_and_overrides(monkeypatch):
    monkeypatch.setenv("API_MAX_DELAY", "9")
    monkeypatch.setenv("API_TIMEOUT", "none")
    cfg = load_client_config_from_env(prefix="API_", max_notifications=2)
    assert cfg.retry.max_delay == 9.0  # noqa: PLR2004
    assert cfg.timeout is None
    assert cfg.max_notifications == 2  # noqa: PLR2004


def test_invalid_number_names_the_variable(monkeypatch):
    monkeypatch.setenv("COURIER_MAX_ATTEMPTS", "three")
    with pytest.raises(ValueError, match="COURIER_MAX_ATTEMPTS"):
        load_client_config_from_env()


def test_missing_env_file_is_ignored(monkeypatch, tmp_path):
    monkeypatch.delenv("COURIER_BASE_URL", raising=False)
    cfg = load_client_config_from_env(env_path=str(tmp_path / "missing.env"))
    assert cfg.base_url == ""
