from __future__ import annotations

import pytest

from refsync.config import SyncLimitsConfig, TerminologyServerConfig, load_config


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    # keep a developer's .env out of these tests
    monkeypatch.chdir(tmp_path)
    for name in (
        "SNOWSTORM_URL",
        "SNOWSTORM_MAX_RETRIES",
        "REFSET_BULK_MEMBER_BATCH_SIZE",
        "REFSET_URL_MAX_CHAR_LENGTH",
        "REFSET_DESCRIPTION_WORKERS",
        "LOG_LEVEL",
        "DB_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    cfg = load_config()

    assert cfg.terminology.base_url == "http://localhost:8080/snowstorm/snomed-ct"
    assert cfg.limits.max_record_length == 9990
    assert cfg.limits.url_max_char_length == 6000
    assert cfg.limits.bulk_member_batch_size == 5000
    assert cfg.limits.delete_member_batch_size == 1000
    assert cfg.limits.bulk_poll_interval_sec == 0.8
    assert cfg.runtime.log_level == "INFO"
    assert cfg.database.page_size == 50


def test_environment_values_are_loaded(monkeypatch) -> None:
    monkeypatch.setenv("SNOWSTORM_URL", "https://terminology.example/snowstorm/snomed-ct/")
    monkeypatch.setenv("REFSET_BULK_MEMBER_BATCH_SIZE", "250")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("DB_PATH", "/var/lib/refsync/refsets.db")

    cfg = load_config()

    assert cfg.terminology.base_url == "https://terminology.example/snowstorm/snomed-ct"
    assert cfg.limits.bulk_member_batch_size == 250
    assert cfg.runtime.log_level == "DEBUG"
    assert cfg.runtime.db_path == "/var/lib/refsync/refsets.db"


def test_overrides_win_over_environment(monkeypatch) -> None:
    monkeypatch.setenv("REFSET_BULK_MEMBER_BATCH_SIZE", "250")

    cfg = load_config(limits={"bulk_member_batch_size": 7})

    assert cfg.limits.bulk_member_batch_size == 7


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("REFSET_URL_MAX_CHAR_LENGTH", "-1"),
        ("REFSET_URL_MAX_CHAR_LENGTH", "lots"),
        ("REFSET_DESCRIPTION_WORKERS", "500"),
        ("SNOWSTORM_URL", "ftp://terminology.example"),
        ("SNOWSTORM_MAX_RETRIES", "11"),
        ("LOG_LEVEL", "chatty"),
    ],
)
def test_invalid_values_fail_loading(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(RuntimeError, match="Configuration validation failed"):
        load_config()


def test_blank_values_fall_back_to_defaults() -> None:
    limits = SyncLimitsConfig(REFSET_BULK_MEMBER_BATCH_SIZE="")
    terminology = TerminologyServerConfig(SNOWSTORM_ACCEPT_LANGUAGE="  ")

    assert limits.bulk_member_batch_size == 5000
    assert terminology.accept_language.startswith("en-X-900000000000509007")
    assert not terminology.has_credentials
