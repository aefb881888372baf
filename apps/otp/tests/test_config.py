import os

import pytest

from storefront_shared import env_bool, env_int, env_list, otp_config_from_env
from storefront_shared.env_loader import load_env_file


def test_env_helpers(monkeypatch):
    monkeypatch.setenv("FLAG", "yes")
    monkeypatch.setenv("NUM", "42")
    monkeypatch.setenv("ITEMS", "a, b,,c")
    assert env_bool("FLAG") is True
    assert env_int("NUM", default=1) == 42
    assert env_list("ITEMS") == ["a", "b", "c"]
    assert env_list("MISSING_ITEMS", default=["x"]) == ["x"]

    monkeypatch.setenv("FLAG", "maybe")
    with pytest.raises(ValueError):
        env_bool("FLAG")
    monkeypatch.setenv("NUM", "0")
    with pytest.raises(ValueError):
        env_int("NUM", default=1, minimum=1)


def test_load_env_file_does_not_override(tmp_path, monkeypatch):
    monkeypatch.setenv("OTP_TEST_EXISTING", "keep")
    monkeypatch.delenv("OTP_TEST_NEW", raising=False)
    path = tmp_path / "storefront.env"
    path.write_text("# comment\nexport OTP_TEST_NEW='fresh'\nOTP_TEST_EXISTING=replaced\nnot a pair\n")
    assert load_env_file(str(path)) == 1
    assert os.environ["OTP_TEST_NEW"] == "fresh"
    assert os.environ["OTP_TEST_EXISTING"] == "keep"
    monkeypatch.delenv("OTP_TEST_NEW")


def test_otp_config_from_env(monkeypatch):
    monkeypatch.setenv("OTP_STORE", "SQL")
    monkeypatch.setenv("OTP_TTL_SECS", "120")
    monkeypatch.setenv("OTP_COOLDOWN_SECS", "90")
    monkeypatch.setenv("OTP_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("OTP_GRACE_SECS", "30")
    monkeypatch.setenv("ENV", "prod")
    cfg = otp_config_from_env()
    assert cfg.store == "sql"
    assert cfg.ttl_secs == 120
    assert cfg.max_attempts == 3
    assert cfg.code_length == 4
    # retention never shorter than the cooldown
    assert cfg.grace_secs == 90
    assert cfg.dev_mode is False


def test_otp_config_prefix(monkeypatch):
    monkeypatch.setenv("CHECKOUT_OTP_TTL_SECS", "60")
    assert otp_config_from_env("CHECKOUT").ttl_secs == 60
