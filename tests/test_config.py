from config import TestingConfig


def test_otp_and_token_ttls_read_from_environment(monkeypatch):
    monkeypatch.setenv("OTP_TTL_MINUTES", "7")
    monkeypatch.setenv("TOKEN_TTL_MINUTES", "20")
    config = TestingConfig()
    assert config.OTP_TTL_MINUTES == 7
    assert config.TOKEN_TTL_MINUTES == 20


def test_ttl_defaults(monkeypatch):
    monkeypatch.delenv("OTP_TTL_MINUTES", raising=False)
    monkeypatch.delenv("TOKEN_TTL_MINUTES", raising=False)
    config = TestingConfig()
    assert (config.OTP_TTL_MINUTES, config.TOKEN_TTL_MINUTES) == (10, 15)
