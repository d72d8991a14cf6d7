import pytest
from pydantic import ValidationError

from reverse_proxy.core.config import DEFAULT_METHODS, HeaderPolicy, Settings, load_settings


def test_defaults_when_environment_is_empty(monkeypatch):
    for name in ("PORT", "TARGET_URL", "HEADER_POLICY", "CORS_ALLOW_ORIGINS", "METRICS_PATH"):
        monkeypatch.delenv(name, raising=False)
    s = load_settings()
    assert s.port == 6969
    assert s.target == "http://127.0.0.1:3845"
    assert s.header_policy is HeaderPolicy.PRESERVE_HOST
    assert s.cors_allow_origins == ("*",)
    assert s.cors_allow_methods == DEFAULT_METHODS
    assert s.metrics_path == "/_proxy/metrics"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("PORT", "8088")
    monkeypatch.setenv("TARGET_URL", "http://mcp.internal:3845/")
    monkeypatch.setenv("HEADER_POLICY", "REWRITE_HOST")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("ADD_FORWARDED_HEADERS", "true")
    monkeypatch.setenv("SHUTDOWN_GRACE_S", "2.5")
    s = load_settings()
    assert s.port == 8088
    assert s.target == "http://mcp.internal:3845"
    assert s.header_policy is HeaderPolicy.REWRITE_HOST
    assert s.cors_allow_origins == ("https://a.example", "https://b.example")
    assert s.add_forwarded_headers is True
    assert s.shutdown_grace_s == 2.5


@pytest.mark.parametrize(
    "name,value",
    [("PORT", "not-a-number"), ("PORT", "70000"), ("TARGET_URL", "ftp://nope"), ("HEADER_POLICY", "sometimes")],
)
def test_invalid_configuration_is_fatal(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(RuntimeError, match="Invalid configuration"):
        load_settings()


def test_settings_are_immutable():
    s = Settings()
    with pytest.raises(ValidationError):
        s.port = 1234


def test_metrics_path_made_absolute():
    assert Settings(metrics_path="metrics").metrics_path == "/metrics"
    assert Settings(metrics_path="").metrics_path == ""
