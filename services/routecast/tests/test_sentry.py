"""
Tests for Sentry setup and event scrubbing.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import patch

from services.routecast.middleware.sentry import _strip_sensitive_data, scrub_url, setup_sentry


def _settings(**overrides) -> SimpleNamespace:
    base = {
        "sentry_dsn": "https://public@example.ingest.sentry.io/1",
        "environment": "production",
        "app_name": "routecast",
        "app_version": "0.1.0",
        "debug": False,
        "sentry_traces_sample_rate": 0.1,
    }
    base.update(overrides)
    return SimpleNamespace(**base)


class TestScrubbing:
    def test_provider_keys_redacted(self):
        url = "https://api.weatherapi.com/v1/current.json?key=secret&q=1,2"
        assert scrub_url(url) == "https://api.weatherapi.com/v1/current.json?key=[FILTERED]&q=1,2"
        assert "abc" not in scrub_url("https://x/data?lat=1&appid=abc")

    def test_event_breadcrumbs_and_headers(self):
        event = {
            "breadcrumbs": {"values": [{"data": {"url": "https://x/?api_key=k1", "headers": {"Authorization": "t"}}}]},
            "request": {"headers": {"Cookie": "c", "Accept": "json"}, "query_string": "key=k2"},
        }
        out = _strip_sensitive_data(event, {})

        crumb = out["breadcrumbs"]["values"][0]["data"]
        assert crumb["url"] == "https://x/?api_key=[FILTERED]"
        assert crumb["headers"]["Authorization"] == "[FILTERED]"
        assert out["request"]["headers"] == {"Cookie": "[FILTERED]", "Accept": "json"}
        assert out["request"]["query_string"] == "key=[FILTERED]"


class TestSetupSentry:
    def test_disabled_without_dsn(self):
        with patch("services.routecast.middleware.sentry.sentry_sdk.init") as init:
            assert setup_sentry(_settings(sentry_dsn="")) is False
        init.assert_not_called()

    def test_uses_service_settings(self):
        with patch("services.routecast.middleware.sentry.sentry_sdk.init") as init:
            assert setup_sentry(_settings(debug=True)) is True

        kwargs = init.call_args.kwargs
        assert kwargs["release"] == "routecast@0.1.0"
        assert kwargs["debug"] is True
        sampler = kwargs["traces_sampler"]
        assert sampler({"asgi_scope": {"path": "/weather/multi-source"}}) == 0.1
        assert sampler({"asgi_scope": {"path": "/health"}}) == 0.0

    def test_development_samples_everything(self):
        with patch("services.routecast.middleware.sentry.sentry_sdk.init") as init:
            setup_sentry(_settings(environment="development"))
        assert init.call_args.kwargs["traces_sampler"]({}) == 1.0
