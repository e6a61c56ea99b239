"""
Sentry instrumentation for the routecast API.

Provider API keys travel as query parameters (key=, appid=), so outbound
HTTP breadcrumbs are scrubbed of them along with auth headers.
"""

import re
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

SENSITIVE_HEADERS = {"authorization", "cookie", "set-cookie", "x-client-id"}
_KEY_PARAM_RE = re.compile(r"((?:^|[?&])(?:key|appid|api_key)=)[^&#]*", re.IGNORECASE)


def scrub_url(url: str) -> str:
    return _KEY_PARAM_RE.sub(r"\1[FILTERED]", url)


def _scrub_headers(headers: Any) -> None:
    if isinstance(headers, dict):
        for key in list(headers.keys()):
            if key.lower() in SENSITIVE_HEADERS:
                headers[key] = "[FILTERED]"


def _strip_sensitive_data(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    """before_send hook: drop auth headers and provider keys from breadcrumbs and request data."""
    for breadcrumb in (event.get("breadcrumbs") or {}).get("values", []):
        data = breadcrumb.get("data")
        if not isinstance(data, dict):
            continue
        _scrub_headers(data.get("headers"))
        if isinstance(data.get("url"), str):
            data["url"] = scrub_url(data["url"])
        if isinstance(data.get("http.query"), str):
            data["http.query"] = scrub_url(data["http.query"])

    request = event.get("request")
    if isinstance(request, dict):
        _scrub_headers(request.get("headers"))
        if isinstance(request.get("query_string"), str):
            request["query_string"] = scrub_url(request["query_string"])
    return event


def _traces_sampler(rate: float):
    def sampler(sampling_context: dict[str, Any]) -> float:
        scope = sampling_context.get("asgi_scope") or {}
        if scope.get("path") == "/health":
            return 0.0
        return rate

    return sampler


def setup_sentry(settings) -> bool:
    """Initialise Sentry when a DSN is configured. Returns whether it was enabled."""
    if not settings.sentry_dsn:
        return False

    # every transaction in development, health probes never
    rate = 1.0 if settings.environment == "development" else settings.sentry_traces_sample_rate
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=f"{settings.app_name}@{settings.app_version}",
        debug=settings.debug,
        traces_sampler=_traces_sampler(rate),
        before_send=_strip_sensitive_data,
        integrations=[FastApiIntegration(transaction_style="endpoint")],
        send_default_pii=False,
    )
    return True
