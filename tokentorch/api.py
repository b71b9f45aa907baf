"""claude.ai usage API client.

Authenticates with the browser ``sessionKey`` cookie.  Failures are never
raised to the caller; they come back as a short description in
``FetchResult.error`` so the poll loop can show them as an error state.
"""
from __future__ import annotations

from dataclasses import dataclass

import requests
from loguru import logger

from tokentorch.config import AppConfig
from tokentorch.usage import UsageSnapshot

BASE_URL = 'https://claude.ai'
USAGE_PAGE_URL = f'{BASE_URL}/settings/usage'
REQUEST_TIMEOUT = 10

SESSION_EXPIRED = 'Session expired. Please update your session key.'
NOT_CONFIGURED = 'Not configured: set a session key and organization ID.'

HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:147.0) Gecko/20100101 Firefox/147.0',
    'Referer': USAGE_PAGE_URL,
    'anthropic-client-platform': 'web_claude_ai',
    'Content-Type': 'application/json',
}


@dataclass(frozen=True)
class FetchResult:
    snapshot: UsageSnapshot | None = None
    error: str | None = None
    refreshed_session_key: str | None = None


def usage_url(org_id: str) -> str:
    return f'{BASE_URL}/api/organizations/{org_id}/usage'


def fetch_usage(config: AppConfig) -> FetchResult:
    """Fetch the current usage snapshot for the configured organization.

    Parameters
    ----------
    config : AppConfig
        Supplies the session key cookie and organization ID.

    Returns
    -------
    FetchResult
        ``snapshot`` on success, otherwise ``error``.  When the server
        rotates the session cookie, the new value is returned in
        ``refreshed_session_key``.
    """
    if not config.is_configured():
        return FetchResult(error=NOT_CONFIGURED)

    try:
        resp = requests.get(
            usage_url(config.org_id),
            headers=HEADERS,
            cookies={'sessionKey': config.session_key},
            timeout=REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        payload = resp.json()
    except requests.HTTPError as e:
        code = e.response.status_code if e.response is not None else 0
        logger.warning(f'[api] usage request failed with HTTP {code or "?"}')
        if code in (401, 403):
            return FetchResult(error=SESSION_EXPIRED)
        return FetchResult(error=f'API error: HTTP {code or "?"}')
    except requests.JSONDecodeError as e:
        return FetchResult(error=f'Parse error: {e}')
    except requests.RequestException as e:
        logger.warning(f'[api] usage request failed: {e}')
        return FetchResult(error=f'Network error: {e}')

    if not isinstance(payload, dict):
        return FetchResult(error=f'Parse error: expected an object, got {type(payload).__name__}')

    refreshed = resp.cookies.get('sessionKey')
    if refreshed == config.session_key:
        refreshed = None

    return FetchResult(snapshot=UsageSnapshot.from_json(payload), refreshed_session_key=refreshed)
