"""Client for the claude.ai organization and usage endpoints."""

import http.cookiejar
import json
import logging
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from usage_agent.config import get_config_value
from usage_agent.models import UsageSnapshot, mask_secret

SESSION_COOKIE_NAME = "sessionKey"
ORGANIZATIONS_PATH = "/api/organizations"
USAGE_PATH = "/api/organizations/{organization_id}/usage"


class ClaudeApiError(Exception):
    """Base class for errors talking to claude.ai."""


class TransportError(ClaudeApiError):
    """The request never produced an HTTP response."""


class AuthenticationError(ClaudeApiError):
    """The session credential was refused (HTTP 401/403)."""

    def __init__(self, status_code: int):
        super().__init__(f"Session credential rejected (HTTP {status_code})")
        self.status_code = status_code


class HttpStatusError(ClaudeApiError):
    """Any other non-2xx response."""

    def __init__(self, status_code: int):
        super().__init__(f"Unexpected HTTP status {status_code}")
        self.status_code = status_code


class ResponseDecodeError(ClaudeApiError):
    """A 2xx response whose body is not the expected JSON shape."""


class _RejectAllCookiesPolicy(http.cookiejar.DefaultCookiePolicy):
    """Keeps Set-Cookie responses out of the shared session jar."""

    def set_ok(self, cookie, request):
        return False

    def return_ok(self, cookie, request):
        return False


class ClaudeClient:
    """Builds and issues requests against claude.ai with a caller-supplied session key.

    The credential is sent as an explicit ``Cookie`` header on every call and
    the session's cookie jar refuses to store anything, so one account's
    credential can never ride along on another account's request.
    """

    def __init__(
        self,
        base_url: str,
        client_version: str = "1.0.0",
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.logger = logging.getLogger(self.__class__.__name__)
        if not base_url:
            self.logger.critical("Missing claude.ai base URL at client initialization.")
            raise ValueError("Missing claude.ai base URL")

        self.base_url = base_url.rstrip("/")
        self.client_version = client_version
        self.user_agent = user_agent
        self.timeout = timeout or get_config_value("claude.request_timeout_seconds", 15)
        self.session = requests.Session()
        self._setup_session()

    def _setup_session(self) -> None:
        """Fixed client-identification headers, no cookie jar, connection-level retries only."""
        self.logger.debug("Setting up requests session with headers and retries.")
        headers = {
            "Accept": "application/json",
            "anthropic-client-platform": "web_claude_ai",
            "anthropic-client-version": self.client_version,
            "sec-fetch-dest": "empty",
            "sec-fetch-mode": "cors",
            "sec-fetch-site": "same-origin",
            "origin": self.base_url,
            "referer": f"{self.base_url}/settings/usage",
        }
        if self.user_agent:
            headers["User-Agent"] = self.user_agent
        self.session.headers.update(headers)
        self.session.cookies.set_policy(_RejectAllCookiesPolicy())

        # HTTP status handling belongs to the caller's backoff, not the adapter
        retry_strategy = Retry(total=1, connect=1, read=0, status=0, backoff_factor=1)
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def close(self) -> None:
        self.session.close()

    def _log_api_call(
        self, method: str, url: str, response: Optional[requests.Response] = None
    ) -> None:
        """Log API calls in debug mode. The credential header is never included."""
        if not get_config_value("agent_settings.debug_mode", False):
            return

        log_data = {
            "method": method,
            "url": url,
            "status_code": response.status_code if response is not None else None,
            "response_body": None,
        }
        if response is not None:
            log_data["response_body"] = response.text[:1000]

        self.logger.debug(
            f"claude.ai API Call: {json.dumps(log_data, indent=2, default=str)}"
        )

    def _get_json(self, path: str, session_key: str) -> Any:
        """GET path with the session credential and return the parsed JSON body."""
        url = f"{self.base_url}{path}"
        headers = {"Cookie": f"{SESSION_COOKIE_NAME}={session_key}"}
        try:
            response = self.session.get(url, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            self.logger.warning(
                f"Network error calling {path} (session {mask_secret(session_key)}): {type(e).__name__}"
            )
            raise TransportError(str(e)) from e

        self._log_api_call("GET", url, response=response)

        if response.status_code in (401, 403):
            self.logger.info(f"Auth failure on {path} (HTTP {response.status_code})")
            raise AuthenticationError(response.status_code)
        if not 200 <= response.status_code < 300:
            self.logger.warning(
                f"Unexpected HTTP status {response.status_code} from {path}: {response.text[:500]}"
            )
            raise HttpStatusError(response.status_code)

        try:
            return response.json()
        except ValueError as e:
            self.logger.error(f"Failed to parse JSON from {path}: {str(e)}")
            raise ResponseDecodeError(f"Invalid JSON from {path}") from e

    def get_organizations(self, session_key: str) -> List[Dict[str, Optional[str]]]:
        """
        Fetch the organizations visible to a session.

        Returns:
            A list of {"uuid": str, "email_address": Optional[str]} dicts, in
            response order. Entries without a usable uuid are dropped.

        Raises:
            AuthenticationError, HttpStatusError, TransportError, ResponseDecodeError
        """
        data = self._get_json(ORGANIZATIONS_PATH, session_key)
        if not isinstance(data, list):
            raise ResponseDecodeError(
                f"Expected a list of organizations, got {type(data).__name__}"
            )

        organizations = []
        for entry in data:
            if not isinstance(entry, dict):
                continue
            org_uuid = entry.get("uuid")
            if not isinstance(org_uuid, str) or not org_uuid:
                self.logger.debug("Skipping organization entry without uuid")
                continue
            email = entry.get("email_address")
            organizations.append(
                {
                    "uuid": org_uuid,
                    "email_address": email if isinstance(email, str) and email else None,
                }
            )
        self.logger.debug(f"Discovered {len(organizations)} organization(s)")
        return organizations

    def get_usage(self, organization_id: str, session_key: str) -> UsageSnapshot:
        """
        Fetch the quota snapshot for an organization.

        Missing tiers or fields degrade to 100% remaining; only a body that is
        not a JSON object is an error.

        Raises:
            AuthenticationError, HttpStatusError, TransportError, ResponseDecodeError
        """
        data = self._get_json(
            USAGE_PATH.format(organization_id=organization_id), session_key
        )
        if not isinstance(data, dict):
            raise ResponseDecodeError(
                f"Expected a usage object, got {type(data).__name__}"
            )
        return UsageSnapshot.from_payload(data)
