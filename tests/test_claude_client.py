"""Tests for the claude.ai HTTP client, with requests mocked at the session level."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from usage_agent.claude_client import (
    AuthenticationError,
    ClaudeClient,
    HttpStatusError,
    ResponseDecodeError,
    TransportError,
    _RejectAllCookiesPolicy,
)


def make_response(status_code=200, payload=None, text="", json_error=False):
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.text = text
    if json_error:
        response.json.side_effect = ValueError("Expecting value")
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def api():
    client = ClaudeClient("https://claude.ai/", client_version="1.0.0", timeout=5)
    yield client
    client.close()


class TestSessionSetup:
    def test_fixed_headers(self, api):
        headers = api.session.headers
        assert headers["anthropic-client-platform"] == "web_claude_ai"
        assert headers["anthropic-client-version"] == "1.0.0"
        assert headers["referer"] == "https://claude.ai/settings/usage"

    def test_cookie_jar_refuses_cookies(self, api):
        assert isinstance(api.session.cookies._policy, _RejectAllCookiesPolicy)

    def test_missing_base_url(self):
        with pytest.raises(ValueError):
            ClaudeClient("")


class TestGetOrganizations:
    def test_sends_session_cookie(self, api):
        with patch.object(api.session, "get", return_value=make_response(payload=[])) as get:
            api.get_organizations("sk-ant-abc")
        url = get.call_args.args[0]
        assert url == "https://claude.ai/api/organizations"
        assert get.call_args.kwargs["headers"]["Cookie"] == "sessionKey=sk-ant-abc"
        assert get.call_args.kwargs["timeout"] == 5

    def test_parses_entries(self, api):
        payload = [
            {"uuid": "org-1", "email_address": "dev@example.com"},
            {"uuid": "org-2"},
            {"name": "no uuid"},
        ]
        with patch.object(api.session, "get", return_value=make_response(payload=payload)):
            organizations = api.get_organizations("sk")
        assert organizations == [
            {"uuid": "org-1", "email_address": "dev@example.com"},
            {"uuid": "org-2", "email_address": None},
        ]

    def test_non_list_body(self, api):
        with patch.object(api.session, "get", return_value=make_response(payload={"x": 1})):
            with pytest.raises(ResponseDecodeError):
                api.get_organizations("sk")


class TestErrorMapping:
    @pytest.mark.parametrize("status_code", [401, 403])
    def test_auth_statuses(self, api, status_code):
        with patch.object(api.session, "get", return_value=make_response(status_code)):
            with pytest.raises(AuthenticationError) as exc_info:
                api.get_usage("org-1", "sk")
        assert exc_info.value.status_code == status_code

    def test_server_error(self, api):
        with patch.object(api.session, "get", return_value=make_response(500, text="oops")):
            with pytest.raises(HttpStatusError) as exc_info:
                api.get_usage("org-1", "sk")
        assert exc_info.value.status_code == 500

    def test_invalid_json(self, api):
        with patch.object(api.session, "get", return_value=make_response(json_error=True)):
            with pytest.raises(ResponseDecodeError):
                api.get_usage("org-1", "sk")

    def test_transport_failure(self, api):
        with patch.object(
            api.session, "get", side_effect=requests.exceptions.ConnectionError("down")
        ):
            with pytest.raises(TransportError):
                api.get_usage("org-1", "sk")


class TestGetUsage:
    def test_maps_snapshot(self, api):
        payload = {"five_hour": {"utilization": 30}, "seven_day": {"utilization": 90}}
        with patch.object(api.session, "get", return_value=make_response(payload=payload)) as get:
            snapshot = api.get_usage("org-1", "sk")
        assert get.call_args.args[0] == "https://claude.ai/api/organizations/org-1/usage"
        assert snapshot.weekly_remaining == 10.0
        assert snapshot.session_remaining == 70.0

    def test_non_object_body(self, api):
        with patch.object(api.session, "get", return_value=make_response(payload=[1, 2])):
            with pytest.raises(ResponseDecodeError):
                api.get_usage("org-1", "sk")
