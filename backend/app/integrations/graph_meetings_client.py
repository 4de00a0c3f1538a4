"""Microsoft Graph online-meetings client.

Creates and deletes Teams meetings for confirmed lessons. Authenticates
with the client-credentials flow and caches the app token until shortly
before it expires.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence, cast
import uuid

import httpx
from pydantic import SecretStr

from ..core.exceptions import UpstreamGatewayException

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
LOGIN_BASE_URL = "https://login.microsoftonline.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"


class MeetingProviderError(UpstreamGatewayException):
    """Raised when the meeting provider responds with an error or is unreachable."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        details: Any | None = None,
    ) -> None:
        retryable = status_code is None or status_code == 429 or status_code >= 500
        super().__init__(
            message,
            code="meeting_provider_error",
            details={"status_code": status_code, "provider": details},
            retryable=retryable,
        )
        self.status_code = status_code


@dataclass(frozen=True)
class MeetingDetails:
    meeting_id: str
    join_url: str


def _json_object(response: httpx.Response) -> dict[str, Any]:
    """Decode a successful response body, which must be a JSON object."""
    try:
        payload = response.json()
    except ValueError as exc:
        logger.error(
            "Graph returned a non-JSON body (%s): %s", response.status_code, response.text[:500]
        )
        # not retried: a 2xx means the meeting may already exist
        raise MeetingProviderError(
            "Graph API returned a malformed body", status_code=response.status_code
        ) from exc
    if not isinstance(payload, dict):
        raise MeetingProviderError(
            "Graph API returned a malformed body", status_code=response.status_code
        )
    return cast(dict[str, Any], payload)


class MeetingProvider(Protocol):
    def create_meeting(
        self,
        *,
        subject: str,
        start: datetime,
        end: datetime,
        attendee_emails: Sequence[str],
    ) -> MeetingDetails:
        ...

    def delete_meeting(self, meeting_id: str) -> None:
        ...


class GraphMeetingsClient:
    """HTTP client for the Graph ``onlineMeetings`` API."""

    def __init__(
        self,
        *,
        tenant_id: str,
        client_id: str,
        client_secret: str | SecretStr,
        organizer_user_id: str,
        base_url: str = GRAPH_BASE_URL,
        login_url: str = LOGIN_BASE_URL,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._tenant_id = tenant_id
        self._client_id = client_id
        self._client_secret = (
            client_secret.get_secret_value()
            if isinstance(client_secret, SecretStr)
            else client_secret
        )
        self._organizer = organizer_user_id
        self._base_url = base_url.rstrip("/")
        self._login_url = login_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._token: str | None = None
        self._token_refresh_at: float = 0.0

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self._timeout, transport=self._transport)

    def _fetch_token(self) -> str:
        url = f"{self._login_url}/{self._tenant_id}/oauth2/v2.0/token"
        data = {
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "scope": GRAPH_SCOPE,
        }
        try:
            with self._client() as client:
                response = client.post(url, data=data)
        except httpx.TransportError as exc:
            logger.error("Graph token endpoint unreachable: %s", exc)
            raise MeetingProviderError(f"Graph token endpoint unreachable: {exc}") from exc
        if response.status_code >= 400:
            logger.error(
                "Graph token request failed %s: %s", response.status_code, response.text[:500]
            )
            raise MeetingProviderError(
                "Graph token request failed", status_code=response.status_code
            )
        payload = _json_object(response)
        if not payload.get("access_token"):
            raise MeetingProviderError(
                "Graph token response carried no access token", status_code=response.status_code
            )
        self._token = str(payload["access_token"])
        try:
            expires_in = int(payload.get("expires_in", 3600))
        except (TypeError, ValueError):
            expires_in = 3600
        # refresh five minutes before expiry
        self._token_refresh_at = time.monotonic() + max(expires_in - 300, 60)
        return self._token

    def _get_token(self) -> str:
        if self._token is None or time.monotonic() >= self._token_refresh_at:
            return self._fetch_token()
        return self._token

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated request to the Graph API."""
        url = f"{self._base_url}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self._get_token()}",
            "Content-Type": "application/json",
        }

        try:
            with self._client() as client:
                response = client.request(method, url, headers=headers, json=json_body)
        except httpx.TransportError as exc:
            logger.error("Graph API unreachable for %s %s: %s", method, path, exc)
            raise MeetingProviderError(f"Graph API unreachable: {exc}") from exc

        if response.status_code == 401:
            # expired or revoked token; force a refresh on the next call
            self._token = None

        if response.status_code >= 400:
            error_body: dict[str, Any] = {}
            try:
                parsed_body = response.json()
                if isinstance(parsed_body, dict):
                    nested = parsed_body.get("error")
                    error_body = nested if isinstance(nested, dict) else parsed_body
            except ValueError:
                error_body = {"raw": response.text[:500]}
            message = error_body.get("message") or response.text or "Graph API error"
            logger.error(
                "Graph API error %s for %s %s: %s",
                response.status_code,
                method,
                path,
                response.text[:500],
            )
            raise MeetingProviderError(
                message, status_code=response.status_code, details=error_body.get("code")
            )

        if response.status_code == 204 or not response.content:
            return {}
        return _json_object(response)

    def create_meeting(
        self,
        *,
        subject: str,
        start: datetime,
        end: datetime,
        attendee_emails: Sequence[str],
    ) -> MeetingDetails:
        attendees: List[Dict[str, Any]] = [
            {"upn": email, "role": "attendee"} for email in attendee_emails if email
        ]
        body = {
            "subject": subject,
            "startDateTime": start.isoformat(),
            "endDateTime": end.isoformat(),
            "participants": {"attendees": attendees},
            "lobbyBypassSettings": {"scope": "organization"},
        }
        payload = self._request("POST", f"users/{self._organizer}/onlineMeetings", json_body=body)
        join_url = payload.get("joinWebUrl") or payload.get("joinUrl")
        if not payload.get("id") or not join_url:
            raise MeetingProviderError("Graph API returned a meeting without id or join URL")
        return MeetingDetails(meeting_id=str(payload["id"]), join_url=str(join_url))

    def delete_meeting(self, meeting_id: str) -> None:
        self._request("DELETE", f"users/{self._organizer}/onlineMeetings/{meeting_id}")


class FakeMeetingsClient:
    """In-memory stub for testing/non-production environments."""

    def __init__(self, **kwargs: Any) -> None:
        self.meetings: Dict[str, Dict[str, Any]] = {}
        self._calls: list[dict[str, Any]] = []
        self._errors: dict[str, list[Exception]] = {}

    @property
    def calls(self) -> list[dict[str, Any]]:
        return list(self._calls)

    def fail_next(self, method: str, error: Exception, times: int = 1) -> None:
        """Queue ``times`` failures for ``method`` for deterministic failure testing."""
        self._errors.setdefault(method, []).extend([error] * times)

    def clear_errors(self) -> None:
        self._errors.clear()

    def _raise_if_injected(self, method: str) -> None:
        queued = self._errors.get(method)
        if queued:
            raise queued.pop(0)

    def create_meeting(
        self,
        *,
        subject: str,
        start: datetime,
        end: datetime,
        attendee_emails: Sequence[str],
    ) -> MeetingDetails:
        self._calls.append(
            {
                "method": "create_meeting",
                "subject": subject,
                "start": start,
                "end": end,
                "attendees": list(attendee_emails),
            }
        )
        self._raise_if_injected("create_meeting")
        meeting_id = f"fake_meeting_{uuid.uuid4().hex[:12]}"
        join_url = f"https://teams.example.test/l/meetup-join/{meeting_id}"
        self.meetings[meeting_id] = {"subject": subject, "start": start, "end": end}
        return MeetingDetails(meeting_id=meeting_id, join_url=join_url)

    def delete_meeting(self, meeting_id: str) -> None:
        self._calls.append({"method": "delete_meeting", "meeting_id": meeting_id})
        self._raise_if_injected("delete_meeting")
        self.meetings.pop(meeting_id, None)
