"""
OAuth2 authorization-code + PKCE provider base (httpx).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from edev.session.store import User

BODY_LIMIT = 4096


class OAuthError(RuntimeError):
    def __init__(self, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = int(status_code)


def limited(text: str) -> str:
    return str(text or "")[:BODY_LIMIT]


@dataclass
class OAuthProvider(ABC):
    name: str
    client_id: str
    client_secret: str
    redirect_uri: str
    authorize_endpoint: str
    token_endpoint: str
    scopes: List[str] = field(default_factory=list)
    timeout_seconds: int = 10
    state_ttl_seconds: int = 600
    # send client credentials as HTTP Basic instead of form fields
    basic_auth: bool = False
    transport: Optional[httpx.BaseTransport] = None

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_seconds, transport=self.transport)

    def authorize_url(self, state: str, challenge: str) -> str:
        q = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        }
        sep = "&" if "?" in self.authorize_endpoint else "?"
        return f"{self.authorize_endpoint}{sep}{urlencode(q)}"

    def exchange(self, client: httpx.Client, code: str, verifier: str) -> str:
        form: Dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": verifier,
        }
        auth: Optional[Tuple[str, str]] = None
        if self.basic_auth:
            auth = (self.client_id, self.client_secret)
        elif self.client_secret:
            form["client_secret"] = self.client_secret

        try:
            kwargs: Dict[str, Any] = {"data": form, "headers": {"Accept": "application/json"}}
            if auth is not None:
                kwargs["auth"] = auth
            resp = client.post(self.token_endpoint, **kwargs)
        except httpx.HTTPError as e:
            raise OAuthError(f"token exchange failed: {e}") from e

        if resp.status_code != 200:
            raise OAuthError(f"token exchange failed: status {resp.status_code}: {limited(resp.text)}")
        try:
            data = resp.json()
        except ValueError as e:
            raise OAuthError("token exchange failed: decode token") from e

        token = str(data.get("access_token") or "")
        if not token:
            err = data.get("error_description") or data.get("error") or "empty access_token"
            raise OAuthError(f"token exchange failed: {err}")
        return token

    @abstractmethod
    def fetch_user(self, client: httpx.Client, token: str) -> User:
        """Load the profile behind an access token. Each provider implements this."""

    def complete(self, code: str, verifier: str) -> User:
        """Exchange the code and load the user profile."""
        with self._client() as client:
            token = self.exchange(client, code, verifier)
            return self.fetch_user(client, token)
