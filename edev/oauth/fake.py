"""
Provider for the local fake OAuth server (edev.fakeoauth), dev/test only.
"""

from dataclasses import dataclass

import httpx

from edev.oauth.provider import OAuthError, OAuthProvider
from edev.session.store import User


def fake_provider(fake_base_url: str, client_id: str, base_url: str, redirect_path: str, timeout_seconds: int = 10) -> "FakeProvider":
    fake_base_url = fake_base_url.rstrip("/")
    return FakeProvider(
        name="fake",
        client_id=client_id,
        client_secret="",
        redirect_uri=f"{base_url}{redirect_path}",
        authorize_endpoint=f"{fake_base_url}/oauth/authorize",
        token_endpoint=f"{fake_base_url}/oauth/token",
        scopes=["profile", "email"],
        timeout_seconds=timeout_seconds,
        state_ttl_seconds=300,
        userinfo_endpoint=f"{fake_base_url}/oauth/userinfo",
    )


@dataclass
class FakeProvider(OAuthProvider):
    userinfo_endpoint: str = ""

    def fetch_user(self, client: httpx.Client, token: str) -> User:
        try:
            resp = client.get(self.userinfo_endpoint, headers={"Authorization": f"Bearer {token}"})
        except httpx.HTTPError as e:
            raise OAuthError("userinfo failed") from e
        if resp.status_code != 200:
            raise OAuthError("userinfo status")
        try:
            raw = resp.json() or {}
        except ValueError as e:
            raise OAuthError("decode userinfo") from e

        return User(
            id=str(raw.get("id") or ""),
            login=str(raw.get("username") or ""),
            name=str(raw.get("name") or ""),
            avatar_url=str(raw.get("avatar_url") or ""),
        )
