"""
X (Twitter) OAuth provider.
Falls back to the v1.1 verify_credentials endpoint when /2/users/me answers 403.
"""

from loguru import logger
import httpx

from edev.oauth.provider import OAuthError, OAuthProvider, limited
from edev.session.store import User

AUTHORIZE_URL = "https://twitter.com/i/oauth2/authorize"
TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
USERS_ME_URL = "https://api.x.com/2/users/me?user.fields=profile_image_url"
VERIFY_CREDENTIALS_URL = "https://api.x.com/1.1/account/verify_credentials.json"


def x_provider(client_id: str, client_secret: str, base_url: str, timeout_seconds: int = 10) -> "XProvider":
    return XProvider(
        name="x",
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=f"{base_url}/x/oauth/callback",
        authorize_endpoint=AUTHORIZE_URL,
        token_endpoint=TOKEN_URL,
        scopes=["tweet.read", "users.read"],
        timeout_seconds=timeout_seconds,
        basic_auth=True,
    )


class XProvider(OAuthProvider):
    def _get(self, client: httpx.Client, url: str, token: str, what: str) -> httpx.Response:
        try:
            return client.get(url, headers={"Authorization": f"Bearer {token}", "Accept": "application/json"})
        except httpx.HTTPError as e:
            raise OAuthError(f"x {what} failed: {e}") from e

    def fetch_user(self, client: httpx.Client, token: str) -> User:
        resp = self._get(client, USERS_ME_URL, token, "/2/users/me")

        if resp.status_code == 403:
            logger.warning("API v2 returned 403, trying fallback to API v1.1")
            return self._fetch_legacy(client, token)

        if resp.status_code != 200:
            raise OAuthError(f"users/me status {resp.status_code}: {limited(resp.text)}")
        try:
            data = (resp.json() or {}).get("data") or {}
        except ValueError as e:
            raise OAuthError("decode user failed") from e

        user = User(
            id=str(data.get("id") or ""),
            login=str(data.get("username") or ""),
            name=str(data.get("name") or ""),
            avatar_url=str(data.get("profile_image_url") or ""),
        )
        if not user.id or not user.login:
            raise OAuthError("invalid user data")

        logger.info("logged in X user: ID={}, Username={}, Name={}, AvatarURL={}", user.id, user.login, user.name, user.avatar_url)
        return user

    def _fetch_legacy(self, client: httpx.Client, token: str) -> User:
        resp = self._get(client, VERIFY_CREDENTIALS_URL, token, "verify_credentials")
        if resp.status_code != 200:
            raise OAuthError(f"verify_credentials status {resp.status_code}: {limited(resp.text)}")
        try:
            data = resp.json() or {}
        except ValueError as e:
            raise OAuthError("decode user failed") from e

        user = User(
            id=str(data.get("id_str") or ""),
            login=str(data.get("screen_name") or ""),
            name=str(data.get("name") or ""),
            avatar_url=str(data.get("profile_image_url_https") or ""),
        )
        if not user.id or not user.login:
            raise OAuthError("invalid user data")

        logger.info("logged in X user (API v1.1): ID={}, Username={}, Name={}, AvatarURL={}", user.id, user.login, user.name, user.avatar_url)
        return user
