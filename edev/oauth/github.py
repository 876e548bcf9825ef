"""
GitHub OAuth provider.
"""

from loguru import logger
import httpx

from edev.oauth.provider import OAuthError, OAuthProvider, limited
from edev.session.store import User

AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
TOKEN_URL = "https://github.com/login/oauth/access_token"
USER_URL = "https://api.github.com/user"


def github_provider(client_id: str, client_secret: str, base_url: str, timeout_seconds: int = 10) -> "GitHubProvider":
    return GitHubProvider(
        name="github",
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=f"{base_url}/github/oauth/callback",
        authorize_endpoint=AUTHORIZE_URL,
        token_endpoint=TOKEN_URL,
        scopes=["read:user"],
        timeout_seconds=timeout_seconds,
    )


class GitHubProvider(OAuthProvider):
    def fetch_user(self, client: httpx.Client, token: str) -> User:
        try:
            resp = client.get(
                USER_URL,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                },
            )
        except httpx.HTTPError as e:
            raise OAuthError(f"github /user failed: {e}") from e

        if resp.status_code != 200:
            raise OAuthError(f"user endpoint status {resp.status_code}: {limited(resp.text)}")
        try:
            data = resp.json()
        except ValueError as e:
            raise OAuthError("decode user failed") from e

        try:
            uid = int(data.get("id") or 0)
        except (TypeError, ValueError):
            uid = 0
        login = str(data.get("login") or "")
        if uid == 0 or not login:
            raise OAuthError("invalid user data")

        user = User(
            id=str(uid),
            login=login,
            name=str(data.get("name") or ""),
            avatar_url=str(data.get("avatar_url") or ""),
        )
        logger.info("logged in user: ID={}, Login={}, Name={}, AvatarURL={}", user.id, user.login, user.name, user.avatar_url)
        return user
