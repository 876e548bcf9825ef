"""
Builds the configured OAuth providers keyed by name.
"""

from typing import Dict

from edev.config.settings import Settings
from edev.oauth.fake import fake_provider
from edev.oauth.github import github_provider
from edev.oauth.provider import OAuthProvider
from edev.oauth.x import x_provider


def build_providers(settings: Settings) -> Dict[str, OAuthProvider]:
    timeout = int(settings.http_timeout_seconds)
    providers: Dict[str, OAuthProvider] = {
        "github": github_provider(settings.github_client_id, settings.github_client_secret, settings.base_url, timeout),
        "x": x_provider(settings.x_client_id, settings.x_client_secret, settings.base_url, timeout),
    }
    if settings.fake_oauth_enabled:
        providers["fake"] = fake_provider(
            settings.fake_oauth_base_url,
            settings.fake_oauth_client_id,
            settings.base_url,
            settings.fake_oauth_redirect,
            timeout,
        )
    return providers
