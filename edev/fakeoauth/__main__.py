"""
fakeoauth: local OAuth2 test server (authorization code + PKCE). DEV/TEST only.

Usage:
  python -m edev.fakeoauth
  python -m edev.fakeoauth --addr 127.0.0.1:9100 --base-url http://127.0.0.1:9100 \
      --client-id fake-client-id --user-id u-123 --username tester \
      --name "Test User" --email tester@example.local
  python -m edev.fakeoauth --issue-id-token --jwt-secret dev-secret
"""

import argparse
import sys
from typing import List, Optional

import uvicorn
from loguru import logger

from edev.fakeoauth.server import FakeOAuthConfig, Janitor, Store, create_app


def parse_args(argv: Optional[List[str]] = None) -> FakeOAuthConfig:
    ap = argparse.ArgumentParser(prog="fakeoauth", description="Fake OAuth2 server for local development.")
    ap.add_argument("--addr", default="127.0.0.1:9100", help="listen address")
    ap.add_argument("--base-url", default="http://127.0.0.1:9100", help="public base URL")
    ap.add_argument("--client-id", default="fake-client-id", help="expected client_id")
    ap.add_argument("--client-secret", default="", help="expected client_secret (optional)")
    ap.add_argument("--user-id", default="u-123", help="fixed user id")
    ap.add_argument("--username", default="tester", help="username/login")
    ap.add_argument("--name", default="Test User", help="user display name")
    ap.add_argument("--email", default="tester@example.local", help="user email")
    ap.add_argument("--avatar-url", default="", help="avatar URL (optional)")
    ap.add_argument("--issue-id-token", action="store_true", help="issue id_token (JWT HS256)")
    ap.add_argument("--jwt-secret", default="dev-secret", help="JWT HMAC secret")
    ap.add_argument("--token-ttl", type=float, default=900.0, help="access token TTL, seconds")
    ap.add_argument("--latency", type=float, default=0.0, help="artificial latency for all endpoints, seconds")
    ap.add_argument("--verbose", action="store_true", help="verbose logging")
    a = ap.parse_args(argv)

    return FakeOAuthConfig(
        addr=a.addr,
        base_url=a.base_url,
        client_id=a.client_id,
        client_secret=a.client_secret,
        user_id=a.user_id,
        username=a.username,
        name=a.name,
        email=a.email,
        avatar_url=a.avatar_url,
        issue_id_token=a.issue_id_token,
        jwt_secret=a.jwt_secret,
        token_ttl_seconds=a.token_ttl,
        latency_seconds=a.latency,
        verbose=a.verbose,
    )


def main(argv: Optional[List[str]] = None) -> int:
    cfg = parse_args(argv)
    if not cfg.addr:
        logger.error("addr required")
        return 2
    if not cfg.base_url:
        logger.error("base-url required")
        return 2

    host, _, port = cfg.addr.rpartition(":")
    store = Store()
    janitor = Janitor(store)
    janitor.start()

    logger.info("fakeoauth listening on {} (client_id={})", cfg.addr, cfg.client_id)
    try:
        uvicorn.run(create_app(cfg, store), host=host or "127.0.0.1", port=int(port), log_level="warning")
    finally:
        janitor.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
