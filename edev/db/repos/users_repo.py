"""
Repository for users / identities tables (see migration/001_base_system.up.sql).
"""

from typing import Any, Dict, List, Optional

from edev.db.errors import NoRowsError
from edev.db.sqlite import SQLite
from edev.session.store import User


def record_login(storage: SQLite, provider: str, user: User) -> int:
    """
    Upsert the identity behind an OAuth login and return the local users.id.
    A first login creates the user row; later logins refresh the avatar.
    """
    with storage.begin_transaction() as tx:
        try:
            user_id = int(
                tx.query_one(
                    "SELECT user_id FROM identities WHERE provider = ? AND provider_uid = ?;",
                    provider,
                    user.id,
                ).scalar()
            )
        except NoRowsError:
            user_id = 0

        if user_id:
            tx.execute(
                "UPDATE identities SET avatar_url = ? WHERE provider = ? AND provider_uid = ?;",
                user.avatar_url or None,
                provider,
                user.id,
            )
            return user_id

        username = user.login
        try:
            tx.query_one("SELECT 1 FROM users WHERE username = ?;", username).scan()
            username = f"{provider}:{user.login}"
        except NoRowsError:
            pass

        tx.execute("INSERT INTO users (username) VALUES (?);", username)
        user_id = int(tx.query_one("SELECT last_insert_rowid();").scalar())
        tx.execute(
            """
            INSERT INTO identities (user_id, provider, provider_uid, avatar_url)
            VALUES (?, ?, ?, ?);
            """,
            user_id,
            provider,
            user.id,
            user.avatar_url or None,
        )
        return user_id


def get_user(storage: SQLite, user_id: int) -> Optional[Dict[str, Any]]:
    try:
        row = storage.query_one(
            "SELECT id, username, enabled, created_at, updated_at FROM users WHERE id = ?;",
            int(user_id),
        ).scan()
    except NoRowsError:
        return None
    return dict(row)


def find_user_id(storage: SQLite, provider: str, provider_uid: str) -> Optional[int]:
    try:
        return int(
            storage.query_one(
                "SELECT user_id FROM identities WHERE provider = ? AND provider_uid = ?;",
                provider,
                provider_uid,
            ).scalar()
        )
    except NoRowsError:
        return None


def list_identities(storage: SQLite, user_id: int) -> List[Dict[str, Any]]:
    with storage.query(
        """
        SELECT provider, provider_uid, avatar_url, created_at, updated_at
        FROM identities
        WHERE user_id = ?
        ORDER BY provider;
        """,
        int(user_id),
    ) as rows:
        return [dict(r) for r in rows]


def set_enabled(storage: SQLite, user_id: int, enabled: bool) -> int:
    return storage.execute("UPDATE users SET enabled = ? WHERE id = ?;", 1 if enabled else 0, int(user_id))
