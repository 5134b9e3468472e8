"""Operator identity and token management against the Coder database.

The operator needs an owner-level API token before the Coder API can be used,
so it provisions its own system user directly in PostgreSQL. Every call runs
in one transaction: user, memberships and token are either all converged or
nothing changes.
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import psycopg2

from ... import metrics
from ...utils.errors import invariant
from .tokens import generate_operator_token, hash_token_secret, split_operator_token

logger = logging.getLogger(__name__)

_CONNECT_TIMEOUT_SECONDS = int(os.getenv("POSTGRES_CONNECT_TIMEOUT_SECONDS", "10"))

_SELECT_USER = """
SELECT id
FROM users
WHERE deleted = false
  AND lower(username) = lower(%s)
LIMIT 1
"""

_INSERT_USER = """
INSERT INTO users (
    id, email, username, name, hashed_password, created_at, updated_at,
    rbac_roles, login_type, status, is_system
)
VALUES (
    %s, %s, %s, %s, %s, %s, %s,
    ARRAY['owner'], 'none'::login_type, 'active'::user_status, true
)
"""

_ENFORCE_USER = """
UPDATE users
SET email = %s,
    name = %s,
    hashed_password = %s,
    updated_at = %s,
    rbac_roles = ARRAY['owner'],
    login_type = 'none'::login_type,
    status = 'active'::user_status,
    is_system = true
WHERE id = %s
"""

_SELECT_ORGANIZATIONS = """
SELECT id
FROM organizations
WHERE deleted = false
"""

_UPSERT_MEMBERSHIP = """
INSERT INTO organization_members (organization_id, user_id, created_at, updated_at, roles)
VALUES (%s, %s, %s, %s, ARRAY['organization-admin'])
ON CONFLICT (organization_id, user_id) DO UPDATE
SET updated_at = EXCLUDED.updated_at,
    roles = ARRAY['organization-admin']
"""

_SELECT_TOKEN_EXPIRY = """
SELECT expires_at
FROM api_keys
WHERE id = %s
  AND user_id = %s
  AND login_type = 'token'::login_type
  AND token_name = %s
  AND hashed_secret = %s
LIMIT 1
"""

_DELETE_USER_TOKENS = """
DELETE FROM api_keys
WHERE user_id = %s
  AND login_type = 'token'::login_type
  AND token_name = %s
"""

_INSERT_TOKEN = """
INSERT INTO api_keys (
    id, hashed_secret, user_id, last_used, expires_at, created_at, updated_at,
    login_type, lifetime_seconds, ip_address, token_name, scopes, allow_list
)
VALUES (
    %(id)s, %(hashed_secret)s, %(user_id)s, %(now)s, %(expires_at)s, %(now)s, %(now)s,
    'token'::login_type, %(lifetime_seconds)s, '0.0.0.0'::inet, %(token_name)s,
    ARRAY['coder:all']::api_key_scope[], ARRAY['*:*']
)
"""

_REVOKE_TOKEN = """
DELETE FROM api_keys
WHERE login_type = 'token'::login_type
  AND token_name = %s
  AND user_id IN (
    SELECT id
    FROM users
    WHERE deleted = false
      AND lower(username) = lower(%s)
  )
"""


class OperatorAccessError(Exception):
    """Raised when the operator identity cannot be converged in the database."""


@dataclass(frozen=True)
class OperatorAccessRequest:
    postgres_url: str
    username: str
    email: str
    token_name: str
    token_lifetime: timedelta
    existing_token: str = ""

    def validate(self) -> None:
        if not self.postgres_url.strip():
            raise ValueError("operator access postgres URL is required")
        if not self.username:
            raise ValueError("operator access username is required")
        if not self.email:
            raise ValueError("operator access email is required")
        if not self.token_name:
            raise ValueError("operator access token name is required")
        if self.token_lifetime <= timedelta(0):
            raise ValueError("operator access token lifetime must be positive")


@dataclass(frozen=True)
class OperatorRevokeRequest:
    postgres_url: str
    username: str
    token_name: str

    def validate(self) -> None:
        if not self.postgres_url.strip():
            raise ValueError("operator access postgres URL is required")
        if not self.username:
            raise ValueError("operator access username is required")
        if not self.token_name:
            raise ValueError("operator access token name is required")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PostgresOperatorAccessProvisioner:
    """Converges the operator system user and its API token via PostgreSQL."""

    def __init__(
        self,
        connect: Callable[..., Any] = psycopg2.connect,
        now: Callable[[], datetime] = _utcnow,
    ):
        self._connect = connect
        self._now = now

    def _transaction(self, postgres_url: str, operation: str, work: Callable[[Any, datetime], Any]) -> Any:
        try:
            conn = self._connect(postgres_url, connect_timeout=_CONNECT_TIMEOUT_SECONDS)
        except psycopg2.Error as e:
            metrics.credential_operations_total.labels(
                provisioner="postgres", operation=operation, result="error"
            ).inc()
            raise OperatorAccessError(f"connect to coder database: {e}") from e

        try:
            now = self._now()
            with conn.cursor() as cur:
                result = work(cur, now)
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            metrics.credential_operations_total.labels(
                provisioner="postgres", operation=operation, result="error"
            ).inc()
            raise OperatorAccessError(f"{operation} operator token: {e}") from e
        except Exception:
            conn.rollback()
            metrics.credential_operations_total.labels(
                provisioner="postgres", operation=operation, result="error"
            ).inc()
            raise
        finally:
            conn.close()

        metrics.credential_operations_total.labels(
            provisioner="postgres", operation=operation, result="success"
        ).inc()
        return result

    def ensure_operator_token(self, request: OperatorAccessRequest) -> str:
        """Ensure the operator user exists and holds one live token.

        The existing token is reused verbatim when it still matches the stored
        hash, belongs to the operator user and has not expired. Otherwise all
        tokens under ``request.token_name`` are replaced by a fresh one.

        Args:
            request: Connection details, identity and token settings

        Returns:
            The live token

        Raises:
            ValueError: If the request is incomplete
            InvariantError: If the database holds no organizations
            OperatorAccessError: If any statement or the commit fails
        """
        request.validate()

        def work(cur: Any, now: datetime) -> str:
            user_id = self._ensure_user(cur, now, request)
            self._ensure_memberships(cur, now, user_id)
            token = self._ensure_token(cur, now, user_id, request)
            invariant(token, "ensured operator token must not be empty")
            return token

        return self._transaction(request.postgres_url, "ensure", work)

    def revoke_operator_token(self, request: OperatorRevokeRequest) -> None:
        """Delete the operator token by name. Nothing to delete is success."""
        request.validate()

        def work(cur: Any, now: datetime) -> None:
            cur.execute(_REVOKE_TOKEN, (request.token_name, request.username))
            logger.info(f"Revoked {cur.rowcount} operator token(s) named {request.token_name}")

        self._transaction(request.postgres_url, "revoke", work)

    def _ensure_user(self, cur: Any, now: datetime, request: OperatorAccessRequest) -> str:
        cur.execute(_SELECT_USER, (request.username,))
        row = cur.fetchone()
        if row is None:
            user_id = str(uuid.uuid4())
            cur.execute(
                _INSERT_USER,
                (user_id, request.email, request.username, request.username,
                 psycopg2.Binary(b"none"), now, now),
            )
            logger.info(f"Created operator user {request.username}")
        else:
            user_id = str(row[0])

        cur.execute(
            _ENFORCE_USER,
            (request.email, request.username, psycopg2.Binary(b"none"), now, user_id),
        )
        invariant(cur.rowcount == 1, f"expected to update exactly one operator user, updated {cur.rowcount}")
        return user_id

    def _ensure_memberships(self, cur: Any, now: datetime, user_id: str) -> None:
        cur.execute(_SELECT_ORGANIZATIONS)
        organization_ids = [str(row[0]) for row in cur.fetchall()]
        invariant(organization_ids, "coder database has no organizations")

        for organization_id in organization_ids:
            cur.execute(_UPSERT_MEMBERSHIP, (organization_id, user_id, now, now))

    def _token_still_valid(self, cur: Any, now: datetime, user_id: str, request: OperatorAccessRequest) -> bool:
        parts = split_operator_token(request.existing_token.strip())
        if parts is None:
            return False
        token_id, secret = parts

        cur.execute(
            _SELECT_TOKEN_EXPIRY,
            (token_id, user_id, request.token_name, psycopg2.Binary(hash_token_secret(secret))),
        )
        row = cur.fetchone()
        if row is None:
            return False
        expires_at = row[0]
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at > now

    def _ensure_token(self, cur: Any, now: datetime, user_id: str, request: OperatorAccessRequest) -> str:
        if request.existing_token and self._token_still_valid(cur, now, user_id, request):
            return request.existing_token.strip()

        cur.execute(_DELETE_USER_TOKENS, (user_id, request.token_name))

        token, token_id, hashed_secret = generate_operator_token()
        cur.execute(
            _INSERT_TOKEN,
            {
                "id": token_id,
                "hashed_secret": psycopg2.Binary(hashed_secret),
                "user_id": user_id,
                "now": now,
                "expires_at": now + request.token_lifetime,
                "lifetime_seconds": int(request.token_lifetime.total_seconds()),
                "token_name": request.token_name,
            },
        )
        logger.info(f"Issued operator token {request.token_name}")
        return token
