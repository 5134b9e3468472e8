"""Tests for operator identity and token management in PostgreSQL."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import psycopg2
import pytest

from coder_k8s_operator.services.postgres import (
    OperatorAccessError,
    OperatorAccessRequest,
    OperatorRevokeRequest,
    PostgresOperatorAccessProvisioner,
)
from coder_k8s_operator.services.postgres import operator_access as sql
from coder_k8s_operator.services.postgres.tokens import hash_token_secret
from coder_k8s_operator.utils.errors import InvariantError

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)
URL = "postgres://coder:pw@db:5432/coder"


class FakeCursor:
    """Cursor answering the operator access statements from in-memory rows."""

    def __init__(self, user_id=None, organizations=("org-1",), token_row=None, fail_on=None):
        self.user_id = user_id
        self.organizations = list(organizations)
        self.token_row = token_row
        self.fail_on = fail_on
        self.executed: list[tuple[str, object]] = []
        self.rowcount = 0
        self._result = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, statement, params=None):
        self.executed.append((statement, params))
        if statement is self.fail_on:
            raise psycopg2.OperationalError("statement failed")
        self.rowcount = 1
        if statement is sql._SELECT_USER:
            self._result = [(self.user_id,)] if self.user_id else []
        elif statement is sql._SELECT_ORGANIZATIONS:
            self._result = [(o,) for o in self.organizations]
        elif statement is sql._SELECT_TOKEN_EXPIRY:
            self._result = [self.token_row] if self.token_row else []
        elif statement is sql._REVOKE_TOKEN:
            self.rowcount = 2
        else:
            self._result = []

    def fetchone(self):
        return self._result[0] if self._result else None

    def fetchall(self):
        return list(self._result or [])

    def statements(self):
        return [s for s, _ in self.executed]


def make_provisioner(cursor: FakeCursor):
    conn = MagicMock()
    conn.cursor.return_value = cursor
    connect = MagicMock(return_value=conn)
    return PostgresOperatorAccessProvisioner(connect=connect, now=lambda: NOW), connect, conn


def make_request(existing_token: str = "") -> OperatorAccessRequest:
    return OperatorAccessRequest(
        postgres_url=URL,
        username="coder-k8s-operator",
        email="coder-k8s-operator@coder-k8s.invalid",
        token_name="coder-k8s-operator-abc",
        token_lifetime=timedelta(days=365),
        existing_token=existing_token,
    )


class TestEnsureOperatorToken:
    """Test cases for ensure_operator_token."""

    def test_creates_user_membership_and_token(self):
        """Test a first pass against an empty database."""
        cursor = FakeCursor()
        provisioner, connect, conn = make_provisioner(cursor)

        token = provisioner.ensure_operator_token(make_request())

        token_id, secret = token.split("-", 1)
        statements = cursor.statements()
        assert sql._INSERT_USER in statements
        assert sql._UPSERT_MEMBERSHIP in statements
        assert statements.index(sql._DELETE_USER_TOKENS) < statements.index(sql._INSERT_TOKEN)
        insert = dict(cursor.executed)[sql._INSERT_TOKEN]
        assert insert["id"] == token_id
        assert bytes(insert["hashed_secret"].adapted) == hash_token_secret(secret)
        assert insert["expires_at"] == NOW + timedelta(days=365)
        assert insert["lifetime_seconds"] == 365 * 24 * 3600
        conn.commit.assert_called_once()
        conn.close.assert_called_once()
        assert connect.call_args.args == (URL,)

    def test_existing_user_is_enforced(self):
        """Test that an existing user is reused and not inserted twice."""
        cursor = FakeCursor(user_id="user-1")
        provisioner, _, _ = make_provisioner(cursor)

        provisioner.ensure_operator_token(make_request())

        statements = cursor.statements()
        assert sql._INSERT_USER not in statements
        enforce = dict(cursor.executed)[sql._ENFORCE_USER]
        assert enforce[-1] == "user-1"

    def test_membership_in_every_organization(self):
        """Test that the operator joins every organization."""
        cursor = FakeCursor(organizations=("org-1", "org-2"))
        provisioner, _, _ = make_provisioner(cursor)

        provisioner.ensure_operator_token(make_request())

        memberships = [p for s, p in cursor.executed if s is sql._UPSERT_MEMBERSHIP]
        assert [p[0] for p in memberships] == ["org-1", "org-2"]

    def test_valid_existing_token_is_reused(self):
        """Test that a live matching token is returned verbatim."""
        cursor = FakeCursor(user_id="user-1", token_row=(NOW + timedelta(days=1),))
        provisioner, _, _ = make_provisioner(cursor)

        token = provisioner.ensure_operator_token(make_request(" abcdefghij-secretsecretsecretsecret \n"))

        assert token == "abcdefghij-secretsecretsecretsecret"
        assert sql._INSERT_TOKEN not in cursor.statements()
        lookup = dict(cursor.executed)[sql._SELECT_TOKEN_EXPIRY]
        assert lookup[0] == "abcdefghij"

    def test_expired_token_is_replaced(self):
        """Test that an expired token is rotated."""
        cursor = FakeCursor(user_id="user-1", token_row=(datetime(2025, 1, 1),))
        provisioner, _, _ = make_provisioner(cursor)

        token = provisioner.ensure_operator_token(make_request("abcdefghij-secret"))

        assert token != "abcdefghij-secret"
        assert sql._INSERT_TOKEN in cursor.statements()

    def test_malformed_token_is_replaced(self):
        """Test that a token without a separator is never looked up."""
        cursor = FakeCursor(user_id="user-1")
        provisioner, _, _ = make_provisioner(cursor)

        provisioner.ensure_operator_token(make_request("garbage"))

        assert sql._SELECT_TOKEN_EXPIRY not in cursor.statements()
        assert sql._INSERT_TOKEN in cursor.statements()

    def test_no_organizations(self):
        """Test that a database without organizations is an invariant violation."""
        cursor = FakeCursor(organizations=())
        provisioner, _, conn = make_provisioner(cursor)

        with pytest.raises(InvariantError):
            provisioner.ensure_operator_token(make_request())

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_statement_failure_rolls_back(self):
        """Test that a failed statement aborts the whole transaction."""
        cursor = FakeCursor(fail_on=sql._INSERT_TOKEN)
        provisioner, _, conn = make_provisioner(cursor)

        with pytest.raises(OperatorAccessError, match="ensure operator token"):
            provisioner.ensure_operator_token(make_request())

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        conn.close.assert_called_once()

    def test_connect_failure(self):
        """Test that connection errors are wrapped."""
        connect = MagicMock(side_effect=psycopg2.OperationalError("refused"))
        provisioner = PostgresOperatorAccessProvisioner(connect=connect, now=lambda: NOW)

        with pytest.raises(OperatorAccessError, match="connect"):
            provisioner.ensure_operator_token(make_request())

    @pytest.mark.parametrize(
        "field,value",
        [("postgres_url", " "), ("username", ""), ("email", ""), ("token_name", ""), ("token_lifetime", timedelta(0))],
    )
    def test_invalid_request(self, field, value):
        """Test that incomplete requests never reach the database."""
        cursor = FakeCursor()
        provisioner, connect, _ = make_provisioner(cursor)
        values = make_request().__dict__ | {field: value}

        with pytest.raises(ValueError):
            provisioner.ensure_operator_token(OperatorAccessRequest(**values))

        connect.assert_not_called()


class TestRevokeOperatorToken:
    """Test cases for revoke_operator_token."""

    def test_revokes_by_name(self):
        """Test that tokens are deleted by name for the operator user."""
        cursor = FakeCursor()
        provisioner, _, conn = make_provisioner(cursor)

        provisioner.revoke_operator_token(OperatorRevokeRequest(URL, "coder-k8s-operator", "coder-k8s-operator-abc"))

        assert cursor.executed == [(sql._REVOKE_TOKEN, ("coder-k8s-operator-abc", "coder-k8s-operator"))]
        conn.commit.assert_called_once()

    def test_invalid_request(self):
        """Test that a revoke without a token name is rejected."""
        provisioner, connect, _ = make_provisioner(FakeCursor())

        with pytest.raises(ValueError):
            provisioner.revoke_operator_token(OperatorRevokeRequest(URL, "coder-k8s-operator", ""))

        connect.assert_not_called()
