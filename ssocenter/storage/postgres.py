from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from ssocenter.logging import get_logger
from ssocenter.storage.errors import ConstraintViolation
from ssocenter.storage.models import ClientApplication, Token, TokenKind, User

TokenIssuer = Callable[[Token], Iterable[Token]]

_REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "app_role",
    "user_role",
    "oauth_client",
    "auth_token",
)

_INSERT_TOKEN_SQL = """
    INSERT INTO auth_token (value, user_id, kind, client_id, scope, issued_at, expires_at, revoked, revoked_at)
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
"""


class PostgresStore:
    """Postgres-backed token, client and user store."""

    def __init__(
        self,
        dsn: str,
        *,
        statement_timeout_ms: int = 5000,
        pool_timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=pool_timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(statement_timeout_ms)}",
            },
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _as_utc(value: Any) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def _row_to_token(self, row: Dict[str, Any]) -> Token:
        revoked_at = row.get("revoked_at")
        return Token(
            value=row["value"],
            user_id=str(row["user_id"]),
            kind=TokenKind(row["kind"]),
            client_id=row["client_id"],
            scope=row.get("scope") or "",
            issued_at=self._as_utc(row["issued_at"]),
            expires_at=self._as_utc(row["expires_at"]),
            revoked=bool(row.get("revoked", False)),
            revoked_at=self._as_utc(revoked_at) if revoked_at else None,
        )

    @staticmethod
    def _token_params(token: Token) -> tuple:
        return (
            token.value,
            token.user_id,
            token.kind.value,
            token.client_id,
            token.scope,
            token.issued_at,
            token.expires_at,
            token.revoked,
            token.revoked_at,
        )

    # tokens
    def insert_token(self, token: Token) -> Token:
        try:
            with self._connect() as conn:
                conn.execute(_INSERT_TOKEN_SQL, self._token_params(token))
        except errors.UniqueViolation:
            self.logger.warning("token_value_collision", token_kind=token.kind.value)
            raise ConstraintViolation(
                "token value already exists", {"kind": token.kind.value}
            )
        except errors.ForeignKeyViolation:
            self.logger.warning(
                "token_insert_missing_reference",
                user_id=token.user_id,
                client_id=token.client_id,
            )
            raise ConstraintViolation(
                "token owner or client missing",
                {"user_id": token.user_id, "client_id": token.client_id},
            )
        return token

    def get_token(self, value: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE value = %s", (value,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_token(row)

    def consume_token(
        self,
        value: str,
        kind: TokenKind,
        *,
        client_id: str,
        now: datetime,
        issue: Optional[TokenIssuer] = None,
    ) -> Optional[Token]:
        """Conditionally revoke a usable token and insert successors atomically.

        The predicate and the revocation are one UPDATE, so of several
        concurrent callers at most one receives a row back.
        """
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    UPDATE auth_token
                    SET revoked = TRUE, revoked_at = %s
                    WHERE value = %s
                      AND kind = %s
                      AND client_id = %s
                      AND revoked = FALSE
                      AND expires_at > %s
                    RETURNING *
                    """,
                    (now, value, kind.value, client_id, now),
                ).fetchone()
                if not row:
                    return None
                consumed = self._row_to_token(row)
                for successor in issue(consumed) if issue else []:
                    conn.execute(_INSERT_TOKEN_SQL, self._token_params(successor))
        except errors.UniqueViolation:
            self.logger.warning("token_value_collision", token_kind=kind.value)
            raise ConstraintViolation(
                "token value already exists", {"kind": kind.value}
            )
        return consumed

    def revoke_token(self, value: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_token
                SET revoked = TRUE, revoked_at = COALESCE(revoked_at, %s)
                WHERE value = %s
                RETURNING value
                """,
                (now, value),
            ).fetchone()
        return row is not None

    # clients
    def register_client(self, client: ClientApplication) -> ClientApplication:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_client (client_id, client_secret, client_name, redirect_uri, logout_redirect_uri, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        client.client_id,
                        client.client_secret,
                        client.name,
                        client.redirect_uri,
                        client.logout_redirect_uri,
                        client.active,
                        client.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "client_id already exists", {"client_id": client.client_id}
            )
        return client

    def get_client(self, client_id: str) -> Optional[ClientApplication]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_client WHERE client_id = %s", (client_id,)
            ).fetchone()
        if not row:
            return None
        return ClientApplication(
            client_id=row["client_id"],
            client_secret=row["client_secret"],
            redirect_uri=row["redirect_uri"],
            name=row.get("client_name") or "",
            logout_redirect_uri=row.get("logout_redirect_uri"),
            active=bool(row.get("is_active", True)),
            created_at=self._as_utc(row["created_at"]),
        )

    def set_client_active(self, client_id: str, active: bool) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE oauth_client SET is_active = %s WHERE client_id = %s",
                (active, client_id),
            )
            return result.rowcount > 0

    # users
    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            is_active=bool(row.get("is_active", True)),
            created_at=self._as_utc(row["created_at"]),
        )

    def create_user(
        self,
        username: str,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        is_active: bool = True,
        user_id: Optional[str] = None,
    ) -> User:
        user = User(
            id=user_id or str(uuid.uuid4()),
            username=username,
            email=email,
            first_name=first_name,
            last_name=last_name,
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, first_name, last_name, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.first_name,
                        user.last_name,
                        user.is_active,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            self.logger.warning("username_conflict")
            raise ConstraintViolation("username already exists", {"field": "username"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(username) = lower(%s)", (username,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # roles
    def assign_role(self, user_id: str, role_name: str) -> None:
        try:
            with self._connect() as conn, conn.transaction():
                role = conn.execute(
                    """
                    INSERT INTO app_role (id, name, is_active)
                    VALUES (%s, %s, TRUE)
                    ON CONFLICT (name) DO UPDATE SET name = EXCLUDED.name
                    RETURNING id
                    """,
                    (str(uuid.uuid4()), role_name),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_role (user_id, role_id)
                    VALUES (%s, %s)
                    ON CONFLICT (user_id, role_id) DO NOTHING
                    """,
                    (user_id, role["id"]),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for role", {"user_id": user_id})

    def set_role_active(self, role_name: str, active: bool) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_role SET is_active = %s WHERE name = %s",
                (active, role_name),
            )
            return result.rowcount > 0

    def get_user_roles(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.name
                FROM user_role ur
                JOIN app_role r ON r.id = ur.role_id
                WHERE ur.user_id = %s AND r.is_active = TRUE
                ORDER BY r.name
                """,
                (user_id,),
            ).fetchall()
        return [row["name"] for row in rows]
