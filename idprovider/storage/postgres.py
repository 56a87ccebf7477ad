from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from idprovider.logging import get_logger
from idprovider.storage.errors import ConstraintViolation
from idprovider.storage.models import (
    GlobalRole,
    Permission,
    RefreshToken,
    RevokedToken,
    RoleName,
    Tenant,
    User,
    UserTenantRole,
    new_id,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id UUID PRIMARY KEY,
        tenant_id TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        description TEXT,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        tenant_id TEXT NOT NULL REFERENCES tenant (tenant_id),
        first_name TEXT,
        last_name TEXT,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (username, tenant_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS permission (
        id UUID PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        description TEXT,
        active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS global_role (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS global_role_permission (
        role_name TEXT NOT NULL REFERENCES global_role (name) ON DELETE CASCADE,
        permission_code TEXT NOT NULL REFERENCES permission (code),
        PRIMARY KEY (role_name, permission_code)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_tenant_role (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user (id) ON DELETE CASCADE,
        tenant_id TEXT NOT NULL REFERENCES tenant (tenant_id),
        roles TEXT[] NOT NULL DEFAULT '{}',
        UNIQUE (user_id, tenant_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        username TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        user_id UUID REFERENCES app_user (id) ON DELETE CASCADE
    )
    """,
    "ALTER TABLE refresh_token ADD COLUMN IF NOT EXISTS user_id UUID REFERENCES app_user (id) ON DELETE CASCADE",
    # One unrevoked row per (username, tenant_id); rotation relies on it
    """
    CREATE UNIQUE INDEX IF NOT EXISTS refresh_token_one_active
        ON refresh_token (username, tenant_id) WHERE NOT revoked
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_at ON refresh_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS revoked_token (
        id UUID PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        username TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        revoked_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS revoked_token_expires_at ON revoked_token (expires_at)",
)

REQUIRED_TABLES = (
    "tenant",
    "app_user",
    "permission",
    "global_role",
    "global_role_permission",
    "user_tenant_role",
    "refresh_token",
    "revoked_token",
)


class PostgresStore:
    """Postgres-backed store for tenants, principals, roles and token state."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()
        self.logger.info("postgres_schema_verified", tables=len(REQUIRED_TABLES))

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        """Fail fast when a table is missing before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    # row mapping
    @staticmethod
    def _row_to_tenant(row: dict) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            tenant_id=row["tenant_id"],
            name=row["name"],
            description=row.get("description"),
            active=row.get("active", True),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            tenant_id=row["tenant_id"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            active=row.get("active", True),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_refresh_token(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token=row["token"],
            username=row["username"],
            tenant_id=row["tenant_id"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            revoked=bool(row.get("revoked", False)),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
        )

    @staticmethod
    def _row_to_revoked_token(row: dict) -> RevokedToken:
        return RevokedToken(
            id=str(row["id"]),
            token=row["token"],
            username=row["username"],
            tenant_id=row["tenant_id"],
            revoked_at=row["revoked_at"],
            expires_at=row["expires_at"],
        )

    @staticmethod
    def _row_to_binding(row: dict) -> UserTenantRole:
        return UserTenantRole(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tenant_id=row["tenant_id"],
            roles={RoleName(name) for name in row.get("roles") or []},
        )

    # tenants
    def create_tenant(
        self, tenant_id: str, name: str, description: Optional[str] = None
    ) -> Tenant:
        tenant = Tenant(id=new_id(), tenant_id=tenant_id, name=name, description=description)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tenant (id, tenant_id, name, description, active, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        tenant.id,
                        tenant.tenant_id,
                        tenant.name,
                        tenant.description,
                        tenant.active,
                        tenant.created_at,
                        tenant.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "tenant already exists", {"field": "tenant_id", "tenant_id": tenant_id}
            )
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant WHERE tenant_id = %s", (tenant_id,)
            ).fetchone()
        return self._row_to_tenant(row) if row else None

    def list_tenants(self, *, active_only: bool = False) -> List[Tenant]:
        query = "SELECT * FROM tenant"
        if active_only:
            query += " WHERE active"
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_tenant(row) for row in rows]

    def set_tenant_active(self, tenant_id: str, active: bool) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE tenant SET active = %s, updated_at = now() WHERE tenant_id = %s RETURNING *",
                (active, tenant_id),
            ).fetchone()
        return self._row_to_tenant(row) if row else None

    # users
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        tenant_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        active: bool = True,
    ) -> User:
        user = User(
            id=new_id(),
            username=username,
            email=email,
            password_hash=password_hash,
            tenant_id=tenant_id,
            first_name=first_name,
            last_name=last_name,
            active=active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, password_hash, tenant_id, first_name, last_name, active, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        username,
                        email,
                        password_hash,
                        tenant_id,
                        first_name,
                        last_name,
                        active,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = "email" if "email" in str(exc) else "username"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str, tenant_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s AND tenant_id = %s",
                (username, tenant_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def find_users_by_username(self, username: str) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user WHERE username = %s ORDER BY created_at", (username,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def set_user_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (active, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # permissions and roles
    def get_permission(self, code: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM permission WHERE code = %s", (code,)).fetchone()
        if not row:
            return None
        return Permission(
            id=str(row["id"]),
            code=row["code"],
            description=row.get("description"),
            active=row.get("active", True),
        )

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM permission ORDER BY code").fetchall()
        return [
            Permission(
                id=str(row["id"]),
                code=row["code"],
                description=row.get("description"),
                active=row.get("active", True),
            )
            for row in rows
        ]

    def upsert_permission(
        self, code: str, description: Optional[str] = None
    ) -> tuple[Permission, bool]:
        with self._connect() as conn:
            inserted = conn.execute(
                """
                INSERT INTO permission (id, code, description)
                VALUES (%s, %s, %s)
                ON CONFLICT (code) DO NOTHING
                RETURNING *
                """,
                (new_id(), code, description),
            ).fetchone()
            row = inserted or conn.execute(
                "SELECT * FROM permission WHERE code = %s", (code,)
            ).fetchone()
        permission = Permission(
            id=str(row["id"]),
            code=row["code"],
            description=row.get("description"),
            active=row.get("active", True),
        )
        return permission, inserted is not None

    def _load_role(self, conn, row: dict) -> GlobalRole:
        codes = conn.execute(
            "SELECT permission_code FROM global_role_permission WHERE role_name = %s",
            (row["name"],),
        ).fetchall()
        return GlobalRole(
            id=str(row["id"]),
            name=RoleName(row["name"]),
            description=row.get("description"),
            permissions={c["permission_code"] for c in codes},
            active=row.get("active", True),
        )

    def get_global_role(self, name: RoleName) -> Optional[GlobalRole]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM global_role WHERE name = %s", (name.value,)
            ).fetchone()
            return self._load_role(conn, row) if row else None

    def list_global_roles(self) -> List[GlobalRole]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM global_role").fetchall()
            roles = [self._load_role(conn, row) for row in rows]
        order = list(RoleName)
        return sorted(roles, key=lambda r: order.index(r.name))

    def ensure_global_role(
        self, name: RoleName, description: Optional[str] = None
    ) -> tuple[GlobalRole, bool]:
        with self._connect() as conn:
            inserted = conn.execute(
                """
                INSERT INTO global_role (id, name, description)
                VALUES (%s, %s, %s)
                ON CONFLICT (name) DO NOTHING
                RETURNING *
                """,
                (new_id(), name.value, description),
            ).fetchone()
            row = inserted or conn.execute(
                "SELECT * FROM global_role WHERE name = %s", (name.value,)
            ).fetchone()
            return self._load_role(conn, row), inserted is not None

    def set_global_role_permissions(
        self, name: RoleName, codes: Iterable[str]
    ) -> Optional[GlobalRole]:
        codes = sorted(set(codes))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM global_role WHERE name = %s FOR UPDATE", (name.value,)
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    "DELETE FROM global_role_permission WHERE role_name = %s", (name.value,)
                )
                for code in codes:
                    conn.execute(
                        "INSERT INTO global_role_permission (role_name, permission_code) VALUES (%s, %s)",
                        (name.value, code),
                    )
                return self._load_role(conn, row)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown permission codes", {"codes": codes})

    # user/tenant bindings
    def get_user_tenant_role(self, user_id: str, tenant_id: str) -> Optional[UserTenantRole]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_tenant_role WHERE user_id = %s AND tenant_id = %s",
                (user_id, tenant_id),
            ).fetchone()
        return self._row_to_binding(row) if row else None

    def upsert_user_tenant_role(
        self, user_id: str, tenant_id: str, roles: Iterable[RoleName]
    ) -> UserTenantRole:
        names = sorted(role.value for role in set(roles))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_tenant_role (id, user_id, tenant_id, roles)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id, tenant_id) DO UPDATE SET roles = EXCLUDED.roles
                    RETURNING *
                    """,
                    (new_id(), user_id, tenant_id, names),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or tenant does not exist", {"user_id": user_id, "tenant_id": tenant_id}
            )
        return self._row_to_binding(row)

    def delete_user_tenant_role(self, user_id: str, tenant_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_tenant_role WHERE user_id = %s AND tenant_id = %s",
                (user_id, tenant_id),
            )
            return cur.rowcount > 0

    def list_user_tenant_roles(
        self, *, tenant_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> List[UserTenantRole]:
        clauses: list[str] = []
        params: list[Any] = []
        if tenant_id is not None:
            clauses.append("tenant_id = %s")
            params.append(tenant_id)
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        query = "SELECT * FROM user_tenant_role"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_binding(row) for row in rows]

    # refresh tokens
    def rotate_refresh_token(self, token: RefreshToken) -> int:
        """Revoke every token of the pair and insert ``token`` in one transaction.

        The advisory lock serialises concurrent rotations for the same pair;
        the partial unique index rejects anything that slips past it.
        """
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext(%s))",
                        (f"{token.username}\x1f{token.tenant_id}",),
                    )
                    cur = conn.execute(
                        """
                        UPDATE refresh_token SET revoked = TRUE
                        WHERE username = %s AND tenant_id = %s AND NOT revoked
                        """,
                        (token.username, token.tenant_id),
                    )
                    revoked = cur.rowcount
                    conn.execute(
                        """
                        INSERT INTO refresh_token
                            (id, token, username, tenant_id, created_at, expires_at, revoked, user_id)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            token.id,
                            token.token,
                            token.username,
                            token.tenant_id,
                            token.created_at,
                            token.expires_at,
                            token.revoked,
                            token.user_id,
                        ),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        return max(revoked, 0)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def revoke_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE token = %s AND NOT revoked",
                (token,),
            )
            return cur.rowcount > 0

    def revoke_user_refresh_tokens(self, username: str, tenant_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE
                WHERE username = %s AND tenant_id = %s AND NOT revoked
                """,
                (username, tenant_id),
            )
            return max(cur.rowcount, 0)

    def list_refresh_tokens(self, username: str, tenant_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE username = %s AND tenant_id = %s
                ORDER BY created_at
                """,
                (username, tenant_id),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

    def delete_expired_refresh_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at < %s", (before,))
            return max(cur.rowcount, 0)

    # revoked access tokens
    def add_revoked_token(self, entry: RevokedToken) -> RevokedToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO revoked_token (id, token, username, tenant_id, revoked_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (token) DO NOTHING
                RETURNING *
                """,
                (
                    entry.id,
                    entry.token,
                    entry.username,
                    entry.tenant_id,
                    entry.revoked_at,
                    entry.expires_at,
                ),
            ).fetchone()
            if row is None:
                row = conn.execute(
                    "SELECT * FROM revoked_token WHERE token = %s", (entry.token,)
                ).fetchone()
        return self._row_to_revoked_token(row)

    def get_revoked_token(self, token: str) -> Optional[RevokedToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM revoked_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_revoked_token(row) if row else None

    def delete_user_revoked_tokens(
        self, username: str, tenant_id: str, *, before: Optional[datetime] = None
    ) -> int:
        query = "DELETE FROM revoked_token WHERE username = %s AND tenant_id = %s"
        params: tuple[Any, ...] = (username, tenant_id)
        if before is not None:
            query += " AND expires_at < %s"
            params = params + (before,)
        with self._connect() as conn:
            cur = conn.execute(query, params)
            return max(cur.rowcount, 0)

    def delete_expired_revoked_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM revoked_token WHERE expires_at < %s", (before,))
            return max(cur.rowcount, 0)

    def close(self) -> None:
        self.pool.close()
