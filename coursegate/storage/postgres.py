from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from coursegate.logging import get_logger
from coursegate.storage.errors import ConstraintViolation, SchemaNotReady
from coursegate.storage.models import (
    Batch,
    Course,
    CourseGrant,
    Enrollment,
    Lesson,
    LessonView,
    Membership,
    MembershipSnapshot,
    Module,
    Organization,
    Payment,
    RosterRecord,
    RotationToken,
    User,
    new_id,
    utcnow,
)

REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "rotation_token",
    "organization",
    "batch",
    "organization_membership",
    "roster_record",
    "course",
    "course_module",
    "lesson",
    "course_grant",
    "enrollment",
    "payment",
)


def _opt_str(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _is_uuid(*values: Optional[str]) -> bool:
    """Every id column is UUID; anything else cannot match a row."""
    for value in values:
        if value is None:
            continue
        try:
            uuid.UUID(str(value))
        except ValueError:
            return False
    return True


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row.get("name"),
        role=row.get("role", "student"),
        is_active=row.get("is_active", True),
        is_premium=row.get("is_premium", False),
        email_verified_at=row.get("email_verified_at"),
        created_at=row.get("created_at") or utcnow(),
    )


def _token_from_row(row: dict) -> RotationToken:
    return RotationToken(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        revoked=row.get("revoked", False),
        created_at=row.get("created_at") or utcnow(),
    )


def _org_from_row(row: dict) -> Organization:
    return Organization(
        id=str(row["id"]),
        name=row["name"],
        slug=row["slug"],
        email_domains=list(row.get("email_domains") or []),
        is_active=row.get("is_active", True),
        created_at=row.get("created_at") or utcnow(),
    )


def _membership_from_row(row: dict) -> Membership:
    return Membership(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        organization_id=str(row["organization_id"]),
        role=row.get("role", "student"),
        batch_id=_opt_str(row.get("batch_id")),
        enrollment_id=row.get("enrollment_id"),
        is_verified=row.get("is_verified", False),
        is_active=row.get("is_active", True),
        created_at=row.get("created_at") or utcnow(),
    )


def _roster_from_row(row: dict) -> RosterRecord:
    return RosterRecord(
        id=str(row["id"]),
        organization_id=str(row["organization_id"]),
        email=row["email"],
        name=row["name"],
        enrollment_id=row["enrollment_id"],
        batch_id=_opt_str(row.get("batch_id")),
        is_claimed=row.get("is_claimed", False),
        claimed_by_user_id=_opt_str(row.get("claimed_by_user_id")),
        created_at=row.get("created_at") or utcnow(),
    )


def _course_from_row(row: dict, prefix: str = "") -> Course:
    return Course(
        id=str(row[f"{prefix}id"]),
        title=row[f"{prefix}title"],
        slug=row[f"{prefix}slug"],
        is_published=row.get(f"{prefix}is_published", False),
        price=float(row.get(f"{prefix}price") or 0),
    )


def _payment_from_row(row: dict) -> Payment:
    return Payment(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        order_id=row["order_id"],
        amount=row["amount"],
        currency=row.get("currency", "INR"),
        status=row.get("status", "created"),
        gateway_payment_id=row.get("gateway_payment_id"),
        created_at=row.get("created_at") or utcnow(),
    )


class PostgresStore:
    """Postgres-backed store; conditional updates run inside explicit transactions."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise SchemaNotReady(missing)

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = "student",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User:
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, is_active, email_verified_at)
                    VALUES (%s, %s, %s, %s, %s, CASE WHEN %s THEN now() END)
                    RETURNING *
                    """,
                    (new_id(), normalized, name, role, is_active, email_verified),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_user(
        self,
        user_id: str,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET role = COALESCE(%s, role),
                    is_active = COALESCE(%s, is_active),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (role, is_active, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def set_premium(self, user_id: str, is_premium: bool) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_premium = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_premium, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified_at = COALESCE(email_verified_at, now()), updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return _user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
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
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # rotation tokens
    @staticmethod
    def _insert_rotation_token(conn, token: RotationToken) -> None:
        conn.execute(
            """
            INSERT INTO rotation_token (id, user_id, token_hash, expires_at, revoked, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.user_id,
                token.token_hash,
                token.expires_at,
                token.revoked,
                token.created_at,
            ),
        )

    def create_rotation_token(self, token: RotationToken) -> RotationToken:
        try:
            with self._connect() as conn:
                self._insert_rotation_token(conn, token)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("token user missing", {"user_id": token.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash collision", {"field": "token_hash"})
        return token

    def get_rotation_token(self, token_hash: str) -> Optional[RotationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM rotation_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _token_from_row(row) if row else None

    def rotate_rotation_token(
        self, old_hash: str, replacement: RotationToken, now: Optional[datetime] = None
    ) -> bool:
        """Conditionally revoke ``old_hash`` and insert ``replacement`` in one transaction.

        The row lock taken by the UPDATE serializes concurrent rotations of the
        same token; the loser re-evaluates the predicate and matches nothing.
        """
        now = now or utcnow()
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    UPDATE rotation_token SET revoked = TRUE
                    WHERE token_hash = %s AND NOT revoked AND expires_at > %s
                    RETURNING id
                    """,
                    (old_hash, now),
                ).fetchone()
                if not row:
                    return False
                self._insert_rotation_token(conn, replacement)
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash collision", {"field": "token_hash"})
        return True

    def revoke_rotation_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE rotation_token SET revoked = TRUE WHERE token_hash = %s AND NOT revoked",
                (token_hash,),
            )
            return result.rowcount > 0

    def revoke_user_rotation_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE rotation_token SET revoked = TRUE WHERE user_id = %s AND NOT revoked",
                (user_id,),
            )
            return result.rowcount

    def list_rotation_tokens(self, user_id: str) -> List[RotationToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM rotation_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_token_from_row(row) for row in rows]

    def prune_rotation_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM rotation_token WHERE expires_at <= %s", (before,)
            )
            return result.rowcount

    # organizations
    def create_organization(
        self,
        name: str,
        slug: str,
        email_domains: Optional[List[str]] = None,
        *,
        is_active: bool = True,
    ) -> Organization:
        domains = [d.lower() for d in (email_domains or [])]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO organization (id, name, slug, email_domains, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), name, slug, domains, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("organization slug already exists", {"field": "slug"})
        return _org_from_row(row)

    def get_organization(self, org_id: str) -> Optional[Organization]:
        if not _is_uuid(org_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM organization WHERE id = %s", (org_id,)).fetchone()
        return _org_from_row(row) if row else None

    def set_organization_active(self, org_id: str, is_active: bool) -> Optional[Organization]:
        if not _is_uuid(org_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE organization SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, org_id),
            ).fetchone()
        return _org_from_row(row) if row else None

    def find_organization_by_domain(self, domain: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM organization
                WHERE is_active AND %s = ANY(email_domains)
                ORDER BY created_at
                LIMIT 1
                """,
                (domain.lower(),),
            ).fetchone()
        return _org_from_row(row) if row else None

    def list_organizations(self) -> List[Organization]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM organization ORDER BY created_at DESC").fetchall()
        return [_org_from_row(row) for row in rows]

    def update_organization(
        self,
        org_id: str,
        *,
        name: Optional[str] = None,
        slug: Optional[str] = None,
        email_domains: Optional[List[str]] = None,
        is_active: Optional[bool] = None,
    ) -> Optional[Organization]:
        if not _is_uuid(org_id):
            return None
        domains = [d.lower() for d in email_domains] if email_domains is not None else None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE organization
                    SET name = COALESCE(%s, name),
                        slug = COALESCE(%s, slug),
                        email_domains = COALESCE(%s::text[], email_domains),
                        is_active = COALESCE(%s, is_active)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (name, slug, domains, is_active, org_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("organization slug already exists", {"field": "slug"})
        return _org_from_row(row) if row else None

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        if not _is_uuid(batch_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM batch WHERE id = %s", (batch_id,)).fetchone()
        if not row:
            return None
        return Batch(
            id=str(row["id"]),
            organization_id=str(row["organization_id"]),
            name=row["name"],
            is_active=row.get("is_active", True),
        )

    def upsert_batch(self, org_id: str, name: str) -> Batch:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO batch (id, organization_id, name)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (organization_id, name) DO UPDATE SET name = EXCLUDED.name
                    RETURNING *
                    """,
                    (new_id(), org_id, name),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("organization missing", {"organization_id": org_id})
        return Batch(
            id=str(row["id"]),
            organization_id=str(row["organization_id"]),
            name=row["name"],
            is_active=row.get("is_active", True),
        )

    # memberships
    def get_membership(self, user_id: str, org_id: str) -> Optional[Membership]:
        if not _is_uuid(user_id, org_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization_membership WHERE user_id = %s AND organization_id = %s",
                (user_id, org_id),
            ).fetchone()
        return _membership_from_row(row) if row else None

    @staticmethod
    def _upsert_membership_row(
        conn,
        user_id: str,
        org_id: str,
        role: Optional[str],
        batch_id: Optional[str],
        enrollment_id: Optional[str],
        is_verified: bool,
    ) -> dict:
        # role None keeps the stored role (claims never demote an admin)
        return conn.execute(
            """
            INSERT INTO organization_membership
                (id, user_id, organization_id, role, batch_id, enrollment_id, is_verified)
            VALUES (%s, %s, %s, COALESCE(%s, 'student'), %s, %s, %s)
            ON CONFLICT (user_id, organization_id) DO UPDATE
            SET role = COALESCE(%s, organization_membership.role),
                batch_id = COALESCE(EXCLUDED.batch_id, organization_membership.batch_id),
                enrollment_id = COALESCE(EXCLUDED.enrollment_id, organization_membership.enrollment_id),
                is_verified = organization_membership.is_verified OR EXCLUDED.is_verified,
                is_active = TRUE
            RETURNING *
            """,
            (new_id(), user_id, org_id, role, batch_id, enrollment_id, is_verified, role),
        ).fetchone()

    def upsert_membership(
        self,
        user_id: str,
        org_id: str,
        *,
        role: str = "student",
        batch_id: Optional[str] = None,
        enrollment_id: Optional[str] = None,
        is_verified: bool = False,
    ) -> Membership:
        try:
            with self._connect() as conn:
                row = self._upsert_membership_row(
                    conn, user_id, org_id, role, batch_id, enrollment_id, is_verified
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "membership references missing row", {"user_id": user_id, "organization_id": org_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("enrollment id already linked", {"field": "enrollment_id"})
        return _membership_from_row(row)

    def set_membership_active(self, user_id: str, org_id: str, is_active: bool) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE organization_membership SET is_active = %s
                WHERE user_id = %s AND organization_id = %s
                """,
                (is_active, user_id, org_id),
            )
            return result.rowcount > 0

    def list_membership_snapshots(self, user_id: str) -> List[MembershipSnapshot]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT m.organization_id, o.name AS organization_name, m.role,
                       m.is_verified, m.batch_id
                FROM organization_membership m
                JOIN organization o ON o.id = m.organization_id
                WHERE m.user_id = %s AND m.is_active
                ORDER BY m.created_at
                """,
                (user_id,),
            ).fetchall()
        return [
            MembershipSnapshot(
                organization_id=str(row["organization_id"]),
                organization_name=row["organization_name"],
                role=row["role"],
                is_verified=row["is_verified"],
                batch_id=_opt_str(row.get("batch_id")),
            )
            for row in rows
        ]

    def has_verified_membership(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM organization_membership m
                    JOIN organization o ON o.id = m.organization_id
                    WHERE m.user_id = %s AND m.is_active AND m.is_verified AND o.is_active
                ) AS found
                """,
                (user_id,),
            ).fetchone()
        return bool(row and row["found"])

    def list_verified_member_ids(
        self, org_id: str, batch_id: Optional[str] = None
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT m.user_id
                FROM organization_membership m
                JOIN organization o ON o.id = m.organization_id
                WHERE m.organization_id = %s AND o.is_active
                  AND m.is_active AND m.is_verified
                  AND (%s::uuid IS NULL OR m.batch_id = %s::uuid)
                """,
                (org_id, batch_id, batch_id),
            ).fetchall()
        return [str(row["user_id"]) for row in rows]

    # roster
    def get_roster_record(self, org_id: str, email: str) -> Optional[RosterRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM roster_record WHERE organization_id = %s AND email = %s",
                (org_id, email.strip().lower()),
            ).fetchone()
        return _roster_from_row(row) if row else None

    def upsert_roster_record(
        self,
        org_id: str,
        email: str,
        name: str,
        enrollment_id: str,
        batch_id: Optional[str] = None,
    ) -> tuple[RosterRecord, str]:
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO roster_record (id, organization_id, email, name, enrollment_id, batch_id)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (organization_id, email) DO UPDATE
                    SET name = EXCLUDED.name,
                        enrollment_id = EXCLUDED.enrollment_id,
                        batch_id = EXCLUDED.batch_id
                    WHERE NOT roster_record.is_claimed
                    RETURNING *, (xmax = 0) AS inserted
                    """,
                    (new_id(), org_id, normalized, name, enrollment_id, batch_id),
                ).fetchone()
                if not row:
                    claimed = conn.execute(
                        "SELECT * FROM roster_record WHERE organization_id = %s AND email = %s",
                        (org_id, normalized),
                    ).fetchone()
                    return _roster_from_row(claimed), "already_claimed"
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "enrollment id already used in organization", {"field": "enrollment_id"}
            )
        return _roster_from_row(row), "added" if row["inserted"] else "updated"

    def claim_roster_record(
        self,
        org_id: str,
        email: str,
        user_id: str,
        *,
        enrollment_code: Optional[str] = None,
    ) -> Optional[tuple[RosterRecord, Membership]]:
        """Flip ``is_claimed`` and verify the membership in one transaction.

        The conditional UPDATE is the only gate; of two concurrent claimants the
        second re-checks ``NOT is_claimed`` after the first commits and gets no row.
        """
        try:
            with self._connect() as conn, conn.transaction():
                record_row = conn.execute(
                    """
                    UPDATE roster_record
                    SET is_claimed = TRUE, claimed_by_user_id = %s
                    WHERE organization_id = %s AND email = %s AND NOT is_claimed
                      AND (%s::text IS NULL OR enrollment_id = %s::text)
                    RETURNING *
                    """,
                    (user_id, org_id, email.strip().lower(), enrollment_code, enrollment_code),
                ).fetchone()
                if not record_row:
                    return None
                membership_row = self._upsert_membership_row(
                    conn,
                    user_id,
                    org_id,
                    None,
                    _opt_str(record_row.get("batch_id")),
                    record_row["enrollment_id"],
                    True,
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("enrollment id already linked", {"field": "enrollment_id"})
        return _roster_from_row(record_row), _membership_from_row(membership_row)

    def list_roster_records(
        self,
        org_id: str,
        *,
        batch_id: Optional[str] = None,
        claimed: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> List[RosterRecord]:
        if not _is_uuid(org_id, batch_id):
            return []
        clauses = ["organization_id = %s"]
        params: list[Any] = [org_id]
        if batch_id is not None:
            clauses.append("batch_id = %s")
            params.append(batch_id)
        if claimed is not None:
            clauses.append("is_claimed = %s")
            params.append(claimed)
        needle = (search or "").strip()
        if needle:
            clauses.append("(email ILIKE %s OR name ILIKE %s OR enrollment_id ILIKE %s)")
            params.extend([f"%{needle}%"] * 3)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM roster_record WHERE {' AND '.join(clauses)} ORDER BY created_at DESC",
                params,
            ).fetchall()
        return [_roster_from_row(row) for row in rows]

    def delete_roster_record(
        self, org_id: str, record_id: str
    ) -> Optional[tuple[RosterRecord, int]]:
        """Delete a seat, and for a claimed one the membership and institution enrollments, atomically."""
        if not _is_uuid(org_id, record_id):
            return None
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "DELETE FROM roster_record WHERE id = %s AND organization_id = %s RETURNING *",
                (record_id, org_id),
            ).fetchone()
            if not row:
                return None
            record = _roster_from_row(row)
            if not (record.is_claimed and record.claimed_by_user_id):
                return record, 0
            conn.execute(
                "DELETE FROM organization_membership WHERE user_id = %s AND organization_id = %s",
                (record.claimed_by_user_id, org_id),
            )
            result = conn.execute(
                "DELETE FROM enrollment WHERE user_id = %s AND access_source = 'institution'",
                (record.claimed_by_user_id,),
            )
            return record, result.rowcount

    # catalog
    def create_course(
        self, title: str, slug: str, *, is_published: bool = False, price: float = 0.0
    ) -> Course:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO course (id, title, slug, is_published, price)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), title, slug, is_published, price),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("course slug already exists", {"field": "slug"})
        return _course_from_row(row)

    def set_course_published(self, course_id: str, is_published: bool) -> Optional[Course]:
        if not _is_uuid(course_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE course SET is_published = %s WHERE id = %s RETURNING *",
                (is_published, course_id),
            ).fetchone()
        return _course_from_row(row) if row else None

    def create_module(self, course_id: str, title: str, position: int = 0) -> Module:
        module_id = new_id()
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO course_module (id, course_id, title, position) VALUES (%s, %s, %s, %s)",
                    (module_id, course_id, title, position),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("course missing", {"course_id": course_id})
        return Module(id=module_id, course_id=course_id, title=title, position=position)

    def create_lesson(
        self, module_id: str, title: str, position: int = 0, *, is_free: bool = False
    ) -> Lesson:
        lesson_id = new_id()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO lesson (id, module_id, title, position, is_free)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (lesson_id, module_id, title, position, is_free),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("module missing", {"module_id": module_id})
        return Lesson(
            id=lesson_id, module_id=module_id, title=title, position=position, is_free=is_free
        )

    def get_course(self, course_id: str) -> Optional[Course]:
        if not _is_uuid(course_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM course WHERE id = %s", (course_id,)).fetchone()
        return _course_from_row(row) if row else None

    def get_lesson_view(self, lesson_id: str) -> Optional[LessonView]:
        if not _is_uuid(lesson_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT l.id, l.module_id, l.title, l.position, l.is_free,
                       c.id AS course_id, c.title AS course_title, c.slug AS course_slug,
                       c.is_published AS course_is_published, c.price AS course_price
                FROM lesson l
                JOIN course_module m ON m.id = l.module_id
                JOIN course c ON c.id = m.course_id
                WHERE l.id = %s
                """,
                (lesson_id,),
            ).fetchone()
        if not row:
            return None
        lesson = Lesson(
            id=str(row["id"]),
            module_id=str(row["module_id"]),
            title=row["title"],
            position=row.get("position", 0),
            is_free=row.get("is_free", False),
        )
        return LessonView(lesson=lesson, course=_course_from_row(row, prefix="course_"))

    def list_published_course_ids(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id FROM course WHERE is_published").fetchall()
        return [str(row["id"]) for row in rows]

    # grants
    def upsert_course_grant(
        self, org_id: str, course_id: str, batch_id: Optional[str] = None
    ) -> CourseGrant:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO course_grant (organization_id, course_id, batch_id)
                    VALUES (%s, %s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (org_id, course_id, batch_id),
                )
                row = conn.execute(
                    """
                    SELECT * FROM course_grant
                    WHERE organization_id = %s AND course_id = %s
                      AND batch_id IS NOT DISTINCT FROM %s::uuid
                    """,
                    (org_id, course_id, batch_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "grant references missing row", {"organization_id": org_id, "course_id": course_id}
            )
        return CourseGrant(
            organization_id=str(row["organization_id"]),
            course_id=str(row["course_id"]),
            batch_id=_opt_str(row.get("batch_id")),
            created_at=row.get("created_at") or utcnow(),
        )

    def delete_course_grant(
        self, org_id: str, course_id: str, batch_id: Optional[str] = None
    ) -> bool:
        if not _is_uuid(org_id, course_id, batch_id):
            return False
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM course_grant
                WHERE organization_id = %s AND course_id = %s
                  AND batch_id IS NOT DISTINCT FROM %s::uuid
                """,
                (org_id, course_id, batch_id),
            )
            return result.rowcount > 0

    def list_course_grants(self, org_id: str) -> List[CourseGrant]:
        if not _is_uuid(org_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM course_grant WHERE organization_id = %s ORDER BY created_at",
                (org_id,),
            ).fetchall()
        return [
            CourseGrant(
                organization_id=str(row["organization_id"]),
                course_id=str(row["course_id"]),
                batch_id=_opt_str(row.get("batch_id")),
                created_at=row.get("created_at") or utcnow(),
            )
            for row in rows
        ]

    def list_granted_course_ids(self, org_id: str, batch_id: Optional[str] = None) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT course_id FROM course_grant
                WHERE organization_id = %s AND (batch_id IS NULL OR batch_id = %s::uuid)
                """,
                (org_id, batch_id),
            ).fetchall()
        return [str(row["course_id"]) for row in rows]

    # enrollments
    def upsert_enrollment(self, user_id: str, course_id: str, access_source: str) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO enrollment (id, user_id, course_id, access_source)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id, course_id) DO NOTHING
                    RETURNING id
                    """,
                    (new_id(), user_id, course_id, access_source),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "enrollment references missing row", {"user_id": user_id, "course_id": course_id}
            )
        return row is not None

    def get_enrollment(self, user_id: str, course_id: str) -> Optional[Enrollment]:
        if not _is_uuid(user_id, course_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM enrollment WHERE user_id = %s AND course_id = %s",
                (user_id, course_id),
            ).fetchone()
        if not row:
            return None
        return Enrollment(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            course_id=str(row["course_id"]),
            access_source=row["access_source"],
            progress_percentage=row.get("progress_percentage", 0),
            created_at=row.get("created_at") or utcnow(),
        )

    def list_enrollments(self, user_id: str) -> List[Enrollment]:
        if not _is_uuid(user_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM enrollment WHERE user_id = %s ORDER BY created_at", (user_id,)
            ).fetchall()
        return [
            Enrollment(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                course_id=str(row["course_id"]),
                access_source=row["access_source"],
                progress_percentage=row.get("progress_percentage", 0),
                created_at=row.get("created_at") or utcnow(),
            )
            for row in rows
        ]

    def set_enrollment_progress(self, user_id: str, course_id: str, percentage: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE enrollment SET progress_percentage = %s
                WHERE user_id = %s AND course_id = %s
                """,
                (max(0, min(100, percentage)), user_id, course_id),
            )
            return result.rowcount > 0

    # payments
    def create_payment(
        self, user_id: str, order_id: str, amount: int, currency: str = "INR"
    ) -> Payment:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO payment (id, user_id, order_id, amount, currency)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), user_id, order_id, amount, currency),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("order already recorded", {"field": "order_id"})
        return _payment_from_row(row)

    def get_payment_by_order(self, order_id: str) -> Optional[Payment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM payment WHERE order_id = %s", (order_id,)
            ).fetchone()
        return _payment_from_row(row) if row else None

    def capture_payment(
        self, order_id: str, gateway_payment_id: str
    ) -> tuple[Optional[Payment], bool]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT * FROM payment WHERE order_id = %s FOR UPDATE", (order_id,)
            ).fetchone()
            if not row:
                return None, False
            if row["status"] == "paid":
                return _payment_from_row(row), False
            row = conn.execute(
                """
                UPDATE payment SET status = 'paid', gateway_payment_id = %s
                WHERE order_id = %s
                RETURNING *
                """,
                (gateway_payment_id, order_id),
            ).fetchone()
            conn.execute(
                "UPDATE app_user SET is_premium = TRUE, updated_at = now() WHERE id = %s",
                (row["user_id"],),
            )
        return _payment_from_row(row), True

    def fail_payment(self, order_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE payment SET status = 'failed' WHERE order_id = %s AND status <> 'paid'",
                (order_id,),
            )
            return result.rowcount > 0
