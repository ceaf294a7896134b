"""
Migration: Add lifecycle integrity constraints.

Databases created before these constraints were declared on the models get them here.
create_all() only builds missing tables, so existing tables need the DDL applied:
1. uq_verification_tokens_live - at most one unused token per record and type
2. uq_reminder_entries_outstanding - at most one PENDING/FAILED reminder per warranty and type
3. chk_single_audit_reference - every audit entry references exactly one record
4. uq_audit_current_warranty / uq_audit_current_inspection - one current audit version per record
5. uq_audit_warranty_version / uq_audit_inspection_version - version numbers unique per record

Safe to run more than once.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/warranty_lifecycle"
)


def index_exists(conn, index_name: str) -> bool:
    """Check if an index exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM pg_indexes
            WHERE indexname = :index_name
        )
    """), {"index_name": index_name})
    return result.fetchone()[0]


def constraint_exists(conn, constraint_name: str) -> bool:
    """Check if a table constraint exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.table_constraints
            WHERE constraint_name = :constraint_name
        )
    """), {"constraint_name": constraint_name})
    return result.fetchone()[0]


PARTIAL_INDEXES = [
    (
        "uq_verification_tokens_live",
        "CREATE UNIQUE INDEX uq_verification_tokens_live "
        "ON verification_tokens(record_id, type) WHERE is_used = false",
    ),
    (
        "uq_reminder_entries_outstanding",
        "CREATE UNIQUE INDEX uq_reminder_entries_outstanding "
        "ON reminder_entries(warranty_id, reminder_type) WHERE status IN ('PENDING', 'FAILED')",
    ),
    (
        "uq_audit_current_warranty",
        "CREATE UNIQUE INDEX uq_audit_current_warranty "
        "ON audit_entries(warranty_id) WHERE is_current_version = true AND warranty_id IS NOT NULL",
    ),
    (
        "uq_audit_current_inspection",
        "CREATE UNIQUE INDEX uq_audit_current_inspection "
        "ON audit_entries(inspection_id) WHERE is_current_version = true AND inspection_id IS NOT NULL",
    ),
]

TABLE_CONSTRAINTS = [
    (
        "chk_single_audit_reference",
        "ALTER TABLE audit_entries ADD CONSTRAINT chk_single_audit_reference CHECK ("
        "(warranty_id IS NOT NULL AND inspection_id IS NULL) OR "
        "(warranty_id IS NULL AND inspection_id IS NOT NULL))",
    ),
    (
        "uq_audit_warranty_version",
        "ALTER TABLE audit_entries ADD CONSTRAINT uq_audit_warranty_version "
        "UNIQUE (warranty_id, version_number)",
    ),
    (
        "uq_audit_inspection_version",
        "ALTER TABLE audit_entries ADD CONSTRAINT uq_audit_inspection_version "
        "UNIQUE (inspection_id, version_number)",
    ),
]


def run_migration():
    """Add the partial unique indexes and audit constraints."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        # =================================================================
        # PARTIAL UNIQUE INDEXES
        # =================================================================
        for name, ddl in PARTIAL_INDEXES:
            if index_exists(conn, name):
                print(f"{name} already exists")
            else:
                conn.execute(text(ddl))
                print(f"Created index {name}")

        # =================================================================
        # AUDIT TABLE CONSTRAINTS
        # =================================================================
        for name, ddl in TABLE_CONSTRAINTS:
            if constraint_exists(conn, name):
                print(f"{name} already exists")
            else:
                conn.execute(text(ddl))
                print(f"Added constraint {name}")

        conn.commit()
        print("\nLifecycle constraints migration completed successfully!")


if __name__ == "__main__":
    run_migration()
