"""Profile model definition using SQLAlchemy Core."""

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    MetaData,
    Table,
    Text,
    func,
    text,
)

metadata = MetaData()

profiles = Table(
    "profiles",
    metadata,
    # Identity provider uid (SOURCE OF TRUTH for identity)
    Column("id", Text, primary_key=True),
    # Mirrored from the identity provider
    Column("email", Text, nullable=False, index=True),
    Column("email_verified", Boolean, nullable=False, server_default=text("false")),
    Column("display_name", Text),
    # Authorization
    Column("role", Text, nullable=False, server_default=text("'patient'"), index=True),
    Column("status", Text, nullable=False, server_default=text("'active'"), index=True),
    # Profile documents
    Column("personal_info", JSON),
    Column("professional_info", JSON),
    Column("preferences", JSON),
    # Single-use security tokens (SHA-256 digests) with epoch-ms expiry
    Column("email_verification_token", Text, unique=True),
    Column("email_verification_expires", BigInteger),
    Column("reset_token", Text, unique=True),
    Column("reset_token_expiry", BigInteger),
    # Audit
    Column("last_login_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("deleted_at", DateTime(timezone=True)),
    CheckConstraint("role IN ('admin', 'doctor', 'patient')", name="ck_profiles_role"),
    CheckConstraint(
        "status IN ('active', 'inactive', 'suspended', 'deleted')",
        name="ck_profiles_status",
    ),
    # Listing is ordered newest first with the id as tie-breaker
    Index("ix_profiles_created_at_id", "created_at", "id"),
)
