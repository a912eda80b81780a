"""Create profiles table

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create profiles table."""
    op.create_table(
        "profiles",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("role", sa.Text(), nullable=False, server_default=sa.text("'patient'")),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'active'")),
        sa.Column("personal_info", sa.JSON(), nullable=True),
        sa.Column("professional_info", sa.JSON(), nullable=True),
        sa.Column("preferences", sa.JSON(), nullable=True),
        sa.Column("email_verification_token", sa.Text(), nullable=True),
        sa.Column("email_verification_expires", sa.BigInteger(), nullable=True),
        sa.Column("reset_token", sa.Text(), nullable=True),
        sa.Column("reset_token_expiry", sa.BigInteger(), nullable=True),
        sa.Column("last_login_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("deleted_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint(
            "role IN ('admin', 'doctor', 'patient')", name="ck_profiles_role"
        ),
        sa.CheckConstraint(
            "status IN ('active', 'inactive', 'suspended', 'deleted')",
            name="ck_profiles_status",
        ),
    )

    op.create_index("ix_profiles_email", "profiles", ["email"], unique=False)
    op.create_index("ix_profiles_role", "profiles", ["role"], unique=False)
    op.create_index("ix_profiles_status", "profiles", ["status"], unique=False)
    op.create_index("ix_profiles_created_at_id", "profiles", ["created_at", "id"], unique=False)

    # Token lookups go by digest; uniqueness backs single-match validation
    op.create_index(
        "uq_profiles_email_verification_token",
        "profiles",
        ["email_verification_token"],
        unique=True,
    )
    op.create_index("uq_profiles_reset_token", "profiles", ["reset_token"], unique=True)


def downgrade() -> None:
    """Drop profiles table."""
    op.drop_index("uq_profiles_reset_token", table_name="profiles")
    op.drop_index("uq_profiles_email_verification_token", table_name="profiles")
    op.drop_index("ix_profiles_created_at_id", table_name="profiles")
    op.drop_index("ix_profiles_status", table_name="profiles")
    op.drop_index("ix_profiles_role", table_name="profiles")
    op.drop_index("ix_profiles_email", table_name="profiles")
    op.drop_table("profiles")
