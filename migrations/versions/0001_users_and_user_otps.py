"""users and user_otps

Revision ID: 0001_users_and_user_otps
Revises:
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql as pg


# revision identifiers, used by Alembic.
revision = "0001_users_and_user_otps"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Enable citext for case-insensitive email
    op.execute("CREATE EXTENSION IF NOT EXISTS citext")

    # users (owned by the record store; we only need id/email/verified)
    op.create_table(
        "users",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("email", pg.CITEXT(), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    op.create_table(
        "user_otps",
        sa.Column("id", pg.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("otp_code", sa.String(length=6), nullable=False),
        sa.Column("purpose", sa.Text(), nullable=False),
        sa.Column("expires_at", pg.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("used_at", pg.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_at", pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id", name="pk_user_otps"),
        sa.ForeignKeyConstraint(
            ["user_id"], ["users.id"], name="fk_user_otps_user_id_users", ondelete="CASCADE"
        ),
        sa.CheckConstraint(
            "purpose in ('signup_verification','email_change','password_reset')",
            name="ck_user_otps_user_otps_purpose",
        ),
        sa.CheckConstraint("otp_code ~ '^[0-9]{6}$'", name="ck_user_otps_user_otps_code_digits"),
    )
    # verify lookup among unused rows
    op.create_index(
        "ix_user_otps_active_lookup",
        "user_otps",
        ["user_id", "purpose", "otp_code"],
        unique=False,
        postgresql_where=sa.text("used = false"),
    )
    # cleanup scan
    op.create_index("ix_user_otps_expires_at", "user_otps", ["expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_user_otps_expires_at", table_name="user_otps")
    op.drop_index("ix_user_otps_active_lookup", table_name="user_otps")
    op.drop_table("user_otps")
    op.drop_table("users")
