"""event payments and two-factor login

Revision ID: b7c3d9e1f2a4
Revises: a1f0c2d3e4b5
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "b7c3d9e1f2a4"
down_revision = "a1f0c2d3e4b5"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("events") as batch_op:
        batch_op.add_column(sa.Column("price", sa.Numeric(precision=12, scale=2), nullable=False,
                                      server_default="0"))

    with op.batch_alter_table("event_registrations") as batch_op:
        batch_op.add_column(sa.Column("payment_status", sa.String(length=20), nullable=True))
        batch_op.add_column(sa.Column("gateway_txnid", sa.String(length=64), nullable=True))
        batch_op.add_column(sa.Column("payment_id", sa.String(length=100), nullable=True))
        batch_op.add_column(sa.Column("amount_paid", sa.Numeric(precision=12, scale=2), nullable=True))
        batch_op.add_column(sa.Column("paid_at", sa.DateTime(), nullable=True))
        batch_op.add_column(sa.Column("checkin_code", sa.String(length=8), nullable=True))
        batch_op.create_unique_constraint("uq_event_registrations_gateway_txnid", ["gateway_txnid"])

    op.create_table(
        "two_factor_secrets",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("secret", sa.String(length=64), nullable=False),
        sa.Column("backup_codes_json", sa.Text(), nullable=True),
        sa.Column("enabled_at", sa.DateTime(), nullable=True),
        sa.Column("last_totp_step", sa.BigInteger(), nullable=True),
        sa.Column("last_used_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )
    op.create_table(
        "login_challenges",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("token_hash", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("consumed_at", sa.DateTime(), nullable=True),
        sa.Column("method", sa.String(length=16), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_login_challenges_token_hash", "login_challenges", ["token_hash"], unique=True)
    op.create_index("ix_login_challenges_user_id", "login_challenges", ["user_id"], unique=False)


def downgrade():
    op.drop_index("ix_login_challenges_user_id", table_name="login_challenges")
    op.drop_index("ix_login_challenges_token_hash", table_name="login_challenges")
    op.drop_table("login_challenges")
    op.drop_table("two_factor_secrets")

    with op.batch_alter_table("event_registrations") as batch_op:
        batch_op.drop_constraint("uq_event_registrations_gateway_txnid", type_="unique")
        batch_op.drop_column("checkin_code")
        batch_op.drop_column("paid_at")
        batch_op.drop_column("amount_paid")
        batch_op.drop_column("payment_id")
        batch_op.drop_column("gateway_txnid")
        batch_op.drop_column("payment_status")

    with op.batch_alter_table("events") as batch_op:
        batch_op.drop_column("price")
