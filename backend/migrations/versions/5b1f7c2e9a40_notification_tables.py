"""teachers, students and notifications tables

Revision ID: 5b1f7c2e9a40
Revises:
Create Date: 2026-10-18 10:12:41.503127

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
import sqlalchemy.dialects.postgresql as postgresql


# revision identifiers, used by Alembic.
revision: str = '5b1f7c2e9a40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _user_columns():
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("push_tokens", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "teachers",
        *_user_columns(),
        sa.Column("subject", sa.String(), nullable=True),
    )
    op.create_index("ix_teachers_email", "teachers", ["email"])

    op.create_table(
        "students",
        *_user_columns(),
        sa.Column("class_name", sa.String(), nullable=True),
        sa.Column("section", sa.String(), nullable=True),
    )
    op.create_index("ix_students_email", "students", ["email"])
    op.create_index("ix_students_class_name", "students", ["class_name"])

    op.create_table(
        "notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False, server_default="announcement"),
        sa.Column("priority", sa.String(), nullable=False, server_default="medium"),
        sa.Column("target_users", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("related_content_type", sa.String(), nullable=True),
        sa.Column("related_content_id", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_by_type", sa.String(), nullable=True),
        sa.Column("created_by_name", sa.String(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("read_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False
        ),
    )
    op.create_index("ix_notifications_type", "notifications", ["type"])
    op.create_index("ix_notifications_related_content_id", "notifications", ["related_content_id"])


def downgrade() -> None:
    op.drop_index("ix_notifications_related_content_id", table_name="notifications")
    op.drop_index("ix_notifications_type", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_students_class_name", table_name="students")
    op.drop_index("ix_students_email", table_name="students")
    op.drop_table("students")
    op.drop_index("ix_teachers_email", table_name="teachers")
    op.drop_table("teachers")
