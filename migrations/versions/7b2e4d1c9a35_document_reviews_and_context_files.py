"""Document reviews and file-derived evaluator context

Revision ID: 7b2e4d1c9a35
Revises: 3f1a9c2d7e10
Create Date: 2026-10-19 14:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "7b2e4d1c9a35"
down_revision = "3f1a9c2d7e10"
branch_labels = None
depends_on = None


def upgrade():
    # ── scenarios: name of the uploaded evaluator-context file ──
    with op.batch_alter_table("scenarios", schema=None) as batch_op:
        batch_op.add_column(sa.Column("evaluator_context_file", sa.String(length=255), nullable=True))

    # ── document_reviews ──
    op.create_table(
        "document_reviews",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "session_id",
            sa.String(36),
            sa.ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("transcript_accuracy", sa.Integer(), nullable=False, comment="0-100"),
        sa.Column("guidelines_compliance", sa.Integer(), nullable=False, comment="0-100"),
        sa.Column("overall_score", sa.Integer(), nullable=False, comment="0-100"),
        sa.Column("specific_gaps", sa.JSON(), nullable=False),
        sa.Column("review_text", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade():
    op.drop_table("document_reviews")
    with op.batch_alter_table("scenarios", schema=None) as batch_op:
        batch_op.drop_column("evaluator_context_file")
