"""enforce one asset row per external asset id

Revision ID: 20261018_000002
Revises: 20261018_000001
Create Date: 2026-10-18 00:00:02.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000002"
down_revision: Union[str, None] = "20261018_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    duplicates = bind.execute(
        sa.text(
            "SELECT external_asset_id, COUNT(*) FROM video_assets "
            "WHERE external_asset_id IS NOT NULL "
            "GROUP BY external_asset_id HAVING COUNT(*) > 1"
        )
    ).fetchall()
    if duplicates:
        sample = ", ".join(str(row[0]) for row in duplicates[:5])
        raise RuntimeError(
            f"{len(duplicates)} external asset ids are shared by several rows ({sample}). "
            "Resolve them with POST /admin/duplicates/resolve before upgrading."
        )
    op.create_index(
        "uq_video_assets_external_asset_id",
        "video_assets",
        ["external_asset_id"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("uq_video_assets_external_asset_id", table_name="video_assets")
