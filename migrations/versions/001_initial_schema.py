"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-17

Media servers, stream folders, playlists and the video records mirrored
from remote folders. For existing databases, use 'alembic stamp 001'.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "media_servers",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("host", sa.String(255), nullable=False),
        sa.Column("ssh_port", sa.Integer, nullable=False, server_default="22"),
        sa.Column("ssh_username", sa.String(100), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("status IN ('active', 'disabled')", name="ck_media_servers_status"),
    )

    op.create_table(
        "stream_folders",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("owner_id", sa.Integer, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("quota_mb", sa.Integer, nullable=False, server_default="1000"),
        sa.Column("used_mb", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "server_id",
            sa.Integer,
            sa.ForeignKey("media_servers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("owner_id", "name", name="uq_stream_folders_owner_name"),
    )
    op.create_index("ix_stream_folders_owner_id", "stream_folders", ["owner_id"])

    op.create_table(
        "playlists",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("owner_id", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_playlists_owner_name", "playlists", ["owner_id", "name"])

    op.create_table(
        "videos",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, server_default=""),
        sa.Column("url", sa.String(1024), nullable=False),
        sa.Column("duration", sa.Float, server_default="0"),
        sa.Column("size_bytes", sa.BigInteger, server_default="0"),
        sa.Column(
            "playlist_id",
            sa.Integer,
            sa.ForeignKey("playlists.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_videos_name", "videos", ["name"])
    op.create_index("ix_videos_playlist_id", "videos", ["playlist_id"])


def downgrade() -> None:
    op.drop_index("ix_videos_playlist_id", table_name="videos")
    op.drop_index("ix_videos_name", table_name="videos")
    op.drop_table("videos")
    op.drop_index("ix_playlists_owner_name", table_name="playlists")
    op.drop_table("playlists")
    op.drop_index("ix_stream_folders_owner_id", table_name="stream_folders")
    op.drop_table("stream_folders")
    op.drop_table("media_servers")
