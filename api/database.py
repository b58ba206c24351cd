from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


media_servers = sa.Table(
    "media_servers",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(100), nullable=False),
    sa.Column("host", sa.String(255), nullable=False),
    sa.Column("ssh_port", sa.Integer, nullable=False, default=22),
    sa.Column("ssh_username", sa.String(100), nullable=True),  # NULL = VSTREAM_SSH_USERNAME
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('active', 'disabled')",
            name="ck_media_servers_status"
        ),
        nullable=False,
        default="active"
    ),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
)

# Quota-bound storage buckets; each maps to <content root>/<owner login>/<name> on its server
stream_folders = sa.Table(
    "stream_folders",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("owner_id", sa.Integer, nullable=False),
    sa.Column("name", sa.String(255), nullable=False),
    sa.Column("quota_mb", sa.Integer, nullable=False, default=1000),
    sa.Column("used_mb", sa.Integer, nullable=False, default=0),
    sa.Column("server_id", sa.Integer, sa.ForeignKey("media_servers.id", ondelete="SET NULL"), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.UniqueConstraint("owner_id", "name", name="uq_stream_folders_owner_name"),
    sa.Index("ix_stream_folders_owner_id", "owner_id"),
)

playlists = sa.Table(
    "playlists",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(255), nullable=False),
    sa.Column("owner_id", sa.Integer, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Index("ix_playlists_owner_name", "owner_id", "name"),
)

# Relational mirror of remote files; the media server listing is authoritative
videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(255), nullable=False),
    sa.Column("description", sa.Text, default=""),
    sa.Column("url", sa.String(1024), nullable=False),  # /content/<login>/<folder>/<file>
    sa.Column("duration", sa.Float, default=0),  # seconds
    sa.Column("size_bytes", sa.BigInteger, default=0),
    sa.Column("playlist_id", sa.Integer, sa.ForeignKey("playlists.id", ondelete="SET NULL"), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.Index("ix_videos_name", "name"),
    sa.Index("ix_videos_playlist_id", "playlist_id"),
)


def create_tables():
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(DATABASE_URL)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
