"""Database models (migration metadata)."""

from sqlalchemy.orm import declarative_base

Base = declarative_base()

from runplane.db.models.background_runs import BackgroundRunRecord  # noqa: E402

__all__ = ["Base", "BackgroundRunRecord"]
