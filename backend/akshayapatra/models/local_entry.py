"""One row per namespaced local-store key.

``value`` holds the serialized JSON envelope verbatim; expiry lives inside
the envelope, except for lock rows which use ``expires_at`` so they can be
reclaimed without parsing.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from akshayapatra.database import Base


def utcnow() -> datetime:
    """Naive UTC, matching the timezone-less columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LocalEntry(Base):
    __tablename__ = "local_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )
