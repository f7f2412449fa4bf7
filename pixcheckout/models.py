from datetime import datetime, timezone
from sqlmodel import SQLModel, Field

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class StoredRecord(SQLModel, table=True):
    """Key/value row standing in for the browser's localStorage."""
    __tablename__ = "checkout_storage"

    key: str = Field(primary_key=True, max_length=64)
    value: str  # JSON or plain string
    updated_at: datetime = Field(default_factory=_utcnow)
