from sqlalchemy import (
    Column,
    Integer,
    String,
    TIMESTAMP,
    Text,
)
from sqlalchemy.sql import func

from flowdesk.core.database import Base


# =========================
# Query run (history)
# =========================
class QueryRun(Base):
    """
    One row per run_query call made through this service.

    The statement itself is never stored, only its SHA-256 hash:
    submit -> this table (status=running) -> settle -> status/row_count/duration
    """

    __tablename__ = "query_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)

    connection_id = Column(String, nullable=False, index=True)
    statement_hash = Column(String(64), nullable=False)

    # running/ok/pending_approval/no_connection/error/rejected/failed
    status = Column(String, nullable=False, index=True, default="running")
    approval_id = Column(String, nullable=True)

    row_count = Column(Integer, nullable=False, default=0)
    duration_ms = Column(Integer, nullable=False, default=0)

    error = Column(Text, nullable=True)

    started_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    ended_at = Column(TIMESTAMP(timezone=True), nullable=True)
