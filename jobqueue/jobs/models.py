"""
Job record model.
"""

import json
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from jobqueue.core.exceptions import DeserializationError
from jobqueue.infra.database import Base, UTCDateTime
from jobqueue.jobs.codec import PayloadCodec, PayloadTag, default_codec


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Job(Base):
    """
    A persisted unit of deferred work.

    ``locked_at`` and ``locked_by`` are written together by the locking
    protocol in ``JobService``; nothing else should assign them.
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Lower runs first"
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Failed executions so far"
    )
    handler: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Encoded executable unit"
    )
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Most recent failure message and traceback"
    )
    run_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, comment="Earliest time to run"
    )

    # Worker coordination
    locked_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="When the current lock was taken"
    )
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker holding the lock"
    )
    failed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Set once the job is abandoned"
    )
    reoccur_in: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Seconds between runs or a calendar rule name",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_jobs_priority_run_at", "priority", "run_at"),
        Index("ix_jobs_locked_by", "locked_by"),
    )

    def __repr__(self) -> str:
        return f"<Job #{self.id} {self.priority} run_at={self.run_at}>"

    def load_payload(self, codec: PayloadCodec = default_codec) -> Any:
        """Decode the executable unit; decoded once per handler value and codec."""
        cached = self.__dict__.get("_payload_cache")
        if cached is not None and cached[0] is codec and cached[1] == self.handler:
            return cached[2]
        payload = codec.decode(self.handler)
        self.__dict__["_payload_cache"] = (codec, self.handler, payload)
        return payload

    def store_payload(self, unit: Any, codec: PayloadCodec = default_codec) -> None:
        self.handler = codec.encode(unit)
        self.__dict__["_payload_cache"] = (codec, self.handler, unit)

    @property
    def payload_object(self) -> Any:
        return self.load_payload()

    @payload_object.setter
    def payload_object(self, unit: Any) -> None:
        self.store_payload(unit)

    def display_name(self, codec: PayloadCodec = default_codec) -> str:
        """
        Name used in logs and listings.

        The payload's own ``display_name`` wins, then its class name. When the
        payload cannot be decoded the stored type name is used instead.
        """
        try:
            payload = self.load_payload(codec)
        except DeserializationError:
            return self._stored_type_name()

        display_name = getattr(payload, "display_name", None)
        if callable(display_name):
            display_name = display_name()
        if display_name:
            return str(display_name)
        return type(payload).__qualname__

    @property
    def name(self) -> str:
        return self.display_name()

    def _stored_type_name(self) -> str:
        try:
            document = json.loads(self.handler)
        except (TypeError, ValueError):
            return "unknown"
        if not isinstance(document, dict):
            return "unknown"
        for tag in PayloadTag:
            type_name = document.get(tag.key)
            if isinstance(type_name, str):
                return type_name.rpartition(":")[2]
        return "unknown"

    def is_locked(self) -> bool:
        return self.locked_by is not None

    def is_failed(self) -> bool:
        return self.failed_at is not None

    def is_recurring(self) -> bool:
        return self.reoccur_in is not None
