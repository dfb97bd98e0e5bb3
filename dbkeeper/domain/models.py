from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping sqlite usable for local runs.
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class ResourceRecord(Base):
    __tablename__ = "resource_records"

    kind: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Cluster-scoped kinds are stored under the empty namespace.
    namespace: Mapped[str] = mapped_column(String(253), primary_key=True, default="")
    name: Mapped[str] = mapped_column(String(253), primary_key=True)
    labels_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    annotations_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    finalizers_json: Mapped[list[str]] = mapped_column(JsonType, default=list)
    owner_references_json: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, default=list)
    spec_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    status_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    deletion_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Bumped on every write; stale writers fail with StaleDataError.
    resource_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": resource_version}
    __table_args__ = (Index("ix_resource_records_kind_namespace", "kind", "namespace"),)
