"""Relational layout of the RFV customer store.

``rfv_customers`` holds the current record of every customer keyed by the
normalised name; rows are replaced whole on each upload. ``rfv_upload_logs``
is append-only, one row per segmentation run.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)

metadata = MetaData()

rfv_customers = Table(
    "rfv_customers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("customer_key", String(255), nullable=False, unique=True, index=True),
    Column("name", String(255), nullable=False),
    Column("phone", String(64)),
    Column("whatsapp", String(64)),
    Column("email", String(255)),
    Column("cpf", String(32)),
    Column("record_id", String(64)),
    Column("first_purchase_date", Date, nullable=False),
    Column("last_purchase_date", Date, nullable=False),
    Column("total_purchases", Integer, nullable=False),
    Column("total_value", Numeric(14, 2), nullable=False),
    Column("average_ticket", Numeric(14, 2), nullable=False),
    Column("days_since_last_purchase", Integer, nullable=False),
    Column("recency_score", Integer, nullable=False),
    Column("frequency_score", Integer, nullable=False),
    Column("value_score", Integer, nullable=False),
    Column("segment", String(32), nullable=False, index=True),
    # Audit
    Column("created_by", String(255)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

rfv_upload_logs = Table(
    "rfv_upload_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("uploaded_by", String(255), nullable=False),
    Column("uploaded_by_name", String(255)),
    Column("file_name", String(512)),
    Column("total_customers", Integer, nullable=False),
    Column("segment_breakdown", JSON, nullable=False),
    Column("data_reference_date", Date),
    Column("notes", Text),
    Column("uploaded_at", DateTime(timezone=True), nullable=False),
)

# Columns written from CustomerRFVRecord.to_row()
RECORD_COLUMNS = tuple(
    column.name
    for column in rfv_customers.columns
    if column.name not in ("id", "created_by", "created_at", "updated_at")
)
