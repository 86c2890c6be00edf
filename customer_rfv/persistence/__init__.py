"""Relational storage of RFV customer records and upload logs."""

from .gateway import (
    DEFAULT_BATCH_SIZE,
    BatchFailure,
    PersistResult,
    RFVCustomerStore,
    UploadLogEntry,
)
from .queries import CustomerQuery, build_customer_select
from .schema import metadata, rfv_customers, rfv_upload_logs

__all__ = [
    "DEFAULT_BATCH_SIZE",
    "BatchFailure",
    "PersistResult",
    "RFVCustomerStore",
    "UploadLogEntry",
    "CustomerQuery",
    "build_customer_select",
    "metadata",
    "rfv_customers",
    "rfv_upload_logs",
]
