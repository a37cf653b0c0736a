from authstore.ops.store_report import build_store_report
from authstore.ops.store_report import licenses_missing_snapshot
from authstore.ops.store_report import resync_license_snapshots
from authstore.ops.store_report import stale_snapshots
from authstore.ops.store_report import summarize_document

__all__ = [
    "build_store_report",
    "licenses_missing_snapshot",
    "resync_license_snapshots",
    "stale_snapshots",
    "summarize_document",
]
