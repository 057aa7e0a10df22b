"""Maintenance: remove stale source documents."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from core.ports import StoragePort

LOGGER = logging.getLogger(__name__)

SAMPLE_SIZE = 10


@dataclass
class CleanupReport:
    total: int = 0
    retained: int = 0
    ingested: int = 0
    deleted: int = 0
    dry_run: bool = False
    samples: list[str] = field(default_factory=list)


def clean_sources(storage: StoragePort, retain_source_type: str, dry_run: bool = False) -> CleanupReport:
    """Delete source documents that are neither of ``retain_source_type`` nor ingested."""

    report = CleanupReport(dry_run=dry_run)
    ingested_ids = storage.list_ingested_source_ids()
    to_delete: list[str] = []

    for stored in storage.list_sources():
        report.total += 1
        if stored.document.source_type == retain_source_type:
            report.retained += 1
            continue
        if stored.document_id in ingested_ids:
            report.ingested += 1
            continue
        to_delete.append(stored.document_id)
        if len(report.samples) < SAMPLE_SIZE:
            report.samples.append(f"{stored.document.source_type}: {stored.document.title}")

    LOGGER.info(
        "Sources: total=%s retained(%s)=%s ingested=%s to_delete=%s",
        report.total,
        retain_source_type,
        report.retained,
        report.ingested,
        len(to_delete),
    )
    for sample in report.samples:
        LOGGER.info("  would delete %s", sample)

    if dry_run:
        LOGGER.info("[dry-run] %s source document(s) would be deleted", len(to_delete))
        return report
    if not to_delete:
        return report

    report.deleted = storage.delete_sources(to_delete)
    LOGGER.info("Deleted %s source document(s)", report.deleted)
    return report
