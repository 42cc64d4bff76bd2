from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any

from tenantshift.core.errors import ProviderError, TransferIntegrityError
from tenantshift.domain.types import DeploymentHandle
from tenantshift.providers.backends.base import BackendAdapter
from tenantshift.services.transfer.package import (
    ExportPackage,
    structured_checksum,
    summarize_time_series,
    time_series_checksum,
)


logger = logging.getLogger(__name__)


@dataclass
class VerificationReport:
    mismatches: list[str] = field(default_factory=list)
    expected: dict[str, Any] = field(default_factory=dict)
    observed: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.mismatches

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "mismatches": list(self.mismatches),
            "expected": self.expected,
            "observed": self.observed,
        }


async def verify_transfer(
    *,
    backend: BackendAdapter,
    handle: DeploymentHandle,
    package: ExportPackage,
) -> VerificationReport:
    # Compare what the package says it carried against a fresh read of the target.
    manifest = package.manifest
    since = datetime.fromisoformat(manifest.retention_cutoff) if manifest.retention_cutoff else None
    try:
        collections = await backend.read_entities(handle)
        rows = await backend.read_time_series(handle, since=since)
    except ProviderError as exc:
        raise TransferIntegrityError(f"Target deployment {handle.deployment_id} could not be read back") from exc

    observed_counts = {name: len(records) for name, records in sorted(collections.items()) if records}
    observed_series = summarize_time_series(rows)
    report = VerificationReport(
        expected={
            "entity_counts": dict(manifest.structured.counts),
            "structured_checksum": manifest.structured.checksum,
            "time_series_count": manifest.time_series.counts.get("rows", 0),
            "time_series_checksum": manifest.time_series.checksum,
            "min_ts": manifest.time_series.min_ts,
            "max_ts": manifest.time_series.max_ts,
        },
        observed={
            "entity_counts": observed_counts,
            "structured_checksum": structured_checksum(collections),
            "time_series_count": observed_series["count"],
            "time_series_checksum": time_series_checksum(rows),
            "min_ts": observed_series["min_ts"],
            "max_ts": observed_series["max_ts"],
        },
    )

    expected, observed = report.expected, report.observed
    for name in sorted(set(expected["entity_counts"]) | set(observed["entity_counts"])):
        want = expected["entity_counts"].get(name, 0)
        got = observed["entity_counts"].get(name, 0)
        if want != got:
            report.mismatches.append(f"count mismatch for {name}: expected {want}, found {got}")
    if expected["structured_checksum"] != observed["structured_checksum"]:
        report.mismatches.append("structured checksum mismatch")
    if expected["time_series_count"] != observed["time_series_count"]:
        report.mismatches.append(
            f"time-series count mismatch: expected {expected['time_series_count']}, "
            f"found {observed['time_series_count']}"
        )
    if expected["time_series_checksum"] != observed["time_series_checksum"]:
        report.mismatches.append("time-series checksum mismatch")
    if (expected["min_ts"], expected["max_ts"]) != (observed["min_ts"], observed["max_ts"]):
        report.mismatches.append(
            f"time range mismatch: expected {expected['min_ts']}..{expected['max_ts']}, "
            f"found {observed['min_ts']}..{observed['max_ts']}"
        )

    if report.ok:
        logger.info("transfer_verified package_id=%s", manifest.package_id)
    else:
        logger.warning(
            "transfer_verification_mismatch package_id=%s mismatches=%s",
            manifest.package_id,
            len(report.mismatches),
        )
    return report
