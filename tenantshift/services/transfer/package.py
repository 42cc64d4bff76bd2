from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import gzip
import hashlib
import json
import logging
from pathlib import Path
import shutil
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.core.config import get_settings
from tenantshift.core.errors import ExportError
from tenantshift.domain.models import ExportPackageRecord
from tenantshift.providers.backends.local import parse_ts, series_key


logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"
STRUCTURED_FILENAME = "structured.json.gz"
TIME_SERIES_FILENAME = "time_series.json.gz"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def canonical_json(value: Any) -> bytes:
    # Stable bytes for checksums: sorted keys, no whitespace.
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def _sha256(value: Any) -> str:
    return hashlib.sha256(canonical_json(value)).hexdigest()


def structured_checksum(collections: dict[str, list[dict[str, Any]]]) -> str:
    # Record order inside a collection must not change the checksum.
    normalized = {
        name: sorted(records, key=lambda record: str(record["id"]))
        for name, records in collections.items()
        if records
    }
    return _sha256(normalized)


def time_series_checksum(rows: list[dict[str, Any]]) -> str:
    return _sha256(sorted(rows, key=series_key))


def summarize_time_series(rows: list[dict[str, Any]]) -> dict[str, Any]:
    if not rows:
        return {"count": 0, "min_ts": None, "max_ts": None}
    stamps = [parse_ts(row["ts"]) for row in rows]
    return {"count": len(rows), "min_ts": min(stamps).isoformat(), "max_ts": max(stamps).isoformat()}


@dataclass(frozen=True)
class SectionSummary:
    checksum: str
    counts: dict[str, int]
    min_ts: str | None = None
    max_ts: str | None = None


@dataclass(frozen=True)
class PackageManifest:
    package_id: str
    tenant_id: str
    job_id: str
    kind: str
    schema_version: str
    exported_at: str
    source_deployment_id: str
    retention_days: int | None
    retention_cutoff: str | None
    structured: SectionSummary
    time_series: SectionSummary
    # Set when the package was assembled from a fallback rather than a live read.
    best_effort: bool = False
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "package_id": self.package_id,
            "tenant_id": self.tenant_id,
            "job_id": self.job_id,
            "kind": self.kind,
            "schema_version": self.schema_version,
            "exported_at": self.exported_at,
            "source_deployment_id": self.source_deployment_id,
            "retention_days": self.retention_days,
            "retention_cutoff": self.retention_cutoff,
            "best_effort": self.best_effort,
            "notes": list(self.notes),
            "sections": {
                "structured": self.structured.__dict__,
                "time_series": self.time_series.__dict__,
            },
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PackageManifest":
        sections = payload.get("sections", {})
        return cls(
            package_id=payload["package_id"],
            tenant_id=payload["tenant_id"],
            job_id=payload["job_id"],
            kind=payload["kind"],
            schema_version=payload.get("schema_version", "1.0"),
            exported_at=payload["exported_at"],
            source_deployment_id=payload["source_deployment_id"],
            retention_days=payload.get("retention_days"),
            retention_cutoff=payload.get("retention_cutoff"),
            structured=SectionSummary(**sections["structured"]),
            time_series=SectionSummary(**sections["time_series"]),
            best_effort=bool(payload.get("best_effort", False)),
            notes=list(payload.get("notes", [])),
        )


@dataclass(frozen=True)
class ExportPackage:
    manifest: PackageManifest
    collections: dict[str, list[dict[str, Any]]]
    relations: dict[str, dict[str, str]]
    rows: list[dict[str, Any]]

    @property
    def package_id(self) -> str:
        return self.manifest.package_id


def build_package(
    *,
    package_id: str,
    tenant_id: str,
    job_id: str,
    kind: str,
    source_deployment_id: str,
    collections: dict[str, list[dict[str, Any]]],
    relations: dict[str, dict[str, str]],
    rows: list[dict[str, Any]],
    retention_days: int | None,
    retention_cutoff: datetime | None,
    best_effort: bool = False,
    notes: list[str] | None = None,
    exported_at: datetime | None = None,
) -> ExportPackage:
    # Rows are stored in a deterministic order so batch boundaries are reproducible on resume.
    ordered_rows = sorted(rows, key=lambda row: (parse_ts(row["ts"]), str(row["series"]), str(row["entity_id"])))
    summary = summarize_time_series(ordered_rows)
    manifest = PackageManifest(
        package_id=package_id,
        tenant_id=tenant_id,
        job_id=job_id,
        kind=kind,
        schema_version=get_settings().export_schema_version,
        exported_at=(exported_at or _utc_now()).isoformat(),
        source_deployment_id=source_deployment_id,
        retention_days=retention_days,
        retention_cutoff=retention_cutoff.isoformat() if retention_cutoff else None,
        structured=SectionSummary(
            checksum=structured_checksum(collections),
            counts={name: len(records) for name, records in sorted(collections.items()) if records},
        ),
        time_series=SectionSummary(
            checksum=time_series_checksum(ordered_rows),
            counts={"rows": summary["count"]},
            min_ts=summary["min_ts"],
            max_ts=summary["max_ts"],
        ),
        best_effort=best_effort,
        notes=list(notes or []),
    )
    return ExportPackage(manifest=manifest, collections=collections, relations=relations, rows=ordered_rows)


def _write_json_gzip(path: Path, payload: Any) -> None:
    with gzip.open(path, "wt", encoding="utf-8") as handle:
        json.dump(payload, handle, separators=(",", ":"), ensure_ascii=False, default=str)


def _read_json_gzip(path: Path) -> Any:
    with gzip.open(path, "rt", encoding="utf-8") as handle:
        return json.load(handle)


@dataclass(frozen=True)
class LocalPackageStorage:
    # Filesystem layout: <base_dir>/<package_id>/{manifest.json, structured.json.gz, time_series.json.gz}
    base_dir: Path

    def package_dir(self, package_id: str) -> Path:
        return self.base_dir / package_id

    def write(self, package: ExportPackage) -> str:
        target = self.package_dir(package.package_id)
        target.mkdir(parents=True, exist_ok=True)
        _write_json_gzip(
            target / STRUCTURED_FILENAME,
            {"collections": package.collections, "relations": package.relations},
        )
        _write_json_gzip(target / TIME_SERIES_FILENAME, package.rows)
        # Manifest last: a directory without one is an incomplete export.
        manifest_path = target / MANIFEST_FILENAME
        manifest_path.write_text(json.dumps(package.manifest.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
        return str(target)

    def read(self, uri: str) -> ExportPackage:
        target = Path(uri)
        manifest_path = target / MANIFEST_FILENAME
        if not manifest_path.exists():
            raise ExportError(f"Export package manifest missing at {uri}")
        manifest = PackageManifest.from_dict(json.loads(manifest_path.read_text(encoding="utf-8")))
        structured = _read_json_gzip(target / STRUCTURED_FILENAME)
        rows = _read_json_gzip(target / TIME_SERIES_FILENAME)
        collections = structured.get("collections", {})
        # Refuse to replay a package whose sections no longer match their manifest.
        if structured_checksum(collections) != manifest.structured.checksum:
            raise ExportError(f"Structured section checksum mismatch in package {manifest.package_id}")
        if time_series_checksum(rows) != manifest.time_series.checksum:
            raise ExportError(f"Time-series section checksum mismatch in package {manifest.package_id}")
        return ExportPackage(
            manifest=manifest,
            collections=collections,
            relations=structured.get("relations", {}),
            rows=rows,
        )

    def delete(self, uri: str) -> None:
        shutil.rmtree(uri, ignore_errors=True)


def get_package_storage() -> LocalPackageStorage:
    return LocalPackageStorage(base_dir=Path(get_settings().export_package_dir))


async def persist_package_record(session: AsyncSession, *, package: ExportPackage, uri: str) -> ExportPackageRecord:
    settings = get_settings()
    created_at = _utc_now()
    record = ExportPackageRecord(
        id=package.package_id,
        job_id=package.manifest.job_id,
        tenant_id=package.manifest.tenant_id,
        uri=uri,
        schema_version=package.manifest.schema_version,
        manifest_json=package.manifest.to_dict(),
        created_at=created_at,
        expires_at=created_at + timedelta(days=settings.export_package_grace_days),
    )
    session.add(record)
    return record


async def latest_live_package(session: AsyncSession, tenant_id: str) -> ExportPackageRecord | None:
    # Newest package still on disk; emergency exports fall back to it when the source cannot be read.
    result = await session.execute(
        select(ExportPackageRecord)
        .where(ExportPackageRecord.tenant_id == tenant_id, ExportPackageRecord.deleted_at.is_(None))
        .order_by(ExportPackageRecord.created_at.desc())
    )
    for record in result.scalars().all():
        if not (record.manifest_json or {}).get("best_effort"):
            return record
    return None


async def prune_expired_packages(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Packages outlive their job by the grace period to support rollback, then go.
    current = now or _utc_now()
    storage = get_package_storage()
    result = await session.execute(
        select(ExportPackageRecord).where(
            ExportPackageRecord.deleted_at.is_(None),
            ExportPackageRecord.expires_at <= current,
        )
    )
    pruned = 0
    for record in result.scalars().all():
        storage.delete(record.uri)
        record.deleted_at = current
        pruned += 1
    await session.commit()
    if pruned:
        logger.info("export_packages_pruned count=%s", pruned)
    return pruned
