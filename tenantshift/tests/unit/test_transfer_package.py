from __future__ import annotations

import json

import pytest

from tenantshift.core.errors import ExportError, TransferError
from tenantshift.services.transfer.importer import collection_order
from tenantshift.services.transfer.package import (
    LocalPackageStorage,
    build_package,
    structured_checksum,
    time_series_checksum,
)


def _rows() -> list[dict]:
    return [
        {"series": "temp", "entity_id": "dev-1", "ts": "2026-01-02T00:00:00+00:00", "value": 2.0},
        {"series": "temp", "entity_id": "dev-1", "ts": "2026-01-01T00:00:00+00:00", "value": 1.0},
        {"series": "temp", "entity_id": "dev-2", "ts": "2026-01-03T00:00:00+00:00", "value": 3.0},
    ]


def _package():
    return build_package(
        package_id="pkg_test",
        tenant_id="t-1",
        job_id="mig_1",
        kind="upgrade",
        source_deployment_id="dep_src",
        collections={
            "sites": [{"id": "s1"}],
            "devices": [{"id": "dev-2", "site_id": "s1"}, {"id": "dev-1", "site_id": "s1"}],
        },
        relations={"devices": {"site_id": "sites"}},
        rows=_rows(),
        retention_days=None,
        retention_cutoff=None,
    )


def test_checksums_ignore_record_order() -> None:
    records = [{"id": "a", "v": 1}, {"id": "b", "v": 2}]
    assert structured_checksum({"x": records}) == structured_checksum({"x": list(reversed(records))})
    assert time_series_checksum(_rows()) == time_series_checksum(list(reversed(_rows())))


def test_checksums_detect_changed_values() -> None:
    changed = _rows()
    changed[0] = {**changed[0], "value": 99.0}
    assert time_series_checksum(changed) != time_series_checksum(_rows())
    assert structured_checksum({"x": [{"id": "a", "v": 1}]}) != structured_checksum({"x": [{"id": "a", "v": 2}]})


def test_build_package_orders_rows_and_summarizes() -> None:
    package = _package()
    assert [row["ts"] for row in package.rows] == sorted(row["ts"] for row in _rows())
    manifest = package.manifest
    assert manifest.structured.counts == {"devices": 2, "sites": 1}
    assert manifest.time_series.counts == {"rows": 3}
    assert manifest.time_series.min_ts == "2026-01-01T00:00:00+00:00"
    assert manifest.time_series.max_ts == "2026-01-03T00:00:00+00:00"
    assert manifest.best_effort is False


def test_storage_rejects_tampered_package(tmp_path) -> None:
    storage = LocalPackageStorage(base_dir=tmp_path)
    package = _package()
    uri = storage.write(package)
    restored = storage.read(uri)
    assert restored.manifest == package.manifest
    assert restored.rows == package.rows

    manifest_path = tmp_path / "pkg_test" / "manifest.json"
    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    manifest["sections"]["time_series"]["checksum"] = "0" * 64
    manifest_path.write_text(json.dumps(manifest), encoding="utf-8")
    with pytest.raises(ExportError):
        storage.read(uri)


def test_storage_without_manifest_is_incomplete(tmp_path) -> None:
    (tmp_path / "pkg_partial").mkdir()
    with pytest.raises(ExportError):
        LocalPackageStorage(base_dir=tmp_path).read(str(tmp_path / "pkg_partial"))


def test_collection_order_puts_parents_first() -> None:
    relations = {
        "readings": {"device_id": "devices"},
        "devices": {"site_id": "sites", "owner_id": "accounts"},
    }
    order = collection_order(["readings", "devices", "sites", "accounts", "tags"], relations)
    assert order.index("sites") < order.index("devices") < order.index("readings")
    assert order.index("accounts") < order.index("devices")
    assert order == collection_order(["tags", "accounts", "sites", "devices", "readings"], relations)


def test_collection_order_rejects_cycles() -> None:
    with pytest.raises(TransferError):
        collection_order(["a", "b"], {"a": {"b_id": "b"}, "b": {"a_id": "a"}})
