from __future__ import annotations

from tenantshift.services.audit import sanitize_metadata


def test_audit_redacts_provider_credentials() -> None:
    payload = {
        "dns_api_token": "tok",
        "database_dsn": "postgresql://user:pw@db/tenant",
        "targets": [{"endpoint": "dep-1.dedicated.local", "credential_ref": "vault://x"}],
        "reason": "operator pin",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["dns_api_token"] == "[REDACTED]"
    assert sanitized["database_dsn"] == "[REDACTED]"
    assert sanitized["targets"] == [{"endpoint": "dep-1.dedicated.local", "credential_ref": "[REDACTED]"}]
    assert sanitized["reason"] == "operator pin"
