from __future__ import annotations


class TenantShiftError(Exception):
    """Base error for tenantshift."""

    code = "TENANTSHIFT_ERROR"


class ValidationError(TenantShiftError):
    """Rejected before any state change; callers may retry later."""

    code = "VALIDATION_ERROR"


class UnknownTenantError(ValidationError):
    """Tenant id does not resolve to a registered tenant."""

    code = "UNKNOWN_TENANT"


class MigrationExclusivityError(ValidationError):
    """Another migration job is already active for the tenant."""

    code = "MIGRATION_IN_PROGRESS"


class JobNotFoundError(ValidationError):
    """Migration job id does not exist."""

    code = "JOB_NOT_FOUND"


class CancellationNotAllowedError(ValidationError):
    """Job is terminal or already past the start of cutover."""

    code = "CANCELLATION_NOT_ALLOWED"


class ProvisioningError(TenantShiftError):
    """Target backend could not be provisioned within the retry ceiling."""

    code = "PROVISIONING_FAILED"


class TransferError(TenantShiftError):
    """Data transfer failure."""

    code = "TRANSFER_FAILED"


class ExportError(TransferError):
    """Source data could not be read into an export package."""

    code = "EXPORT_FAILED"


class ImportBatchError(TransferError):
    """A batch could not be written to the target."""

    code = "IMPORT_BATCH_FAILED"


class TransferIntegrityError(TenantShiftError):
    """Counts, checksums or time ranges differ between source and target."""

    code = "TRANSFER_INTEGRITY_MISMATCH"


class CutoverTimeoutError(TenantShiftError):
    """New routing target was never observed within the polling ceiling."""

    code = "CUTOVER_TIMEOUT"


class CutoverError(TenantShiftError):
    """Routing record could not be updated."""

    code = "CUTOVER_FAILED"


class MigrationCancelledError(TenantShiftError):
    """Operator cancelled the job before cutover."""

    code = "MIGRATION_CANCELLED"


class RollbackFailure(TenantShiftError):
    """Rollback could not complete; operator intervention required."""

    code = "ROLLBACK_FAILED"


class ProviderError(TenantShiftError):
    """Raw backend or routing provider failure; never recorded on a job as-is."""

    code = "PROVIDER_ERROR"


class ProviderUnavailableError(ProviderError):
    """Provider endpoint unreachable or timing out."""

    code = "PROVIDER_UNAVAILABLE"


class ProviderConfigError(TenantShiftError):
    """Missing or invalid provider configuration."""

    code = "PROVIDER_CONFIG_ERROR"
