from __future__ import annotations

from typing import Callable

from tenantshift.core.config import get_settings
from tenantshift.core.errors import ProviderConfigError
from tenantshift.domain.types import BackendKind
from tenantshift.providers.backends.base import BackendAdapter
from tenantshift.providers.backends.dedicated_instance import DedicatedInstanceBackend
from tenantshift.providers.backends.local import LocalInfrastructure, get_local_infrastructure
from tenantshift.providers.backends.shared_cluster import SharedClusterBackend


_BACKENDS: dict[BackendKind, Callable[[LocalInfrastructure], BackendAdapter]] = {
    BackendKind.SHARED_CLUSTER: SharedClusterBackend,
    BackendKind.DEDICATED_INSTANCE: DedicatedInstanceBackend,
}

_DRIVERS: dict[str, Callable[[], LocalInfrastructure]] = {
    "local": get_local_infrastructure,
}


def get_backend(kind: BackendKind | str) -> BackendAdapter:
    settings = get_settings()
    driver = _DRIVERS.get(settings.backend_driver)
    if driver is None:
        raise ProviderConfigError(f"Unsupported backend driver: {settings.backend_driver}")
    try:
        backend_cls = _BACKENDS.get(BackendKind(kind))
    except ValueError:
        backend_cls = None
    if backend_cls is None:
        raise ProviderConfigError(f"Unsupported backend kind: {kind}")
    return backend_cls(driver())
