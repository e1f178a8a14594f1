from bootstrap_engine.adapters.base import (
    AdapterFailure,
    AdapterResult,
    AdapterSuccess,
    classify_status,
)
from bootstrap_engine.adapters.database import DatabaseProvisioningAdapter
from bootstrap_engine.adapters.health import DeploymentHealthAdapter
from bootstrap_engine.adapters.hosting import HostingAdapter, preview_url_from_deployment
from bootstrap_engine.adapters.source_control import SourceControlAdapter

__all__ = [
    "AdapterFailure",
    "AdapterResult",
    "AdapterSuccess",
    "DatabaseProvisioningAdapter",
    "DeploymentHealthAdapter",
    "HostingAdapter",
    "SourceControlAdapter",
    "classify_status",
    "preview_url_from_deployment",
]
