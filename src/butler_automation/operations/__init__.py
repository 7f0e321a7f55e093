from .base import ADVISORY, FATAL, Operation
from .exec import ExecOperation
from .file import FileOperation
from .package import PackageOperation
from .plugin import PluginOperation
from .service import ServiceOperation

OPERATION_REGISTRY = {
    "install-package": PackageOperation,
    "render-file": FileOperation,
    "ensure-service-state": ServiceOperation,
    "install-plugin": PluginOperation,
    "run-script": ExecOperation,
}

__all__ = [
    "ADVISORY",
    "FATAL",
    "Operation",
    "ExecOperation",
    "FileOperation",
    "PackageOperation",
    "PluginOperation",
    "ServiceOperation",
    "OPERATION_REGISTRY",
]
