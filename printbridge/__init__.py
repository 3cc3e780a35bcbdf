"""Local gateway bridging networked 3D printers to the remote control plane."""

from importlib import import_module
from typing import TYPE_CHECKING, Any

__version__ = "1.0.3"

__all__ = [
    "app",
    "backoff",
    "camera",
    "cloud_channel",
    "commands",
    "connection",
    "registry",
    "supervisor",
    "telemetry",
    "tunnel",
]

if TYPE_CHECKING:  # pragma: no cover - imported only for typing support
    from . import app as appModule
    from . import telemetry as telemetryModule


def __getattr__(name: str) -> Any:
    """Lazily expose submodules to avoid circular import issues."""
    if name in __all__:
        lazyModule = import_module(f".{name}", __name__)
        globals()[name] = lazyModule
        return lazyModule
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:
    """Include lazily exposed attributes in dir(printbridge)."""
    return sorted(set(globals()) | set(__all__))
