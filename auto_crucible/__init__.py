"""
Auto-Crucible - adaptive triage + validation engine
"""

__version__ = "1.0.0"

__all__ = [
    "CrucibleEngine",
    "Mode",
    "Request",
    "Settings",
    "Tier",
    "__version__",
]


def __getattr__(name: str):
    """Lazy import to avoid import-time side effects."""
    if name == "CrucibleEngine":
        from .engine import CrucibleEngine
        return CrucibleEngine
    elif name in ("Mode", "Request", "Tier"):
        from . import models
        return getattr(models, name)
    elif name == "Settings":
        from auto_crucible.config.settings import Settings
        return Settings
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
