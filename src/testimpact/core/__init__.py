"""Impact analysis engine: git storage, report codec, analyzer and coordination server."""

from testimpact.core.settings import settings

__all__ = [
    "settings",
]
