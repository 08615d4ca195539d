"""
Configuration model for closure serializers.
"""

import os
from typing import Optional

from pydantic import BaseModel


def _flag_from_env(var: str, default: bool = False) -> bool:
    raw = os.environ.get(var)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class SerializerConfig(BaseModel):
    """Runtime configuration for a ClosureSerializer."""

    signing_key: Optional[str] = None
    capture_globals: bool = False
    analyzer: str = "source"
    pickle_protocol: Optional[int] = None

    @classmethod
    def from_env(cls) -> "SerializerConfig":
        """Build a configuration from CLOSUREPACK_* environment variables"""
        return cls(
            signing_key=os.environ.get("CLOSUREPACK_SIGNING_KEY") or None,
            capture_globals=_flag_from_env("CLOSUREPACK_CAPTURE_GLOBALS"),
            analyzer=os.environ.get("CLOSUREPACK_ANALYZER", "source"),
        )
