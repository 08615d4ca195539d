"""
Byte encoding of closure descriptors
"""

import sys
from typing import Optional

import cloudpickle

from ..errors import ReconstructionError, SerializationError
from ..schema.models import FunctionDescriptor


def _env_info() -> str:
    """Return a concise runtime environment string for diagnostics"""
    return f"python={sys.version.split()[0]} cloudpickle={getattr(cloudpickle, '__version__', 'unknown')}"


def get_runtime_info() -> str:
    """Public helper to expose runtime info to other modules"""
    return _env_info()


def dump_descriptor(descriptor: FunctionDescriptor, protocol: Optional[int] = None) -> bytes:
    """Serialize a projected descriptor tree using cloudpickle"""
    try:
        return cloudpickle.dumps(descriptor, protocol=protocol)
    except Exception as e:
        raise SerializationError(
            f"Failed to serialize closure data ({_env_info()}): {e}"
        ) from e


def load_descriptor(data: bytes) -> FunctionDescriptor:
    """Deserialize a descriptor tree using cloudpickle"""
    try:
        descriptor = cloudpickle.loads(data)
    except Exception as e:
        raise ReconstructionError(
            f"Failed to deserialize closure data ({_env_info()}): {e}"
        ) from e

    if not isinstance(descriptor, FunctionDescriptor):
        raise ReconstructionError(
            f"Serialized data holds {type(descriptor).__name__}, not a closure descriptor"
        )
    return descriptor


def hex_to_bytes(hex_str: str) -> bytes:
    """Convert hex string back to bytes"""
    return bytes.fromhex(hex_str)


def bytes_to_hex(data_bytes: bytes) -> str:
    """Convert bytes to hex string"""
    return data_bytes.hex()
