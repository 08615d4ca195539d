"""
Closure serializer with optional HMAC signing
"""

import base64
import binascii
import hashlib
import hmac
import logging
import types
from typing import Any, Dict, List, Optional, Tuple, Union

from ..config import SerializerConfig
from ..errors import SerializationError, SignatureError
from .analyzer import ClosureAnalyzer, create_analyzer, is_function_value, mangle
from .envelope import ClosureEnvelope
from .registry import ExclusionRegistry, default_registry

log = logging.getLogger(__name__)

SIGNATURE_MARKER = b"%"
# base64 text of a 32 byte HMAC-SHA256 digest
SIGNATURE_LENGTH = 44

_SCALARS = (str, bytes, bytearray, int, float, complex, bool, type(None), type, types.ModuleType)
_PICKLE_HOOKS = ("__reduce__", "__reduce_ex__", "__getstate__")


def split_signature(payload: bytes) -> Tuple[Optional[bytes], bytes]:
    """Split a payload into (decoded signature or None, serialized closure)"""
    if payload[:1] != SIGNATURE_MARKER:
        return None, payload
    encoded = payload[1:1 + SIGNATURE_LENGTH]
    try:
        signature = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        log.debug("Discarding undecodable closure signature")
        signature = None
    return signature, payload[1 + SIGNATURE_LENGTH:]


def _has_pickle_hook(cls: type) -> bool:
    for name in _PICKLE_HOOKS:
        method = getattr(cls, name, None)
        if method is not None and method is not getattr(object, name, None):
            return True
    return False


def _object_members(obj: Any) -> List[Tuple[str, Any]]:
    members: List[Tuple[str, Any]] = []
    try:
        members.extend(vars(obj).items())
    except TypeError:
        pass
    for cls in type(obj).__mro__:
        slots = getattr(cls, "__slots__", ())
        if isinstance(slots, str):
            slots = (slots,)
        for name in slots:
            if name in ("__dict__", "__weakref__"):
                continue
            name = mangle(name, cls.__name__)
            try:
                members.append((name, getattr(obj, name)))
            except AttributeError:
                continue
    return members


class ClosureSerializer:
    """Serializes closures, signing and verifying them when a key is set."""

    def __init__(
        self,
        analyzer: Optional[ClosureAnalyzer] = None,
        signing_key: Optional[Union[str, bytes]] = None,
        registry: Optional[ExclusionRegistry] = None,
        config: Optional[SerializerConfig] = None,
    ):
        self.config = config or SerializerConfig()
        self.analyzer = analyzer or create_analyzer(
            self.config.analyzer, capture_globals=self.config.capture_globals
        )
        self.registry = registry if registry is not None else default_registry

        key = signing_key if signing_key is not None else self.config.signing_key
        self.signing_key: Optional[bytes] = key.encode("utf-8") if isinstance(key, str) else key

    # ---------- Serialization ----------
    def serialize(self, fn: Any) -> bytes:
        """
        Serialize a closure, prefixing a signature when a key is configured

        Raises:
            SerializationError: if the closure or its context cannot be serialized
        """
        envelope = ClosureEnvelope(fn, self.analyzer, self.registry)
        serialized = envelope.to_bytes(self.config.pickle_protocol)
        if serialized is None:
            raise SerializationError(
                f"Closure {envelope.function!r} could not be serialized"
            ) from envelope.last_error

        if self.signing_key:
            signature = self._calculate_signature(serialized)
            serialized = SIGNATURE_MARKER + base64.b64encode(signature) + serialized

        return serialized

    def deserialize(self, serialized: bytes) -> Any:
        """
        Verify and rebuild a closure produced by serialize

        Raises:
            SignatureError: if a key is configured and the signature is missing
                or does not match; raised before the payload is interpreted
            ReconstructionError: if the payload does not yield a function
        """
        # Strip off the signature from the front of the payload
        signature, serialized = split_signature(bytes(serialized))

        # If a key was provided, then verify the signature
        if self.signing_key:
            self.verify_signature(signature, serialized)

        envelope = ClosureEnvelope.from_bytes(serialized, self.analyzer, self.registry)
        return envelope.function

    def exclude(self, key: str, value: Any) -> None:
        """Keep context variable `key` out of payloads, restoring `value` instead"""
        self.registry.set(key, value)

    # ---------- Signatures ----------
    def _calculate_signature(self, data: bytes) -> bytes:
        return hmac.new(self.signing_key, data, hashlib.sha256).digest()

    def verify_signature(self, signature: Optional[bytes], data: bytes) -> None:
        """Raise SignatureError unless signature authenticates data"""
        if signature is None:
            raise SignatureError(
                "The serialized closure is not signed, or its signature is malformed"
            )
        if not hmac.compare_digest(signature, self._calculate_signature(data)):
            raise SignatureError(
                "The signature of the closure's data is invalid, which means the "
                "serialized closure has been modified and is unsafe to unserialize."
            )

    # ---------- Wrapping helpers ----------
    def _wrap(self, value: Any) -> Any:
        if is_function_value(value):
            return ClosureEnvelope(value, self.analyzer, self.registry)
        return value

    @staticmethod
    def _unwrap(value: Any) -> Any:
        if isinstance(value, ClosureEnvelope):
            return value.function
        return value

    def _map_top_level(self, data: Any, convert) -> Any:
        if isinstance(data, dict):
            return {key: convert(value) for key, value in data.items()}
        if isinstance(data, list):
            return [convert(value) for value in data]
        if isinstance(data, tuple):
            items = [convert(value) for value in data]
            return type(data)(*items) if hasattr(data, "_fields") else tuple(items)
        return convert(data)

    def wrap_data(self, data: Any) -> Any:
        """
        Wrap a function, or the functions directly inside a dict, list or
        tuple, in ClosureEnvelope objects. Nested containers are left alone.
        """
        return self._map_top_level(data, self._wrap)

    def unwrap_data(self, data: Any) -> Any:
        """Reverse wrap_data, returning the original function objects"""
        return self._map_top_level(data, self._unwrap)

    def wrap_closures(self, data: Any) -> Any:
        """
        Recursively traverse a value and wrap every function found in it.

        Dicts and lists are updated in place, tuples are rebuilt, and object
        attributes are replaced. Objects with their own pickling hook are
        skipped; objects defining ``__wrap_closures__(wrap)`` wrap their own
        members. Members that cannot be replaced are left unchanged.

        NOTE: this may not work in all use cases.
        """
        return self._wrap_deep(data, {})

    def _wrap_deep(self, data: Any, memo: Dict[int, Tuple[Any, Any]]) -> Any:
        if isinstance(data, ClosureEnvelope) or isinstance(data, _SCALARS):
            return data
        if is_function_value(data):
            if isinstance(data, types.MethodType):
                binding = self._wrap_deep(data.__self__, memo)
                data = types.MethodType(data.__func__, binding)
            return ClosureEnvelope(data, self.analyzer, self.registry)

        # Shared and cyclic references resolve to the same result
        if id(data) in memo:
            return memo[id(data)][1]
        # The original is kept so its id cannot be reused during the walk
        memo[id(data)] = (data, data)

        if isinstance(data, dict):
            for key, value in list(data.items()):
                data[key] = self._wrap_deep(value, memo)
            return data
        if isinstance(data, list):
            for index, value in enumerate(data):
                data[index] = self._wrap_deep(value, memo)
            return data
        if isinstance(data, tuple):
            items = [self._wrap_deep(value, memo) for value in data]
            rebuilt = type(data)(*items) if hasattr(data, "_fields") else tuple(items)
            memo[id(data)] = (data, rebuilt)
            return rebuilt
        return self._wrap_object(data, memo)

    def _wrap_object(self, obj: Any, memo: Dict[int, Tuple[Any, Any]]) -> Any:
        hook = getattr(obj, "__wrap_closures__", None)
        if callable(hook):
            hook(lambda value: self._wrap_deep(value, memo))
            return obj
        if _has_pickle_hook(type(obj)):
            return obj

        for name, value in _object_members(obj):
            wrapped = self._wrap_deep(value, memo)
            if wrapped is value:
                continue
            try:
                object.__setattr__(obj, name, wrapped)
            except (AttributeError, TypeError) as e:
                log.debug("Leaving %s.%s unwrapped: %s", type(obj).__name__, name, e)
        return obj
