"""
Registry of captured values kept out of serialized payloads
"""

from typing import Any, Dict, Iterator


class ExclusionRegistry:
    """Maps context variable names to values restored on reconstruction.

    A closure context entry whose name is registered here is written as an
    EXCLUDE marker instead of its value, and the value registered under the
    same name on the receiving side is spliced back in. Populate it before
    deserializing; it is not locked.
    """

    def __init__(self):
        self._values: Dict[str, Any] = {}

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def get(self, key: str) -> Any:
        """Return the value registered under key, raising KeyError if absent"""
        return self._values[key]

    def remove(self, key: str) -> None:
        self._values.pop(key, None)

    def clear(self) -> None:
        self._values.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)


# Process-wide registry used when none is passed explicitly
default_registry = ExclusionRegistry()
