"""Session data model: the value bag, the response cookie and the session."""

from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Tuple

FLASHES_KEY = "_flashes"


class Values(dict):
    """Weakly-typed property bag holding a session's application data.

    Plain ``dict`` access works as usual. The typed accessors never raise:
    ``lookup_*`` returns ``(value, matched)`` and ``get_*`` returns the zero
    value of the type when the key is absent or holds another type.
    """

    def _lookup(self, key: str, kind: type, zero: Any) -> Tuple[Any, bool]:
        val = self.get(key)
        # bool is an int subclass; keep the two apart
        if isinstance(val, kind) and (kind is bool or not isinstance(val, bool)):
            return val, True
        return zero, False

    def lookup_str(self, key: str) -> Tuple[str, bool]:
        return self._lookup(key, str, "")

    def lookup_int(self, key: str) -> Tuple[int, bool]:
        return self._lookup(key, int, 0)

    def lookup_float(self, key: str) -> Tuple[float, bool]:
        return self._lookup(key, float, 0.0)

    def lookup_bool(self, key: str) -> Tuple[bool, bool]:
        return self._lookup(key, bool, False)

    def get_str(self, key: str) -> str:
        return self.lookup_str(key)[0]

    def get_int(self, key: str) -> int:
        return self.lookup_int(key)[0]

    def get_float(self, key: str) -> float:
        return self.lookup_float(key)[0]

    def get_bool(self, key: str) -> bool:
        return self.lookup_bool(key)[0]

    def set_str(self, key: str, val: str) -> None:
        self[key] = val

    def set_int(self, key: str, val: int) -> None:
        self[key] = val

    def set_float(self, key: str, val: float) -> None:
        self[key] = val

    def set_bool(self, key: str, val: bool) -> None:
        self[key] = val


@dataclass(frozen=True)
class Cookie:
    """Attributes of the session cookie written to the client."""
    name: str
    value: str = ""
    path: str = "/"
    max_age: Optional[int] = 60 * 30
    domain: Optional[str] = None
    secure: bool = False
    httponly: bool = False
    samesite: Optional[str] = "lax"

    def with_value(self, value: str) -> "Cookie":
        """Return a copy of this cookie carrying `value`."""
        return replace(self, value=value)


@dataclass
class Session:
    """One client's server-side state, keyed by `key`."""
    key: str
    values: Values = field(default_factory=Values)
    cookie: Optional[Cookie] = None

    def add_flash(self, msg: Any) -> None:
        """Append a one-time message under the reserved flashes key."""
        flashes = self.values.get(FLASHES_KEY)
        if not isinstance(flashes, list):
            flashes = []
        flashes.append(msg)
        self.values[FLASHES_KEY] = flashes

    def flashes(self) -> List[Any]:
        """Remove and return pending flash messages in insertion order."""
        flashes = self.values.get(FLASHES_KEY)
        if not isinstance(flashes, list):
            return []
        del self.values[FLASHES_KEY]
        return flashes
