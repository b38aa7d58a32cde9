"""
handles.py
~~~~~~~~~~

Opaque handles and the registry that resolves them.

A handle is a pair (ptr, init_key). ``ptr`` identifies a framework object
and ``init_key`` is the registry's generation key at the time the handle
was issued. The registry owns every solver and stand-alone net; handles
never keep anything alive. reset() releases the owned objects and draws a
new key, so every handle issued before the reset fails to resolve without
the registry having to track who holds it.
"""

import logging
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Tuple, Type

import numpy as np

from caffeshim.errors import InvalidHandleError, StaleHandleError

logger = logging.getLogger(__name__)

UINT64_MAX = 2 ** 64 - 1


class Handle:
    """Host-side reference to a framework object."""

    __slots__ = ('ptr', 'init_key')

    def __init__(self, ptr: int, init_key: float):
        self.ptr = ptr
        self.init_key = init_key

    def to_dict(self) -> Dict[str, Any]:
        return {'ptr': self.ptr, 'init_key': self.init_key}

    @classmethod
    def from_value(cls, value: Any) -> 'Handle':
        """
        Accept a Handle or a {'ptr', 'init_key'} mapping.

        Raises:
            InvalidHandleError: If value does not look like a handle
        """
        if isinstance(value, Handle):
            return value
        if not isinstance(value, Mapping) or 'ptr' not in value or 'init_key' not in value:
            raise InvalidHandleError("handle must have 'ptr' and 'init_key' fields")

        ptr = value['ptr']
        if isinstance(ptr, np.ndarray) and ptr.size == 1:
            ptr = ptr.reshape(-1)[0]
        if isinstance(ptr, (bool, np.bool_)) or not isinstance(ptr, (int, np.integer)):
            raise InvalidHandleError("pointer type must be uint64")
        if not 0 <= int(ptr) <= UINT64_MAX:
            raise InvalidHandleError("pointer type must be uint64")

        try:
            init_key = float(value['init_key'])
        except (TypeError, ValueError) as e:
            raise InvalidHandleError("init_key must be a number") from e
        return cls(int(ptr), init_key)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Handle):
            return NotImplemented
        return self.ptr == other.ptr and self.init_key == other.init_key

    def __hash__(self) -> int:
        return hash((self.ptr, self.init_key))

    def __repr__(self) -> str:
        return f"Handle(ptr={self.ptr:#x}, init_key={self.init_key:g})"


class HandleRegistry:
    """
    Owns solvers and nets and translates handles back to objects.

    The pointer table holds every object a handle was issued for (solvers,
    nets, and the layers and blobs inside them); it is cleared on reset.
    """

    def __init__(self, seed: Optional[int] = None):
        self._rng = np.random.default_rng(seed)
        self.solvers: List[Any] = []
        self.nets: List[Any] = []
        self._objects: Dict[int, Any] = {}
        self.init_key = self._new_key()

    def _new_key(self, previous: Optional[float] = None) -> float:
        while True:
            key = float(self._rng.integers(0, 2 ** 32))
            if key != previous:
                return key

    # ------------------------------------------------------------------
    # ownership
    # ------------------------------------------------------------------

    def add_solver(self, solver: Any) -> Handle:
        self.solvers.append(solver)
        return self.issue(solver)

    def add_net(self, net: Any) -> Handle:
        self.nets.append(net)
        return self.issue(net)

    # ------------------------------------------------------------------
    # handle translation
    # ------------------------------------------------------------------

    def issue(self, obj: Any) -> Handle:
        """Return a handle for obj under the current key."""
        ptr = id(obj)
        self._objects[ptr] = obj
        return Handle(ptr, self.init_key)

    def issue_all(self, objs: List[Any]) -> List[Handle]:
        return [self.issue(obj) for obj in objs]

    def resolve(self, value: Any, kind: Type) -> Any:
        """
        Translate a handle to the object it stands for.

        Args:
            value: Handle or {'ptr', 'init_key'} mapping
            kind: Expected class of the object

        Raises:
            InvalidHandleError: Malformed handle, unknown pointer, or an
                object of another kind
            StaleHandleError: The handle predates the last reset
        """
        handle = Handle.from_value(value)
        if handle.init_key != self.init_key:
            raise StaleHandleError(
                "Could not convert handle to pointer due to invalid init_key. "
                "The object might have been cleared."
            )

        obj = self._objects.get(handle.ptr)
        if obj is None:
            raise InvalidHandleError(f"{handle!r} does not refer to a live object")
        if not isinstance(obj, kind):
            raise InvalidHandleError(
                f"{handle!r} refers to a {type(obj).__name__}, expected a {kind.__name__}"
            )
        return obj

    def reset(self) -> Tuple[int, int]:
        """
        Release every owned object and invalidate all issued handles.

        Returns:
            (number of solvers cleared, number of nets cleared)
        """
        cleared = (len(self.solvers), len(self.nets))
        self.solvers.clear()
        self.nets.clear()
        self._objects.clear()
        self.init_key = self._new_key(previous=self.init_key)

        logger.info(f"Cleared {cleared[0]} solvers and {cleared[1]} stand-alone nets")
        return cleared


# Global registry instance
_registry: Optional[HandleRegistry] = None


def get_registry() -> HandleRegistry:
    """
    Get or create the global registry instance.

    Returns:
        HandleRegistry: The process-wide registry
    """
    global _registry
    if _registry is None:
        _registry = HandleRegistry()
    return _registry
