"""
Defines the runtime value model for the phpwalk evaluator.

Scalars map straight onto Python: ``None``, ``bool``, ``int``, ``float`` and
``str``. Everything else is one of the classes below: ordered arrays,
objects, closures, resources, reference slots and the completion records
that carry non-local control flow out of statement evaluation.
"""
from __future__ import annotations

import itertools
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from phpwalk.php_classes import PhpClass, FunctionDef


# =================================================================
# Errors and signals
# =================================================================

class PhpError(Exception):
    """A terminal evaluator failure (undefined function, visibility violation, ...).

    It is never consumed by a script-level ``try``/``catch`` unless the runtime is
    configured to surface engine errors as ``Error`` objects, in which case
    ``php_class`` names the throwable class to instantiate.
    """
    def __init__(self, message: str, php_class: Optional[str] = 'Error', node: Any = None):
        super().__init__(message)
        self.message = message
        self.php_class = php_class
        self.node = node
        # Call stack at the point of failure, innermost first
        self.trace = None


class ThrowSignal(Exception):
    """Unwinds a thrown language exception through Python frames of an expression."""
    def __init__(self, exception: 'PhpObject'):
        super().__init__(exception)
        self.exception = exception


class ExitSignal(Exception):
    """Unwinds ``exit``/``die`` through every frame up to the driver."""
    def __init__(self, status: int = 0):
        super().__init__(status)
        self.status = status


# =================================================================
# Completions
# =================================================================

@dataclass
class Normal:
    value: Any = None


@dataclass
class Return:
    value: Any = None


@dataclass
class Break:
    levels: int = 1


@dataclass
class Continue:
    levels: int = 1


@dataclass
class Thrown:
    exception: 'PhpObject'


@dataclass
class Exit:
    status: int = 0


NORMAL = Normal()

Completion = Normal | Return | Break | Continue | Thrown | Exit


# =================================================================
# Reference slots
# =================================================================

class Ref:
    """A shared variable slot.

    Every variable lives in a Ref; ``global``, by-reference parameters and
    ``$a = &$b`` make two names share one. Array elements and object properties
    hold plain values unless they were made references, in which case the
    container stores the Ref itself and reads go through it.
    """
    __slots__ = ('value',)

    def __init__(self, value: Any = None):
        self.value = value

    def __repr__(self):
        return f"Ref({self.value!r})"


def deref(value: Any) -> Any:
    return value.value if isinstance(value, Ref) else value


def copy_value(value: Any) -> Any:
    """Applies value semantics: arrays are copied, everything else is shared."""
    if isinstance(value, PhpArray):
        return value.copy()
    return value


# =================================================================
# Arrays
# =================================================================

_INT_KEY = re.compile(r'^(0|-?[1-9][0-9]*)$')
INT_MAX = 2 ** 63 - 1
INT_MIN = -2 ** 63


def normalize_key(key: Any) -> Any:
    """Maps an arbitrary value onto an array key (int or str)."""
    if isinstance(key, bool):
        return int(key)
    if isinstance(key, int):
        return key
    if isinstance(key, str):
        if _INT_KEY.match(key):
            n = int(key)
            if INT_MIN <= n <= INT_MAX:
                return n
        return key
    if isinstance(key, float):
        if key != key or key in (float('inf'), float('-inf')):
            return 0
        return int(key)
    if key is None:
        return ""
    if isinstance(key, Resource):
        return key.id
    raise TypeError("Illegal offset type")


class PhpArray:
    """An ordered hash map with PHP's key normalization and append semantics.

    ``next_index`` only ever grows: it is one past the largest integer key seen.
    ``pos`` is the internal cursor used by current()/next()/reset()/end().
    """
    __slots__ = ('_data', 'next_index', 'pos')

    def __init__(self, items: Optional[Dict[Any, Any]] = None):
        self._data: Dict[Any, Any] = {}
        self.next_index = 0
        self.pos = 0
        if items:
            for k, v in items.items():
                self.set(k, v)

    @classmethod
    def from_list(cls, values) -> 'PhpArray':
        arr = cls()
        for v in values:
            arr.append(v)
        return arr

    @classmethod
    def from_pairs(cls, pairs) -> 'PhpArray':
        arr = cls()
        for k, v in pairs:
            arr.set(k, v)
        return arr

    # --- Mapping protocol ---

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: Any) -> bool:
        try:
            return normalize_key(key) in self._data
        except TypeError:
            return False

    def __iter__(self) -> Iterator[Any]:
        return iter(list(self._data))

    def __repr__(self):
        return "PhpArray(%r)" % ({k: deref(v) for k, v in self._data.items()},)

    def get(self, key: Any, default: Any = None) -> Any:
        slot = self._data.get(normalize_key(key), default)
        return deref(slot)

    def raw(self, key: Any) -> Any:
        """The stored slot, which may be a Ref."""
        return self._data.get(normalize_key(key))

    def set(self, key: Any, value: Any) -> None:
        if key is None:
            self.append(value)
            return
        key = normalize_key(key)
        existing = self._data.get(key)
        if isinstance(existing, Ref) and not isinstance(value, Ref):
            existing.value = value
        else:
            self._data[key] = value
        if isinstance(key, int) and key >= self.next_index:
            self.next_index = key + 1

    def set_raw(self, key: Any, value: Any) -> None:
        """Stores ``value`` (typically a Ref) without writing through an existing ref."""
        if key is None:
            key = self.next_index
        key = normalize_key(key)
        self._data[key] = value
        if isinstance(key, int) and key >= self.next_index:
            self.next_index = key + 1

    def append(self, value: Any) -> Any:
        if self.next_index > INT_MAX:
            raise OverflowError("Cannot add element to the array as the next element is already occupied")
        key = self.next_index
        self._data[key] = value
        self.next_index = key + 1
        return key

    def unset(self, key: Any) -> None:
        key = normalize_key(key)
        if key in self._data:
            idx = list(self._data).index(key)
            del self._data[key]
            if idx < self.pos:
                self.pos -= 1

    def keys(self) -> List[Any]:
        return list(self._data)

    def values(self) -> List[Any]:
        return [deref(v) for v in self._data.values()]

    def items(self) -> List[Tuple[Any, Any]]:
        return [(k, deref(v)) for k, v in self._data.items()]

    def raw_items(self) -> List[Tuple[Any, Any]]:
        return list(self._data.items())

    def copy(self) -> 'PhpArray':
        """Copies with value semantics; nested arrays are copied, references stay shared."""
        new = PhpArray()
        for k, v in self._data.items():
            new._data[k] = v.copy() if isinstance(v, PhpArray) else v
        new.next_index = self.next_index
        new.pos = self.pos
        return new

    def is_list(self) -> bool:
        return all(k == i for i, k in enumerate(self._data))

    # --- Internal cursor ---

    def current_item(self) -> Optional[Tuple[Any, Any]]:
        if 0 <= self.pos < len(self._data):
            key = next(itertools.islice(self._data, self.pos, None))
            return key, deref(self._data[key])
        return None


# =================================================================
# Objects, closures and resources
# =================================================================

class PhpObject:
    """An instance of a user or builtin class.

    ``props`` is insertion ordered and may hold Refs. ``native`` carries
    host-side state for builtin classes (generators, ArrayIterator, ...).
    """
    def __init__(self, cls: 'PhpClass', props: Optional[Dict[str, Any]] = None, handle: int = 0):
        self.cls = cls
        self.props: Dict[str, Any] = props if props is not None else {}
        self.id = handle
        self.native: Any = None
        # Readonly properties that have been initialized once
        self.readonly_done: set = set()

    def get_prop(self, name: str, default: Any = None) -> Any:
        return deref(self.props.get(name, default))

    def set_prop(self, name: str, value: Any) -> None:
        existing = self.props.get(name)
        if isinstance(existing, Ref) and not isinstance(value, Ref):
            existing.value = value
        else:
            self.props[name] = value

    def __repr__(self):
        return f"<{self.cls.name} object #{self.id}>"


class Closure:
    """A callable value: an anonymous function, arrow function or a bound callable.

    ``bound`` maps captured variable names to values (by-value ``use``) or
    Refs (by-reference ``use``).
    """
    def __init__(self, func: 'FunctionDef', bound: Optional[Dict[str, Any]] = None,
                 this: Optional[PhpObject] = None, scope: Optional['PhpClass'] = None,
                 static_scope: Optional['PhpClass'] = None, handle: int = 0):
        self.func = func
        self.bound = bound or {}
        self.this = this
        self.scope = scope
        self.static_scope = static_scope or (this.cls if this is not None else scope)
        self.id = handle

    def __repr__(self):
        return f"<Closure {self.func.name}>"


class Resource:
    """An opaque host handle (file, stream, ...). Only builtins look inside."""
    def __init__(self, kind: str, payload: Any = None, handle: int = 0):
        self.id = handle
        self.kind = kind
        self.payload = payload
        self.closed = False

    def __repr__(self):
        return f"Resource id #{self.id}"


class Uninitialized:
    """Marks a typed property that has no value yet."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "<uninitialized>"


UNINITIALIZED = Uninitialized()
