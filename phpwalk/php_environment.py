"""
Variable scopes and the declaration registry.

An Environment is one call frame's variable table. Frames do not see their
caller's locals: the parent link only ties every frame back to the single
global Environment, which is where ``global`` imports and superglobals are
resolved. Functions, classes and constants live in one flat Registry owned by
the evaluator, so independent evaluators never share declarations.
"""
import itertools
from typing import Any, Dict, Optional, Tuple, TYPE_CHECKING

from phpwalk.php_datatypes import Ref, PhpArray, PhpError, copy_value
from phpwalk.php_namespaces import NamespaceResolver

if TYPE_CHECKING:
    from phpwalk.php_classes import PhpClass, FunctionDef
    from phpwalk.php_generators import GeneratorRunner

SUPERGLOBALS = frozenset({
    'GLOBALS', '_SERVER', '_GET', '_POST', '_COOKIE', '_FILES', '_ENV', '_REQUEST', '_SESSION',
})


class Environment:
    """A variable scope with a parent chain ending at the global Environment."""

    def __init__(self, parent: Optional['Environment'] = None, registry: Optional['Registry'] = None):
        self.vars: Dict[str, Ref] = {}
        self.parent = parent
        self.global_env: 'Environment' = parent.global_env if parent is not None else self
        self.registry = registry if registry is not None else (parent.registry if parent else Registry())
        # Call context
        self.this = None
        self.current_class: Optional['PhpClass'] = None
        self.static_class: Optional['PhpClass'] = None
        self.function: Optional['FunctionDef'] = None
        self.generator: Optional['GeneratorRunner'] = None
        self.args: list = []
        # Name resolution context; call frames get the callee's declaring namespace
        self.ns: NamespaceResolver = parent.global_env.ns if parent is not None else NamespaceResolver()

    @property
    def is_global(self) -> bool:
        return self.global_env is self

    def new_enclosed(self) -> 'Environment':
        """A fresh call-frame scope. It does not inherit this scope's variables."""
        return Environment(parent=self.global_env)

    def _lookup(self, name: str) -> Optional[Ref]:
        ref = self.vars.get(name)
        if ref is None and name in SUPERGLOBALS and not self.is_global:
            ref = self.global_env.vars.get(name)
        return ref

    def get(self, name: str) -> Tuple[Any, bool]:
        if name == 'GLOBALS':
            return self.globals_array(), True
        ref = self._lookup(name)
        if ref is None:
            return None, False
        return ref.value, True

    def set(self, name: str, value: Any) -> None:
        if name == 'this':
            raise PhpError("Cannot re-assign $this")
        ref = self._lookup(name)
        if ref is None:
            self.vars[name] = Ref(value)
        else:
            ref.value = value

    def ref(self, name: str) -> Ref:
        """The slot for ``name``, created (holding null) when missing."""
        ref = self._lookup(name)
        if ref is None:
            ref = self.vars[name] = Ref(None)
        return ref

    def bind_ref(self, name: str, ref: Ref) -> None:
        self.vars[name] = ref

    def unset(self, name: str) -> None:
        self.vars.pop(name, None)

    def isset(self, name: str) -> bool:
        value, found = self.get(name)
        return found and value is not None

    def import_global(self, name: str) -> None:
        """Links ``name`` to the global slot (the ``global`` keyword)."""
        if self.is_global:
            return
        self.vars[name] = self.global_env.ref(name)

    def globals_array(self) -> PhpArray:
        """A ``$GLOBALS`` view whose elements alias the global slots."""
        arr = PhpArray()
        for name, ref in self.global_env.vars.items():
            if name != 'GLOBALS':
                arr.set_raw(name, ref)
        return arr

    def defined_vars(self) -> PhpArray:
        return PhpArray.from_pairs((k, copy_value(r.value)) for k, r in self.vars.items() if k != 'this')


class Registry:
    """The flat declaration space: functions, classes/interfaces/traits/enums and constants.

    Function and class names are case-insensitive and stored lower-cased;
    constants are case-sensitive. Declarations found by the hoisting pass wait
    in ``pending_*`` until first use or until their statement executes.
    """

    def __init__(self):
        self.functions: Dict[str, 'FunctionDef'] = {}
        self.classes: Dict[str, 'PhpClass'] = {}
        self.constants: Dict[str, Any] = {}
        self.pending_functions: Dict[str, tuple] = {}
        self.pending_classes: Dict[str, tuple] = {}
        # Object and resource handles are numbered per run
        self._object_ids = itertools.count(1)
        self._resource_ids = itertools.count(1)

    def object_handle(self) -> int:
        return next(self._object_ids)

    def resource_handle(self) -> int:
        return next(self._resource_ids)

    @staticmethod
    def _key(name: str) -> str:
        return name.lstrip('\\').lower()

    def find_function(self, name: str) -> Optional['FunctionDef']:
        return self.functions.get(self._key(name))

    def add_function(self, name: str, func: 'FunctionDef') -> None:
        key = self._key(name)
        if key in self.functions:
            raise PhpError(f"Cannot redeclare {name}()")
        self.functions[key] = func

    def find_class(self, name: str) -> Optional['PhpClass']:
        return self.classes.get(self._key(name))

    def add_class(self, cls: 'PhpClass') -> None:
        key = self._key(cls.name)
        if key in self.classes:
            raise PhpError(f"Cannot declare {cls.kind} {cls.name}, because the name is already in use")
        self.classes[key] = cls

    def has_constant(self, name: str) -> bool:
        return name.lstrip('\\') in self.constants

    def get_constant(self, name: str) -> Any:
        return self.constants[name.lstrip('\\')]

    def define_constant(self, name: str, value: Any) -> bool:
        """Defines a constant once. Returns False when it already exists."""
        name = name.lstrip('\\')
        if name in self.constants:
            return False
        self.constants[name] = value
        return True
