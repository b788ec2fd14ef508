"""
Call binding: maps call-site arguments onto a function's parameters.
"""
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, TYPE_CHECKING

from phpwalk.php_datatypes import (
    PhpArray, PhpObject, Closure, PhpError, Ref, copy_value,
)
from phpwalk.php_operators import debug_type, numeric_value, to_bool, to_str

if TYPE_CHECKING:
    from phpwalk.php_classes import FunctionDef, PhpClass
    from phpwalk.php_environment import Environment
    from phpwalk.php_interpreter import Evaluator

_UNBOUND = object()


@dataclass
class CallArg:
    """One evaluated call-site argument. ``ref`` is set when it was passed by reference."""
    value: Any
    name: Optional[str] = None
    ref: Optional[Ref] = None


class CallBinder:
    """Binds positional, named, spread and variadic arguments, applying defaults and type checks."""

    def __init__(self, evaluator: 'Evaluator'):
        self.evaluator = evaluator

    def bind(self, func: 'FunctionDef', args: List[CallArg], env: 'Environment',
             strict: bool = False) -> List[Any]:
        """Binds ``args`` into ``env`` and returns the bound values in parameter order."""
        params = func.params
        index = func.param_index()
        variadic = params[-1] if params and params[-1].variadic else None
        fixed = len(params) - (1 if variadic else 0)
        slots: List[Any] = [_UNBOUND] * fixed
        extra = PhpArray()
        passed: List[Any] = []
        pos = 0
        seen_named = False

        for arg in args:
            if arg.name is None:
                if seen_named:
                    raise PhpError("Cannot use positional argument after named argument")
                passed.append(arg.value)
                if pos < fixed:
                    slots[pos] = arg
                    pos += 1
                elif variadic is not None:
                    extra.append(arg.ref if (variadic.by_ref and arg.ref) else arg.value)
                continue
            seen_named = True
            i = index.get(arg.name)
            if i is None or i >= fixed:
                if variadic is not None:
                    extra.set(arg.name, arg.value)
                    continue
                raise PhpError(f"Unknown named parameter ${arg.name}")
            if slots[i] is not _UNBOUND:
                raise PhpError(f"Named parameter ${arg.name} overwrites previous argument")
            slots[i] = arg

        bound: List[Any] = []
        for i, param in enumerate(params[:fixed]):
            arg = slots[i]
            if arg is _UNBOUND:
                if param.has_default:
                    value = copy_value(param.default)
                    env.vars[param.name] = Ref(value)
                    bound.append(value)
                    continue
                if seen_named:
                    raise PhpError(f"{func.display_name}: Argument #{i + 1} (${param.name}) not passed",
                                   'ArgumentCountError')
                required = sum(1 for p in params[:fixed] if not p.has_default)
                qualifier = 'exactly' if required == len(params) else 'at least'
                raise PhpError(
                    f"Too few arguments to function {func.display_name}, {len(passed)} passed "
                    f"and {qualifier} {required} expected", 'ArgumentCountError'
                )
            value = arg.value
            if param.type:
                value = self.check_param(func, i, param, value, strict)
            if param.by_ref and arg.ref is not None:
                if value is not arg.ref.value:
                    arg.ref.value = value
                env.bind_ref(param.name, arg.ref)
            else:
                value = copy_value(value)
                env.vars[param.name] = Ref(value)
            bound.append(value)

        if variadic is not None:
            if variadic.type:
                for key, value in extra.items():
                    extra.set(key, self.check_param(func, len(params) - 1, variadic, value, strict))
            env.vars[variadic.name] = Ref(extra)
            bound.append(extra)

        env.args = passed
        return bound

    # --- Types ---

    def check_param(self, func: 'FunctionDef', i: int, param, value: Any, strict: bool) -> Any:
        ok, coerced = self.matches(value, param.type, func.cls, strict)
        if ok:
            return coerced
        raise PhpError(
            f"{func.display_name}: Argument #{i + 1} (${param.name}) must be of type "
            f"{param.type}, {debug_type(value)} given", 'TypeError'
        )

    def check_return(self, func: 'FunctionDef', value: Any, strict: bool) -> Any:
        rtype = func.return_type
        if not rtype or rtype in ('void', 'never') or func.is_generator:
            return value
        ok, coerced = self.matches(value, rtype, func.cls, strict)
        if ok:
            return coerced
        raise PhpError(
            f"{func.display_name}: Return value must be of type {rtype}, {debug_type(value)} returned",
            'TypeError'
        )

    def check_property(self, prop, value: Any, strict: bool) -> Any:
        ok, coerced = self.matches(value, prop.type, prop.cls, strict)
        if ok:
            return coerced
        raise PhpError(
            f"Cannot assign {debug_type(value)} to property {prop.cls.name}::${prop.name} "
            f"of type {prop.type}", 'TypeError'
        )

    def matches(self, value: Any, type_str: str, cls: Optional['PhpClass'], strict: bool) -> Tuple[bool, Any]:
        nullable = type_str.startswith('?')
        body = type_str[1:] if nullable else type_str
        if value is None and nullable:
            return True, None
        if '&' in body and '|' not in body:
            parts = body.split('&')
            return all(self._exact(value, p, cls) for p in parts), value
        parts = body.split('|')
        for part in parts:
            if self._exact(value, part, cls):
                return True, value
        # int widens to float even under strict typing
        if isinstance(value, int) and not isinstance(value, bool) and 'float' in parts:
            return True, float(value)
        if strict:
            return False, value
        for part in ('int', 'float', 'string', 'bool'):
            if part in parts:
                ok, coerced = self._coerce(value, part)
                if ok:
                    return True, coerced
        return False, value

    def _exact(self, value: Any, part: str, cls: Optional['PhpClass']) -> bool:
        match part:
            case 'mixed':
                return True
            case 'null' | 'void':
                return value is None
            case 'int':
                return isinstance(value, int) and not isinstance(value, bool)
            case 'float':
                return isinstance(value, float)
            case 'string':
                return isinstance(value, str)
            case 'bool':
                return isinstance(value, bool)
            case 'false':
                return value is False
            case 'true':
                return value is True
            case 'array':
                return isinstance(value, PhpArray)
            case 'iterable':
                return isinstance(value, PhpArray) or (
                    isinstance(value, PhpObject) and value.cls.instanceof('Traversable'))
            case 'callable':
                return self.evaluator.is_callable(value)
            case 'object':
                return isinstance(value, (PhpObject, Closure))
            case 'self' | 'static':
                return isinstance(value, PhpObject) and cls is not None and \
                    value.cls.is_subclass_of(cls)
            case 'parent':
                return isinstance(value, PhpObject) and cls is not None and \
                    cls.parent is not None and value.cls.is_subclass_of(cls.parent)
            case _:
                if isinstance(value, Closure):
                    return part.lower() in ('closure', 'callable')
                return isinstance(value, PhpObject) and self.evaluator.class_matches(value.cls, part)

    def _coerce(self, value: Any, part: str) -> Tuple[bool, Any]:
        if value is None or not isinstance(value, (bool, int, float, str)):
            return False, value
        match part:
            case 'int':
                if isinstance(value, float):
                    if value != value or value in (float('inf'), float('-inf')):
                        return False, value
                    return value == int(value), int(value)
                if isinstance(value, str):
                    n = numeric_value(value)
                    if isinstance(n, int):
                        return True, n
                    if isinstance(n, float) and n == int(n):
                        return True, int(n)
                    return False, value
                return True, int(value)
            case 'float':
                if isinstance(value, str):
                    n = numeric_value(value)
                    return (True, float(n)) if n is not None else (False, value)
                return True, float(value)
            case 'string':
                return True, to_str(value)
            case 'bool':
                return True, to_bool(value)
        return False, value


@dataclass
class Callee:
    """A resolved call target.

    Exactly one of ``func`` (a user or native function) and ``builtin`` (a
    host callable from the builtin table) is set. ``magic_name`` is the
    requested method name when the call is routed through ``__call`` or
    ``__callStatic``.
    """
    func: Optional['FunctionDef'] = None
    builtin: Optional[Any] = None
    name: str = ''
    this: Optional[PhpObject] = None
    static_cls: Optional['PhpClass'] = None
    closure: Optional[Closure] = None
    magic_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.func is not None:
            return self.func.qualified_name
        return self.name

    def by_ref_at(self, position: int, name: Optional[str] = None) -> bool:
        """True when the argument at ``position`` (or named ``name``) is taken by reference."""
        if self.magic_name is not None:
            return False
        if self.builtin is not None:
            return position in getattr(self.builtin, '_php_byref', ())
        if self.func is None:
            return False
        params = self.func.params
        if name is not None:
            for p in params:
                if p.name == name:
                    return p.by_ref
            return False
        if position < len(params):
            return params[position].by_ref
        return bool(params) and params[-1].variadic and params[-1].by_ref
