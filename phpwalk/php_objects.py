"""
Object model operations: instantiation, property access with visibility,
readonly and magic-method fallbacks, cloning, class constants, static
properties and method resolution.
"""
import copy
from typing import Any, List, Optional, Tuple, TYPE_CHECKING

from phpwalk.php_binder import CallArg, Callee
from phpwalk.php_classes import PhpClass, PropertyDef, can_access, scope_label
from phpwalk.php_datatypes import (
    PhpArray, PhpObject, Closure, PhpError, Ref, UNINITIALIZED, copy_value, deref,
)
from phpwalk.php_operators import debug_type, to_bool

if TYPE_CHECKING:
    from phpwalk.php_environment import Environment
    from phpwalk.php_interpreter import Evaluator

_CLOSURE_METHODS = frozenset({'call', 'bindto', 'bind', 'fromcallable'})


class ObjectModel:
    def __init__(self, evaluator: 'Evaluator'):
        self.evaluator = evaluator
        # (object id, hook, property) triples currently inside a magic accessor
        self._guards: set = set()

    # =================================================================
    # Instantiation
    # =================================================================

    def check_instantiable(self, cls: PhpClass) -> None:
        match cls.kind:
            case 'interface' | 'trait' | 'enum':
                raise PhpError(f"Cannot instantiate {cls.kind} {cls.name}")
        if cls.abstract:
            raise PhpError(f"Cannot instantiate abstract class {cls.name}")

    def create(self, cls: PhpClass) -> PhpObject:
        """A new instance with property defaults; the constructor is not run."""
        obj = PhpObject(cls, handle=self.evaluator.registry.object_handle())
        for name, prop in cls.props.items():
            obj.props[name] = copy_value(prop.default)
        if cls.instanceof('Throwable'):
            ev = self.evaluator
            obj.props['file'] = ev.script_name
            obj.props['line'] = ev._current_line() or 0
            obj.native = {'trace': ev.stack_trace()}
        return obj

    def constructor(self, cls: PhpClass, env: 'Environment'):
        ctor = cls.find_method('__construct')
        if ctor is not None and not self._method_visible(ctor, env.current_class):
            raise PhpError(f"Call to {ctor.visibility} {cls.name}::__construct() from "
                           f"{scope_label(env.current_class)}")
        return ctor

    def init_promoted(self, obj: PhpObject, param, value: Any) -> None:
        obj.set_prop(param.name, copy_value(value))
        decl = obj.cls.props.get(param.name)
        if decl is not None and decl.readonly:
            obj.readonly_done.add(param.name)

    # =================================================================
    # Instance properties
    # =================================================================

    def _declared(self, obj: PhpObject, name: str) -> Optional[PropertyDef]:
        return obj.cls.props.get(name)

    def visible_props(self, obj: PhpObject, env: 'Environment') -> List[Tuple[str, Any]]:
        """Initialized properties visible from the calling scope, in declaration order."""
        pairs = []
        for name, slot in list(obj.props.items()):
            value = deref(slot)
            if value is UNINITIALIZED:
                continue
            decl = self._declared(obj, name)
            if decl is not None and not can_access(decl.cls, decl.visibility, env.current_class):
                continue
            pairs.append((name, value))
        return pairs

    async def _magic(self, obj: PhpObject, hook: str, name: str, env: 'Environment', extra=()):
        """Calls ``hook`` unless it is already running for this object and property."""
        method = obj.cls.find_method(hook)
        key = (obj.id, hook, name)
        if method is None or key in self._guards:
            return False, None
        self._guards.add(key)
        try:
            args = [CallArg(name)] + [CallArg(v) for v in extra]
            return True, await self.evaluator.call_function(method, args, env, this=obj)
        finally:
            self._guards.discard(key)

    async def get_prop(self, obj, name: str, env: 'Environment', quiet: bool = False) -> Any:
        ev = self.evaluator
        if not isinstance(obj, PhpObject):
            if isinstance(obj, Closure):
                raise PhpError("Closure object cannot have properties")
            if not quiet:
                ev.warn(f'Attempt to read property "{name}" on {debug_type(obj)}')
            return None
        decl = self._declared(obj, name)
        if decl is not None and not can_access(decl.cls, decl.visibility, env.current_class):
            handled, value = await self._magic(obj, '__get', name, env)
            if handled:
                return value
            raise PhpError(f"Cannot access {decl.visibility} property {obj.cls.name}::${name}")
        if name in obj.props:
            value = obj.get_prop(name)
            if value is UNINITIALIZED:
                if quiet:
                    return None
                raise PhpError(f"Typed property {decl.cls.name}::${name} must not be accessed "
                               f"before initialization")
            return value
        handled, value = await self._magic(obj, '__get', name, env)
        if handled:
            return value
        if not quiet:
            ev.warn(f"Undefined property: {obj.cls.name}::${name}")
        return None

    async def set_prop(self, obj, name: str, value: Any, env: 'Environment') -> Any:
        ev = self.evaluator
        if not isinstance(obj, PhpObject):
            raise PhpError(f'Attempt to assign property "{name}" on {debug_type(obj)}')
        if obj.cls.kind == 'enum':
            raise PhpError(f"Cannot modify readonly property {obj.cls.name}::${name}")
        decl = self._declared(obj, name)
        scope = env.current_class
        if decl is not None:
            if not can_access(decl.cls, decl.visibility, scope):
                handled, _ = await self._magic(obj, '__set', name, env, (value,))
                if handled:
                    return value
                raise PhpError(f"Cannot modify {decl.visibility} property {obj.cls.name}::${name}")
            if decl.readonly:
                if name in obj.readonly_done:
                    raise PhpError(f"Cannot modify readonly property {obj.cls.name}::${name}")
                if scope is not decl.cls:
                    raise PhpError(f"Cannot initialize readonly property {obj.cls.name}::${name} "
                                   f"from {scope_label(scope)}")
            if decl.type:
                value = ev.binder.check_property(decl, value, ev.strict_types)
            obj.set_prop(name, value)
            if decl.readonly:
                obj.readonly_done.add(name)
            return value
        if name not in obj.props:
            handled, _ = await self._magic(obj, '__set', name, env, (value,))
            if handled:
                return value
        obj.set_prop(name, value)
        return value

    def _check_writable(self, obj, name: str, env: 'Environment') -> Optional[PropertyDef]:
        if not isinstance(obj, PhpObject):
            raise PhpError(f'Attempt to modify property "{name}" on {debug_type(obj)}')
        decl = self._declared(obj, name)
        if decl is not None:
            if not can_access(decl.cls, decl.visibility, env.current_class):
                raise PhpError(f"Cannot modify {decl.visibility} property {obj.cls.name}::${name}")
            if decl.readonly and (name in obj.readonly_done or obj.cls.kind == 'enum'):
                raise PhpError(f"Cannot modify readonly property {obj.cls.name}::${name}")
        return decl

    async def prop_for_write(self, obj, name: str, env: 'Environment') -> Any:
        """The value held by a property, for in-place modification (``$o->a[] = 1``)."""
        self._check_writable(obj, name, env)
        if name not in obj.props:
            handled, value = await self._magic(obj, '__get', name, env)
            if handled:
                return value
        value = obj.get_prop(name)
        if value is None or value is UNINITIALIZED or value is False:
            value = PhpArray()
            obj.set_prop(name, value)
        return value

    async def prop_ref(self, obj, name: str, env: 'Environment') -> Ref:
        self._check_writable(obj, name, env)
        slot = obj.props.get(name)
        if isinstance(slot, Ref):
            return slot
        ref = Ref(None if slot is UNINITIALIZED else slot)
        obj.props[name] = ref
        return ref

    def bind_prop(self, obj, name: str, ref: Ref, env: 'Environment') -> None:
        self._check_writable(obj, name, env)
        obj.props[name] = ref

    async def isset_prop(self, obj, name: str, env: 'Environment') -> bool:
        if not isinstance(obj, PhpObject):
            return False
        decl = self._declared(obj, name)
        visible = decl is None or can_access(decl.cls, decl.visibility, env.current_class)
        if visible and name in obj.props:
            value = obj.get_prop(name)
            return value is not None and value is not UNINITIALIZED
        handled, value = await self._magic(obj, '__isset', name, env)
        return handled and to_bool(value)

    async def unset_prop(self, obj, name: str, env: 'Environment') -> None:
        if not isinstance(obj, PhpObject):
            return
        decl = self._declared(obj, name)
        if decl is not None:
            if not can_access(decl.cls, decl.visibility, env.current_class):
                handled, _ = await self._magic(obj, '__unset', name, env)
                if handled:
                    return
                raise PhpError(f"Cannot unset {decl.visibility} property {obj.cls.name}::${name}")
            if decl.readonly:
                raise PhpError(f"Cannot unset readonly property {obj.cls.name}::${name}")
        if name in obj.props:
            del obj.props[name]
            return
        await self._magic(obj, '__unset', name, env)

    # =================================================================
    # Cloning
    # =================================================================

    async def clone(self, obj, env: 'Environment') -> Any:
        if isinstance(obj, Closure):
            return Closure(obj.func, dict(obj.bound), obj.this, obj.scope, obj.static_scope,
                           handle=self.evaluator.registry.object_handle())
        if not isinstance(obj, PhpObject):
            raise PhpError("__clone method called on non-object")
        if obj.cls.kind == 'enum' or obj.cls.instanceof('Generator'):
            raise PhpError(f"Trying to clone an uncloneable object of class {obj.cls.name}")
        new = PhpObject(obj.cls, handle=self.evaluator.registry.object_handle())
        for name, slot in obj.props.items():
            new.props[name] = slot if isinstance(slot, Ref) else copy_value(slot)
        new.native = copy.copy(obj.native)
        hook = obj.cls.find_method('__clone')
        if hook is not None:
            if not self._method_visible(hook, env.current_class):
                raise PhpError(f"Call to {hook.visibility} {obj.cls.name}::__clone() from "
                               f"{scope_label(env.current_class)}")
            # Readonly properties may be reinitialized inside __clone
            await self.evaluator.call_function(hook, [], env, this=new)
        new.readonly_done |= obj.readonly_done
        return new

    # =================================================================
    # Class constants and static properties
    # =================================================================

    async def class_constant(self, cls: PhpClass, name: str, env: 'Environment') -> Any:
        const = cls.constants.get(name)
        if const is None:
            raise PhpError(f"Undefined constant {cls.name}::{name}")
        if not can_access(const.cls, const.visibility, env.current_class):
            raise PhpError(f"Cannot access {const.visibility} constant {cls.name}::{name}")
        if not const.evaluated:
            if const.evaluating:
                raise PhpError(f"Cannot declare self-referencing constant {const.cls.name}::{name}")
            const.evaluating = True
            try:
                const.value = await self.evaluator.eval_in_class(const.expr, const.cls)
            finally:
                const.evaluating = False
            const.evaluated = True
        return const.value

    def static_slot(self, cls: PhpClass, name: str, env: 'Environment',
                    quiet: bool = False) -> Tuple[Optional[Ref], Optional[PropertyDef]]:
        ref, prop = cls.find_static(name)
        if ref is None:
            if quiet:
                return None, None
            raise PhpError(f"Access to undeclared static property {cls.name}::${name}")
        if not can_access(prop.cls, prop.visibility, env.current_class):
            raise PhpError(f"Cannot access {prop.visibility} property {cls.name}::${name}")
        return ref, prop

    # =================================================================
    # Method resolution
    # =================================================================

    def _method_visible(self, method, scope: Optional[PhpClass]) -> bool:
        if method.visibility == 'public':
            return True
        if method.visibility == 'private':
            return scope is not None and scope is method.cls
        return can_access(method.cls, 'protected', scope) or \
            can_access(method.prototype, 'protected', scope)

    def method_callee(self, obj, name: str, env: 'Environment') -> Callee:
        """Resolves ``$obj->name(...)``."""
        if isinstance(obj, Closure):
            if name.lower() == '__invoke':
                return Callee(func=obj.func, this=obj.this, static_cls=obj.static_scope,
                              closure=obj, name=obj.func.name)
            if name.lower() in _CLOSURE_METHODS:
                method = self.evaluator.builtin_classes.closure.find_method(name)
                return Callee(func=method, this=obj, name=method.name)
            raise PhpError(f"Call to undefined method Closure::{name}()")
        if not isinstance(obj, PhpObject):
            raise PhpError(f"Call to a member function {name}() on {debug_type(obj)}")
        cls = obj.cls
        scope = env.current_class
        # A private method of the calling class shadows the object's own table
        if scope is not None and cls.is_subclass_of(scope):
            private = scope.methods.get(name.lower())
            if private is not None and private.visibility == 'private' and private.cls is scope:
                return Callee(func=private, this=obj, static_cls=cls, name=private.name)
        method = cls.find_method(name)
        if method is not None and self._method_visible(method, scope):
            return Callee(func=method, this=obj, static_cls=cls, name=method.name)
        magic = cls.find_method('__call')
        if magic is not None:
            return Callee(func=magic, this=obj, static_cls=cls, name='__call', magic_name=name)
        if method is not None:
            raise PhpError(f"Call to {method.visibility} method {cls.name}::{method.name}() from "
                           f"{scope_label(scope)}")
        raise PhpError(f"Call to undefined method {cls.name}::{name}()")

    def static_callee(self, cls: PhpClass, name: str, env: 'Environment', forward: bool) -> Callee:
        """Resolves ``A::name(...)``; ``forward`` keeps the caller's late static binding."""
        scope = env.current_class
        this = env.this
        method = cls.find_method(name)
        if method is None:
            if this is not None and this.cls.is_subclass_of(cls) and cls.find_method('__call'):
                return Callee(func=cls.find_method('__call'), this=this, static_cls=this.cls,
                              name='__call', magic_name=name)
            magic = cls.find_method('__callStatic')
            if magic is not None:
                return Callee(func=magic, static_cls=cls, name='__callStatic', magic_name=name)
            raise PhpError(f"Call to undefined method {cls.name}::{name}()")
        if not self._method_visible(method, scope):
            raise PhpError(f"Call to {method.visibility} method {cls.name}::{method.name}() from "
                           f"{scope_label(scope)}")
        if method.static:
            static_cls = env.static_class if forward and env.static_class is not None else cls
            return Callee(func=method, static_cls=static_cls, name=method.name)
        if this is not None and this.cls.is_subclass_of(method.cls):
            return Callee(func=method, this=this, static_cls=this.cls, name=method.name)
        raise PhpError(f"Non-static method {cls.name}::{method.name}() cannot be called statically")
