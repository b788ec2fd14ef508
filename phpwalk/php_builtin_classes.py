"""
Builtin interfaces and classes: the iteration and array-access interfaces,
the Throwable hierarchy, stdClass, ArrayIterator, Generator and Closure,
plus the methods every enum receives.

Builtin methods are native FunctionDefs: async callables taking
``(evaluator, this, args)``.
"""
from typing import Any, Dict, Optional, TYPE_CHECKING

from phpwalk.php_binder import CallArg
from phpwalk.php_classes import FunctionDef, PhpClass, PropertyDef, native_method
from phpwalk.php_datatypes import PhpArray, PhpObject, Closure, PhpError, ThrowSignal
from phpwalk.php_operators import debug_type, is_numeric, strict_equals, to_int, to_str

if TYPE_CHECKING:
    from phpwalk.php_interpreter import Evaluator

INTERFACES: Dict[str, tuple] = {
    'Traversable': ((), ()),
    'Iterator': (('Traversable',), ('current', 'key', 'next', 'rewind', 'valid')),
    'IteratorAggregate': (('Traversable',), ('getIterator',)),
    'ArrayAccess': ((), ('offsetExists', 'offsetGet', 'offsetSet', 'offsetUnset')),
    'Countable': ((), ('count',)),
    'Stringable': ((), ('__toString',)),
    'JsonSerializable': ((), ('jsonSerialize',)),
    'UnitEnum': ((), ()),
    'BackedEnum': (('UnitEnum',), ()),
    'Throwable': (('Stringable',), ()),
}

# (class, parent) in declaration order
EXCEPTIONS = (
    ('ErrorException', 'Exception'),
    ('RuntimeException', 'Exception'),
    ('LogicException', 'Exception'),
    ('JsonException', 'Exception'),
    ('InvalidArgumentException', 'LogicException'),
    ('DomainException', 'LogicException'),
    ('LengthException', 'LogicException'),
    ('OutOfRangeException', 'LogicException'),
    ('BadFunctionCallException', 'LogicException'),
    ('BadMethodCallException', 'BadFunctionCallException'),
    ('OutOfBoundsException', 'RuntimeException'),
    ('RangeException', 'RuntimeException'),
    ('OverflowException', 'RuntimeException'),
    ('UnderflowException', 'RuntimeException'),
    ('UnexpectedValueException', 'RuntimeException'),
    ('TypeError', 'Error'),
    ('ArgumentCountError', 'TypeError'),
    ('ValueError', 'Error'),
    ('ArithmeticError', 'Error'),
    ('DivisionByZeroError', 'ArithmeticError'),
    ('UnhandledMatchError', 'Error'),
)


class BuiltinClasses:
    def __init__(self, evaluator: 'Evaluator'):
        self.evaluator = evaluator
        self.std_class: Optional[PhpClass] = None
        self.generator: Optional[PhpClass] = None
        self.closure: Optional[PhpClass] = None

    def install(self) -> None:
        for name, (parents, methods) in INTERFACES.items():
            iface = PhpClass(name, 'interface')
            iface.interfaces = [self._find(p) for p in parents]
            for mname in methods:
                iface.add_method(FunctionDef(mname, [], cls=iface, abstract=True))
            self._register(iface)

        self.std_class = self._register(PhpClass('stdClass'))
        for root in ('Exception', 'Error'):
            self._register(self._throwable_root(root))
        for name, parent in EXCEPTIONS:
            cls = PhpClass(name, parent=self._find(parent))
            self._register(cls)
        self._find('ErrorException').add_method(native_method(
            'getSeverity', _get_severity, cls=self._find('ErrorException'), final=True))

        self._register(self._array_iterator())
        self.generator = self._register(self._generator())
        self.closure = self._register(self._closure())

    def _find(self, name: str) -> PhpClass:
        return self.evaluator.registry.find_class(name)

    def _register(self, cls: PhpClass) -> PhpClass:
        self.evaluator.class_builder._inherit(cls)
        self.evaluator.registry.add_class(cls)
        return cls

    # =================================================================
    # Throwables
    # =================================================================

    def _throwable_root(self, name: str) -> PhpClass:
        cls = PhpClass(name)
        cls.interfaces = [self._find('Throwable')]
        for prop, default, visibility in (('message', '', 'protected'), ('code', 0, 'protected'),
                                          ('file', '', 'protected'), ('line', 0, 'protected'),
                                          ('previous', None, 'private')):
            cls.props[prop] = PropertyDef(prop, default, visibility, cls=cls)
        cls.add_method(native_method('__construct', _throwable_construct, cls=cls,
                                     params=(('message', ''), ('code', 0), ('previous', None))))
        for method_name, fn in (('getMessage', _get_message), ('getCode', _get_code),
                                ('getPrevious', _get_previous), ('getFile', _get_file),
                                ('getLine', _get_line), ('getTrace', _get_trace),
                                ('getTraceAsString', _get_trace_as_string)):
            cls.add_method(native_method(method_name, fn, cls=cls, final=True))
        cls.add_method(native_method('__toString', _throwable_to_string, cls=cls))
        return cls

    def init_throwable(self, obj: PhpObject, message: str = '', code: int = 0,
                       previous: Optional[PhpObject] = None) -> None:
        obj.set_prop('message', message)
        obj.set_prop('code', code)
        obj.set_prop('previous', previous)

    # =================================================================
    # Iteration classes
    # =================================================================

    def _array_iterator(self) -> PhpClass:
        cls = PhpClass('ArrayIterator')
        cls.interfaces = [self._find(n) for n in ('Iterator', 'ArrayAccess', 'Countable')]
        methods = (
            ('__construct', _ai_construct, (('array', None),)),
            ('current', _ai_current, ()),
            ('key', _ai_key, ()),
            ('next', _ai_next, ()),
            ('rewind', _ai_rewind, ()),
            ('valid', _ai_valid, ()),
            ('count', _ai_count, ()),
            ('offsetExists', _ai_offset_exists, ('key',)),
            ('offsetGet', _ai_offset_get, ('key',)),
            ('offsetSet', _ai_offset_set, ('key', 'value')),
            ('offsetUnset', _ai_offset_unset, ('key',)),
            ('getArrayCopy', _ai_copy, ()),
        )
        for name, fn, params in methods:
            cls.add_method(native_method(name, fn, params=params, cls=cls))
        return cls

    def _generator(self) -> PhpClass:
        cls = PhpClass('Generator')
        cls.final = True
        cls.interfaces = [self._find('Iterator')]
        methods = (
            ('current', _gen_current, ()),
            ('key', _gen_key, ()),
            ('next', _gen_next, ()),
            ('rewind', _gen_rewind, ()),
            ('valid', _gen_valid, ()),
            ('send', _gen_send, ('value',)),
            ('throw', _gen_throw, ('exception',)),
            ('getReturn', _gen_get_return, ()),
        )
        for name, fn, params in methods:
            cls.add_method(native_method(name, fn, params=params, cls=cls))
        return cls

    def _closure(self) -> PhpClass:
        cls = PhpClass('Closure')
        cls.final = True
        cls.add_method(native_method('bindTo', _closure_bind_to, params=('newThis', ('newScope', 'static')),
                                     cls=cls))
        cls.add_method(native_method('bind', _closure_bind, params=('closure', 'newThis', ('newScope', 'static')),
                                     cls=cls, static=True))
        cls.add_method(native_method('call', _closure_call, params=('newThis', '...args'), cls=cls))
        cls.add_method(native_method('fromCallable', _closure_from_callable, params=('callback',),
                                     cls=cls, static=True))
        return cls

    # =================================================================
    # Enums
    # =================================================================

    def install_enum_methods(self, cls: PhpClass) -> None:
        cls.final = True
        cls.methods.setdefault('cases', native_method('cases', _enum_cases, cls=cls, static=True))
        if cls.backing_type:
            cls.methods.setdefault('from', native_method('from', _enum_from, params=('value',),
                                                         cls=cls, static=True))
            cls.methods.setdefault('tryfrom', native_method('tryFrom', _enum_try_from, params=('value',),
                                                            cls=cls, static=True))


# --- Throwable natives ---

async def _throwable_construct(ev, this, args):
    message, code, previous = args
    ev.builtin_classes.init_throwable(this, to_str(message), to_int(code), previous)


async def _get_message(ev, this, args):
    return this.get_prop('message')


async def _get_code(ev, this, args):
    return this.get_prop('code')


async def _get_previous(ev, this, args):
    return this.get_prop('previous')


async def _get_file(ev, this, args):
    return this.get_prop('file')


async def _get_line(ev, this, args):
    return this.get_prop('line')


async def _get_severity(ev, this, args):
    return this.get_prop('severity', 1)


def _trace(this) -> list:
    return (this.native or {}).get('trace', [])


async def _get_trace(ev, this, args):
    return PhpArray.from_list(
        PhpArray({'file': frame['file'], 'line': frame['line'], 'function': frame['function']})
        for frame in _trace(this)
    )


def trace_as_string(frames) -> str:
    lines = [f"#{i} {frame['file']}({frame['line'] or 0}): {frame['function']}()"
             for i, frame in enumerate(frames)]
    lines.append(f"#{len(frames)} {{main}}")
    return "\n".join(lines)


async def _get_trace_as_string(ev, this, args):
    return trace_as_string(_trace(this))


async def _throwable_to_string(ev, this, args):
    text = (f"{this.cls.name}: {this.get_prop('message')} in {this.get_prop('file')}:"
            f"{this.get_prop('line')}\nStack trace:\n{trace_as_string(_trace(this))}")
    previous = this.get_prop('previous')
    if isinstance(previous, PhpObject):
        text = f"{await ev.to_string(previous)}\n\nNext {text}"
    return text


# --- ArrayIterator natives ---

def _storage(this) -> dict:
    if this.native is None:
        this.native = {'array': PhpArray(), 'pos': 0}
    return this.native


def _ai_keys(this):
    return _storage(this)['array'].keys()


async def _ai_construct(ev, this, args):
    source = args[0]
    if isinstance(source, PhpObject):
        source = PhpArray({k: v for k, v in ev.objects.visible_props(source, ev.globals)})
    this.native = {'array': source.copy() if isinstance(source, PhpArray) else PhpArray(), 'pos': 0}


async def _ai_current(ev, this, args):
    state, keys = _storage(this), _ai_keys(this)
    if state['pos'] < len(keys):
        return state['array'].get(keys[state['pos']])
    return None


async def _ai_key(ev, this, args):
    state, keys = _storage(this), _ai_keys(this)
    return keys[state['pos']] if state['pos'] < len(keys) else None


async def _ai_next(ev, this, args):
    _storage(this)['pos'] += 1


async def _ai_rewind(ev, this, args):
    _storage(this)['pos'] = 0


async def _ai_valid(ev, this, args):
    return _storage(this)['pos'] < len(_ai_keys(this))


async def _ai_count(ev, this, args):
    return len(_storage(this)['array'])


async def _ai_offset_exists(ev, this, args):
    return args[0] in _storage(this)['array']


async def _ai_offset_get(ev, this, args):
    return _storage(this)['array'].get(args[0])


async def _ai_offset_set(ev, this, args):
    key, value = args
    _storage(this)['array'].set(key, value)


async def _ai_offset_unset(ev, this, args):
    _storage(this)['array'].unset(args[0])


async def _ai_copy(ev, this, args):
    return _storage(this)['array'].copy()


# --- Generator natives ---

async def _gen_current(ev, this, args):
    return await this.native.current()


async def _gen_key(ev, this, args):
    return await this.native.key()


async def _gen_next(ev, this, args):
    await this.native.next()


async def _gen_rewind(ev, this, args):
    await this.native.rewind()


async def _gen_valid(ev, this, args):
    return await this.native.valid()


async def _gen_send(ev, this, args):
    return await this.native.send(args[0])


async def _gen_throw(ev, this, args):
    exc = args[0]
    if not (isinstance(exc, PhpObject) and exc.cls.instanceof('Throwable')):
        raise PhpError(f"Generator::throw(): Argument #1 ($exception) must be of type Throwable, "
                       f"{debug_type(exc)} given", 'TypeError')
    return await this.native.throw(exc)


async def _gen_get_return(ev, this, args):
    return this.native.get_return()


# --- Closure natives ---

async def _rebind(ev, closure: Closure, new_this, new_scope) -> Closure:
    if not isinstance(closure, Closure):
        raise PhpError("Closure::bind(): Argument #1 ($closure) must be of type Closure", 'TypeError')
    if isinstance(new_scope, PhpObject):
        scope = new_scope.cls
    elif isinstance(new_scope, str) and new_scope != 'static':
        scope = await ev.lookup_class('\\' + new_scope.lstrip('\\'), ev.globals)
    else:
        scope = closure.scope
    if scope is None and isinstance(new_this, PhpObject) and new_scope == 'static':
        scope = closure.scope
    static_scope = new_this.cls if isinstance(new_this, PhpObject) else scope
    return Closure(closure.func, closure.bound, this=new_this, scope=scope, static_scope=static_scope,
                   handle=ev.registry.object_handle())


async def _closure_bind_to(ev, this, args):
    new_this, new_scope = args
    return await _rebind(ev, this, new_this, new_scope)


async def _closure_bind(ev, this, args):
    closure, new_this, new_scope = args
    return await _rebind(ev, closure, new_this, new_scope)


async def _closure_call(ev, this, args):
    new_this, extra = args
    bound = await _rebind(ev, this, new_this, new_this)
    return await ev.call_value(bound, extra.values())


async def _closure_from_callable(ev, this, args):
    return ev.callable_to_closure(await ev.resolve_callable(args[0], ev.globals))


# --- Enum natives ---

def _enum_class(ev) -> PhpClass:
    # Static natives run with the enum as the late static binding class
    frame = ev.call_stack[-1]
    return frame['func'].cls


async def _enum_cases(ev, this, args):
    return PhpArray.from_list(_enum_class(ev).enum_cases.values())


def _lookup_case(cls: PhpClass, value: Any) -> Optional[PhpObject]:
    if cls.backing_type == 'int' and isinstance(value, str) and is_numeric(value):
        value = to_int(value)
    elif cls.backing_type == 'string' and isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    for case in cls.enum_cases.values():
        if strict_equals(case.get_prop('value'), value):
            return case
    return None


async def _enum_from(ev, this, args):
    cls = _enum_class(ev)
    case = _lookup_case(cls, args[0])
    if case is None:
        shown = f'"{args[0]}"' if isinstance(args[0], str) else to_str(args[0])
        raise ThrowSignal(ev.new_throwable('ValueError', f"{shown} is not a valid backing value for enum {cls.name}"))
    return case


async def _enum_try_from(ev, this, args):
    return _lookup_case(_enum_class(ev), args[0])
