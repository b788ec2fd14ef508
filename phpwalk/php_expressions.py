"""
Expression evaluation and assignable locations.

``ExpressionEvaluator.eval`` dispatches every expression node. Assignment,
compound assignment, references, ``isset``/``unset`` and by-reference
argument passing all go through one abstraction: an LValue, obtained with
``lvalue(node, env)``. The five kinds are variables, array elements (which
also cover string offsets and ArrayAccess objects), object properties,
static properties and temporaries.
"""
from typing import Any, List, Optional, TYPE_CHECKING

from phpwalk import php_ast as ast
from phpwalk.php_binder import CallArg, Callee
from phpwalk.php_datatypes import (
    PhpArray, PhpObject, Closure, PhpError, ThrowSignal, ExitSignal, Ref,
    UNINITIALIZED, copy_value, normalize_key,
)
from phpwalk.php_operators import (
    arith, bitwise, bit_not, compare, debug_type, decrement, increment, is_numeric,
    loose_equals, negate, repr_float, strict_equals, to_bool, to_float, to_int, to_str,
)

if TYPE_CHECKING:
    from phpwalk.php_environment import Environment
    from phpwalk.php_interpreter import Evaluator

_LVALUE_NODES = (ast.Var, ast.Index, ast.PropFetch, ast.StaticPropFetch)
_SPECIAL_CLASSES = ('self', 'static', 'parent')


class _ShortCircuit(Exception):
    """Raised by a nullsafe fetch on null; the enclosing chain evaluates to null."""


class ExpressionEvaluator:
    def __init__(self, evaluator: 'Evaluator'):
        self.evaluator = evaluator

    async def eval(self, node, env: 'Environment') -> Any:
        ev = self.evaluator
        match node:
            case ast.Lit():
                return node.value

            case ast.Var():
                return await VarLV(self, env, await self.var_name(node, env)).get()

            case ast.ArrayLit():
                return await self._array_literal(node, env)

            case ast.ListExpr():
                raise PhpError("Cannot use list() outside of an assignment context")

            case ast.BinOp():
                return await self._binop(node, env)

            case ast.UnaryOp():
                value = await self.eval(node.operand, env)
                match node.op:
                    case '!':
                        return not to_bool(value)
                    case '-':
                        return negate(value)
                    case '+':
                        return arith('*', value, 1)
                    case '~':
                        return bit_not(value)
                raise PhpError(f"Unknown unary operator {node.op}")

            case ast.IncDec():
                target = await self.lvalue(node.target, env)
                old = await target.get()
                new = increment(old) if node.op == '++' else decrement(old)
                await target.assign(new)
                return new if node.prefix else old

            case ast.Ternary():
                cond = await self.eval(node.cond, env)
                if node.then is None:
                    return cond if to_bool(cond) else await self.eval(node.else_, env)
                return await self.eval(node.then if to_bool(cond) else node.else_, env)

            case ast.Assign():
                return await self._assign(node, env)

            case ast.AssignRef():
                return await self._assign_ref(node, env)

            case ast.Call():
                if isinstance(node.func, str):
                    callee = await ev.function_callee(node.func, env)
                else:
                    callee = await ev.resolve_callable(await self.eval(node.func, env), env)
                args = await self.evaluate_args(node.args, callee, env)
                return await ev.invoke(callee, args, env, node)

            case ast.New():
                return await self._new(node, env)

            case ast.MethodCall():
                try:
                    obj = await self.eval(node.obj, env)
                except _ShortCircuit:
                    return None
                if obj is None and node.nullsafe:
                    return None
                name = await self.member_name(node.name, env)
                callee = ev.objects.method_callee(obj, name, env)
                args = await self.evaluate_args(node.args, callee, env)
                return await ev.invoke(callee, args, env, node)

            case ast.StaticCall():
                cls, forward = await self.class_ref(node.cls, env)
                name = await self.member_name(node.name, env)
                callee = ev.objects.static_callee(cls, name, env, forward)
                args = await self.evaluate_args(node.args, callee, env)
                return await ev.invoke(callee, args, env, node)

            case ast.CallableRef():
                return await self._callable_ref(node.call, env)

            case ast.PropFetch() | ast.Index() | ast.StaticPropFetch():
                try:
                    return await (await self.lvalue(node, env)).get()
                except _ShortCircuit:
                    return None

            case ast.ClassConstFetch():
                return await self._class_constant(node, env)

            case ast.ConstFetch():
                return await ev.constant(node.name, env)

            case ast.Interp():
                parts = []
                for part in node.parts:
                    if isinstance(part, str):
                        parts.append(part)
                    else:
                        parts.append(await ev.to_string(await self.eval(part, env), env))
                return ''.join(parts)

            case ast.ClosureExpr():
                return await self._closure(node, env)

            case ast.ArrowFn():
                return await self._arrow_fn(node, env)

            case ast.Yield():
                gen = self._generator(env)
                key = await self.eval(node.key, env) if node.key is not None else None
                value = await self.eval(node.value, env) if node.value is not None else None
                return await gen.yield_(key, copy_value(value))

            case ast.YieldFrom():
                return await self._yield_from(node, env)

            case ast.Throw():
                exc = await self.eval(node.expr, env)
                if not (isinstance(exc, PhpObject) and exc.cls.instanceof('Throwable')):
                    raise PhpError("Can only throw objects")
                raise ThrowSignal(exc)

            case ast.Print():
                ev.write(await ev.to_string(await self.eval(node.expr, env), env))
                return 1

            case ast.Isset():
                for var in node.vars:
                    if not await self._isset(var, env):
                        return False
                return True

            case ast.Empty():
                return not to_bool(await self.quiet(node.expr, env))

            case ast.Exit():
                status = 0
                if node.expr is not None:
                    value = await self.eval(node.expr, env)
                    if isinstance(value, str):
                        ev.write(value)
                    else:
                        status = to_int(value)
                raise ExitSignal(status)

            case ast.Match():
                return await self._match(node, env)

            case ast.Instanceof():
                return await self._instanceof(node, env)

            case ast.Cast():
                return await self.cast(node.type, await self.eval(node.expr, env), env)

            case ast.Clone():
                return await ev.objects.clone(await self.eval(node.expr, env), env)

            case ast.MagicConst():
                return self._magic_constant(node, env)

            case ast.ErrorSuppress():
                ev.silence += 1
                try:
                    return await self.eval(node.expr, env)
                finally:
                    ev.silence -= 1

            case ast.Include():
                raise PhpError(f"{node.kind}() of source files is not supported")

            case _:
                raise PhpError(f"Unsupported expression {type(node).__name__}")

    # =================================================================
    # Helpers shared with the statement evaluator and builtins
    # =================================================================

    async def var_name(self, node: ast.Var, env: 'Environment') -> str:
        if isinstance(node.name, str):
            return node.name
        return await self.evaluator.to_string(await self.eval(node.name, env), env)

    async def member_name(self, name, env: 'Environment') -> str:
        if isinstance(name, str):
            return name
        return await self.evaluator.to_string(await self.eval(name, env), env)

    async def class_ref(self, cls_expr, env: 'Environment'):
        """Resolves a class operand; returns (class, forwards late static binding)."""
        ev = self.evaluator
        if isinstance(cls_expr, str):
            return await ev.lookup_class(cls_expr, env), cls_expr.lower() in _SPECIAL_CLASSES
        value = await self.eval(cls_expr, env)
        if isinstance(value, PhpObject):
            return value.cls, False
        if isinstance(value, str):
            return await ev.lookup_class('\\' + value.lstrip('\\'), env), False
        raise PhpError("Cannot use value of type " + debug_type(value) + " as class name")

    def array_key(self, key: Any) -> Any:
        if key is None:
            return ""
        try:
            return normalize_key(key)
        except TypeError:
            raise PhpError(f"Cannot access offset of type {debug_type(key)} on array", 'TypeError')

    def append(self, arr: PhpArray, value: Any) -> None:
        try:
            arr.append(value)
        except OverflowError as e:
            raise PhpError(str(e))

    def key_repr(self, key: Any) -> str:
        return f'"{key}"' if isinstance(key, str) else str(key)

    def is_lvalue(self, node) -> bool:
        return isinstance(node, _LVALUE_NODES)

    async def quiet(self, node, env: 'Environment') -> Any:
        """Reads ``node`` without undefined-variable/key/property warnings (``??``, ``empty``)."""
        if not self.is_lvalue(node):
            return await self.eval(node, env)
        try:
            return await (await self.lvalue(node, env)).get(quiet=True)
        except _ShortCircuit:
            return None

    async def _isset(self, node, env: 'Environment') -> bool:
        if not self.is_lvalue(node):
            return await self.eval(node, env) is not None
        try:
            return await (await self.lvalue(node, env)).isset()
        except _ShortCircuit:
            return False

    async def unset(self, node, env: 'Environment') -> None:
        try:
            await (await self.lvalue(node, env)).unset()
        except _ShortCircuit:
            pass

    def _generator(self, env: 'Environment'):
        if env.generator is None:
            raise PhpError("Cannot yield outside of a generator function")
        return env.generator

    # =================================================================
    # Operators
    # =================================================================

    async def _binop(self, node: ast.BinOp, env: 'Environment') -> Any:
        op = node.op
        if op in ('&&', '||', 'and', 'or'):
            conjunction = op in ('&&', 'and')
            left = to_bool(await self.eval(node.left, env))
            if self.evaluator.config.short_circuit_logic and left != conjunction:
                return left
            right = to_bool(await self.eval(node.right, env))
            return (left and right) if conjunction else (left or right)
        if op == '??':
            left = await self.quiet(node.left, env)
            if left is not None:
                return left
            return await self.eval(node.right, env)
        a = await self.eval(node.left, env)
        b = await self.eval(node.right, env)
        if op == 'xor':
            return to_bool(a) != to_bool(b)
        return await self.binary(op, a, b, env)

    async def binary(self, op: str, a: Any, b: Any, env: 'Environment') -> Any:
        match op:
            case '.':
                ev = self.evaluator
                return await ev.to_string(a, env) + await ev.to_string(b, env)
            case '+' | '-' | '*' | '/' | '%' | '**':
                return arith(op, a, b, self.evaluator.warn)
            case '==':
                return loose_equals(a, b)
            case '!=' | '<>':
                return not loose_equals(a, b)
            case '===':
                return strict_equals(a, b)
            case '!==':
                return not strict_equals(a, b)
            case '<':
                return compare(a, b) < 0
            case '<=':
                return compare(a, b) <= 0
            case '>':
                return compare(a, b) > 0
            case '>=':
                return compare(a, b) >= 0
            case '<=>':
                return compare(a, b)
            case '&' | '|' | '^' | '<<' | '>>':
                return bitwise(op, a, b, self.evaluator.warn)
        raise PhpError(f"Unknown binary operator {op}")

    # =================================================================
    # Assignment
    # =================================================================

    async def _assign(self, node: ast.Assign, env: 'Environment') -> Any:
        target = node.target
        if node.op is None:
            if isinstance(target, (ast.ArrayLit, ast.ListExpr)):
                value = await self.eval(node.value, env)
                if _has_ref_items(target):
                    await self.destructure(target, value, env)
                else:
                    await self.destructure(target, copy_value(value), env)
                return value
            lv = await self.lvalue(target, env)
            value = await self.eval(node.value, env)
            return await lv.assign(copy_value(value))
        lv = await self.lvalue(target, env)
        if node.op == '??':
            current = await lv.get(quiet=True)
            if current is not None:
                return current
            return await lv.assign(copy_value(await self.eval(node.value, env)))
        current = await lv.get()
        operand = await self.eval(node.value, env)
        return await lv.assign(await self.binary(node.op, current, operand, env))

    async def _assign_ref(self, node: ast.AssignRef, env: 'Environment') -> Any:
        if not self.is_lvalue(node.source):
            # Functions returning by reference are treated as returning a value
            value = await self.eval(node.source, env)
            return await (await self.lvalue(node.target, env)).assign(copy_value(value))
        ref = await (await self.lvalue(node.source, env)).make_ref()
        await (await self.lvalue(node.target, env)).bind_ref(ref)
        return ref.value

    async def assign_to(self, target, value: Any, env: 'Environment') -> None:
        """Stores ``value`` into a target node (foreach variables, destructuring slots)."""
        if isinstance(target, (ast.ArrayLit, ast.ListExpr)):
            await self.destructure(target, value, env)
            return
        await (await self.lvalue(target, env)).assign(copy_value(value))

    async def destructure(self, pattern, value: Any, env: 'Environment') -> None:
        """``[$a, $b] = ...`` and ``['k' => $x] = ...``; nested patterns recurse."""
        position = 0
        for item in pattern.items:
            if item is None:
                position += 1
                continue
            if item.key is not None:
                key = self.array_key(await self.eval(item.key, env))
            else:
                key = position
                position += 1
            if item.by_ref:
                if not isinstance(value, PhpArray):
                    raise PhpError("Cannot assign reference to non referenceable value")
                slot = value.raw(key)
                if not isinstance(slot, Ref):
                    slot = Ref(slot)
                    value.set_raw(key, slot)
                await (await self.lvalue(item.value, env)).bind_ref(slot)
                continue
            element = None
            if isinstance(value, PhpArray):
                if key in value:
                    element = value.get(key)
                else:
                    self.evaluator.warn(f"Undefined array key {self.key_repr(key)}")
            if isinstance(item.value, (ast.ArrayLit, ast.ListExpr)):
                await self.destructure(item.value, element, env)
            else:
                await (await self.lvalue(item.value, env)).assign(copy_value(element))

    # =================================================================
    # Arrays, objects and classes
    # =================================================================

    async def _array_literal(self, node: ast.ArrayLit, env: 'Environment') -> PhpArray:
        arr = PhpArray()
        for item in node.items:
            if item is None:
                raise PhpError("Cannot use empty array elements in arrays")
            if item.unpack:
                source = await self.eval(item.value, env)
                if not isinstance(source, (PhpArray, PhpObject)):
                    raise PhpError("Only arrays and Traversables can be unpacked")
                async for key, value in self.evaluator.iterate(source, env):
                    if isinstance(key, int):
                        self.append(arr, copy_value(value))
                    else:
                        arr.set(key, copy_value(value))
                continue
            key = self.array_key(await self.eval(item.key, env)) if item.key is not None else None
            if item.by_ref:
                ref = await (await self.lvalue(item.value, env)).make_ref()
                if key is None:
                    key = arr.next_index
                arr.set_raw(key, ref)
                continue
            value = copy_value(await self.eval(item.value, env))
            if key is None:
                self.append(arr, value)
            else:
                arr.set(key, value)
        return arr

    async def _new(self, node: ast.New, env: 'Environment') -> PhpObject:
        ev = self.evaluator
        if isinstance(node.cls, ast.ClassDecl):
            cls = ev.anonymous_classes.get(id(node))
            if cls is None:
                internal = f"class@anonymous#{len(ev.anonymous_classes) + 1}"
                cls = await ev.class_builder.declare(node.cls, env, internal)
                cls.name = 'class@anonymous'
                ev.anonymous_classes[id(node)] = cls
        else:
            cls, _ = await self.class_ref(node.cls, env)
        ev.objects.check_instantiable(cls)
        obj = ev.objects.create(cls)
        ctor = ev.objects.constructor(cls, env)
        if ctor is not None:
            callee = Callee(func=ctor, this=obj, static_cls=cls, name=ctor.name)
            args = await self.evaluate_args(node.args, callee, env)
            await ev.call_function(ctor, args, env, this=obj, static_cls=cls, node=node)
        return obj

    async def _class_constant(self, node: ast.ClassConstFetch, env: 'Environment') -> Any:
        ev = self.evaluator
        if node.name.lower() == 'class':
            if isinstance(node.cls, str):
                if node.cls.lower() in _SPECIAL_CLASSES:
                    return (await ev.lookup_class(node.cls, env)).name
                return env.ns.resolve_class(node.cls)
            value = await self.eval(node.cls, env)
            if isinstance(value, PhpObject):
                return value.cls.name
            raise PhpError(f"Cannot use \"::class\" on value of type {debug_type(value)}", 'TypeError')
        cls, _ = await self.class_ref(node.cls, env)
        return await ev.objects.class_constant(cls, node.name, env)

    async def _instanceof(self, node: ast.Instanceof, env: 'Environment') -> bool:
        ev = self.evaluator
        value = await self.eval(node.expr, env)
        if isinstance(node.cls, str):
            if node.cls.lower() in _SPECIAL_CLASSES:
                name = (await ev.lookup_class(node.cls, env)).name
            else:
                name = ev.resolve_class_name(node.cls, env)
        else:
            target = await self.eval(node.cls, env)
            if isinstance(target, PhpObject):
                name = target.cls.name
            elif isinstance(target, str):
                name = target
            else:
                raise PhpError("Class name must be a valid object or a string")
        if isinstance(value, Closure):
            return name.lstrip('\\').lower() == 'closure'
        return isinstance(value, PhpObject) and value.cls.instanceof(name)

    async def cast(self, type_name: str, value: Any, env: 'Environment') -> Any:
        ev = self.evaluator
        match type_name.lower():
            case 'int' | 'integer':
                return to_int(value)
            case 'float' | 'double' | 'real':
                return to_float(value)
            case 'string' | 'binary':
                return await ev.to_string(value, env)
            case 'bool' | 'boolean':
                return to_bool(value)
            case 'array':
                match value:
                    case None:
                        return PhpArray()
                    case PhpArray():
                        return value.copy()
                    case PhpObject():
                        arr = PhpArray()
                        for name in value.props:
                            item = value.get_prop(name)
                            if item is not UNINITIALIZED:
                                arr.set(name, copy_value(item))
                        return arr
                return PhpArray.from_list([value])
            case 'object':
                match value:
                    case PhpObject() | Closure():
                        return value
                    case PhpArray():
                        obj = ev.objects.create(ev.builtin_classes.std_class)
                        for key, item in value.items():
                            obj.props[str(key)] = copy_value(item)
                        return obj
                obj = ev.objects.create(ev.builtin_classes.std_class)
                if value is not None:
                    obj.props['scalar'] = value
                return obj
            case 'unset' | 'null':
                return None
        raise PhpError(f"Unknown cast type {type_name}")

    def _magic_constant(self, node: ast.MagicConst, env: 'Environment') -> Any:
        func = env.function
        match node.name.upper():
            case '__LINE__':
                return (node.loc or {}).get('line', 0)
            case '__FILE__':
                return self.evaluator.script_name
            case '__DIR__':
                return ''
            case '__CLASS__':
                return env.current_class.name if env.current_class is not None else ''
            case '__FUNCTION__':
                return func.name if func is not None else ''
            case '__METHOD__':
                if func is None:
                    return ''
                return func.qualified_name
            case '__NAMESPACE__':
                return env.ns.namespace
        raise PhpError(f"Unknown magic constant {node.name}")

    async def _match(self, node: ast.Match, env: 'Environment') -> Any:
        subject = await self.eval(node.subject, env)
        default = None
        for arm in node.arms:
            if arm.conds is None:
                default = arm
                continue
            for cond in arm.conds:
                if strict_equals(subject, await self.eval(cond, env)):
                    return await self.eval(arm.body, env)
        if default is not None:
            return await self.eval(default.body, env)
        self.evaluator.throw_error('UnhandledMatchError', f"Unhandled match case {_export_scalar(subject)}")

    # =================================================================
    # Functions and calls
    # =================================================================

    async def _closure(self, node: ast.ClosureExpr, env: 'Environment') -> Closure:
        ev = self.evaluator
        func = await ev.build_function('{closure}', node.params, node.body, env,
                                       by_ref=node.by_ref, return_type=node.return_type)
        bound = {}
        for use in node.uses:
            if use.by_ref:
                bound[use.name] = env.ref(use.name)
                continue
            value, found = env.get(use.name)
            if not found:
                ev.warn(f"Undefined variable ${use.name}")
            bound[use.name] = copy_value(value)
        this = None if node.static else env.this
        return Closure(func, bound, this=this, scope=env.current_class, static_scope=env.static_class,
                       handle=self.evaluator.registry.object_handle())

    async def _arrow_fn(self, node: ast.ArrowFn, env: 'Environment') -> Closure:
        ev = self.evaluator
        body = ast.Return(node.expr)
        body.loc = node.loc
        func = await ev.build_function('{closure}', node.params, [body], env, by_ref=node.by_ref,
                                       return_type=node.return_type)
        params = {p.name for p in node.params}
        bound = {}
        for name in ast.used_variables(node.expr):
            if name == 'this' or name in params:
                continue
            value, found = env.get(name)
            if found:
                bound[name] = copy_value(value)
        this = None if node.static else env.this
        return Closure(func, bound, this=this, scope=env.current_class, static_scope=env.static_class,
                       handle=self.evaluator.registry.object_handle())

    async def _callable_ref(self, call, env: 'Environment') -> Closure:
        ev = self.evaluator
        match call:
            case ast.Call():
                if isinstance(call.func, str):
                    callee = await ev.function_callee(call.func, env)
                else:
                    callee = await ev.resolve_callable(await self.eval(call.func, env), env)
            case ast.MethodCall():
                obj = await self.eval(call.obj, env)
                callee = ev.objects.method_callee(obj, await self.member_name(call.name, env), env)
            case ast.StaticCall():
                cls, forward = await self.class_ref(call.cls, env)
                callee = ev.objects.static_callee(cls, await self.member_name(call.name, env), env, forward)
            case _:
                raise PhpError("Cannot create a callable from this expression")
        return ev.callable_to_closure(callee)

    async def _yield_from(self, node: ast.YieldFrom, env: 'Environment') -> Any:
        ev = self.evaluator
        gen = self._generator(env)
        source = await self.eval(node.expr, env)
        match source:
            case PhpArray():
                await gen.delegate_array(source)
                return None
            case PhpObject() if source.cls.instanceof('Generator'):
                return await gen.delegate(source.native)
            case PhpObject() if source.cls.instanceof('Traversable'):
                async for key, value in ev.iterate(source, env):
                    await gen.yield_(key, value, delegated=True)
                return None
        raise PhpError('Can use "yield from" only with arrays and Traversables')

    async def evaluate_args(self, arg_nodes: List[ast.Arg], callee: Optional[Callee],
                            env: 'Environment') -> List[CallArg]:
        """Evaluates call-site arguments, expanding spreads and taking references where needed."""
        args: List[CallArg] = []
        for node in arg_nodes:
            if node.unpack:
                source = await self.eval(node.value, env)
                if not isinstance(source, (PhpArray, PhpObject)):
                    raise PhpError("Only arrays and Traversables can be unpacked")
                async for key, value in self.evaluator.iterate(source, env):
                    if isinstance(key, str):
                        args.append(CallArg(value, name=key))
                    elif any(a.name is not None for a in args):
                        raise PhpError("Cannot use positional argument after named argument during unpacking")
                    else:
                        args.append(CallArg(value))
                continue
            position = len(args)
            if callee is not None and self.is_lvalue(node.value) and \
                    callee.by_ref_at(position, node.name):
                ref = await (await self.lvalue(node.value, env)).make_ref()
                args.append(CallArg(ref.value, name=node.name, ref=ref))
            else:
                args.append(CallArg(await self.eval(node.value, env), name=node.name))
        return args

    # =================================================================
    # LValues
    # =================================================================

    async def lvalue(self, node, env: 'Environment') -> 'LValue':
        match node:
            case ast.Var():
                return VarLV(self, env, await self.var_name(node, env))
            case ast.Index():
                if isinstance(node.base, ast.Var) and node.base.name == 'GLOBALS' and node.index is not None:
                    name = to_str(await self.eval(node.index, env))
                    return VarLV(self, env.global_env, name)
                base = await self.lvalue(node.base, env)
                if node.index is None:
                    return ElemLV(self, env, base, None, append=True)
                return ElemLV(self, env, base, await self.eval(node.index, env))
            case ast.PropFetch():
                base = await self.lvalue(node.obj, env)
                return PropLV(self, env, base, await self.member_name(node.name, env), node.nullsafe)
            case ast.StaticPropFetch():
                cls, _ = await self.class_ref(node.cls, env)
                return StaticPropLV(self, env, cls, await self.member_name(node.name, env))
        return TempLV(self, env, await self.eval(node, env))

    def string_offset(self, s: str, key: Any, quiet: bool) -> Optional[str]:
        if isinstance(key, str) and not is_numeric(key):
            raise PhpError(f"Cannot access offset of type {debug_type(key)} on string", 'TypeError')
        i = to_int(key)
        index = i + len(s) if i < 0 else i
        if 0 <= index < len(s):
            return s[index]
        if quiet:
            return None
        self.evaluator.warn(f"Uninitialized string offset {i}")
        return ""

    def string_offset_set(self, s: str, key: Any, value: Any) -> str:
        i = to_int(key)
        index = i + len(s) if i < 0 else i
        if index < 0:
            raise PhpError(f"Illegal string offset {i}")
        char = to_str(value)
        if not char:
            raise PhpError("Cannot assign an empty string to a string offset")
        if index >= len(s):
            s = s + ' ' * (index - len(s) + 1)
        return s[:index] + char[0] + s[index + 1:]


def _has_ref_items(pattern) -> bool:
    for item in pattern.items:
        if item is None:
            continue
        if item.by_ref:
            return True
        if isinstance(item.value, (ast.ArrayLit, ast.ListExpr)) and _has_ref_items(item.value):
            return True
    return False


def _export_scalar(value: Any) -> str:
    match value:
        case None:
            return 'NULL'
        case bool():
            return 'true' if value else 'false'
        case int():
            return str(value)
        case float():
            return repr_float(value)
        case str():
            return "'" + value.replace('\\', '\\\\').replace("'", "\\'") + "'"
    return f"of type {debug_type(value)}"


class LValue:
    """An assignable location."""

    def __init__(self, ex: ExpressionEvaluator, env: 'Environment'):
        self.ex = ex
        self.env = env

    async def get(self, quiet: bool = False) -> Any:
        raise NotImplementedError

    async def assign(self, value: Any) -> Any:
        raise NotImplementedError

    async def container_for_write(self) -> Any:
        """The value stored here for in-place modification; null becomes a new array."""
        raise NotImplementedError

    async def make_ref(self) -> Ref:
        raise NotImplementedError

    async def bind_ref(self, ref: Ref) -> None:
        raise PhpError("Cannot assign by reference to this expression")

    async def isset(self) -> bool:
        return await self.get(quiet=True) is not None

    async def unset(self) -> None:
        raise PhpError("Cannot unset this expression")


class VarLV(LValue):
    def __init__(self, ex, env, name: str):
        super().__init__(ex, env)
        self.name = name

    async def get(self, quiet: bool = False) -> Any:
        if self.name == 'this':
            if self.env.this is None and not quiet:
                raise PhpError("Using $this when not in object context")
            return self.env.this
        value, found = self.env.get(self.name)
        if not found and not quiet:
            self.ex.evaluator.warn(f"Undefined variable ${self.name}")
        return value

    async def assign(self, value: Any) -> Any:
        self.env.set(self.name, value)
        return value

    async def container_for_write(self) -> Any:
        if self.name == 'this':
            return self.env.this
        ref = self.env.ref(self.name)
        if ref.value is None or ref.value is False:
            ref.value = PhpArray()
        return ref.value

    async def make_ref(self) -> Ref:
        if self.name == 'this':
            raise PhpError("Cannot re-assign $this")
        return self.env.ref(self.name)

    async def bind_ref(self, ref: Ref) -> None:
        if self.name == 'this':
            raise PhpError("Cannot re-assign $this")
        self.env.bind_ref(self.name, ref)

    async def isset(self) -> bool:
        if self.name == 'this':
            return self.env.this is not None
        return self.env.isset(self.name)

    async def unset(self) -> None:
        if self.name == 'this':
            raise PhpError("Cannot unset $this")
        self.env.unset(self.name)


class ElemLV(LValue):
    """``$base[key]`` and ``$base[]`` over arrays, strings and ArrayAccess objects."""

    def __init__(self, ex, env, base: LValue, key: Any, append: bool = False):
        super().__init__(ex, env)
        self.base = base
        self.key = key
        self.append = append

    def _array_key(self):
        return self.ex.array_key(self.key)

    async def get(self, quiet: bool = False) -> Any:
        ev = self.ex.evaluator
        if self.append:
            raise PhpError("Cannot use [] for reading")
        container = await self.base.get(quiet)
        match container:
            case PhpArray():
                key = self._array_key()
                if key in container:
                    return container.get(key)
                if not quiet:
                    ev.warn(f"Undefined array key {self.ex.key_repr(key)}")
                return None
            case str():
                return self.ex.string_offset(container, self.key, quiet)
            case PhpObject() if container.cls.instanceof('ArrayAccess'):
                if quiet and not to_bool(await ev.call_method(container, 'offsetExists', [self.key])):
                    return None
                return await ev.call_method(container, 'offsetGet', [self.key])
            case PhpObject() | Closure():
                raise PhpError(f"Cannot use object of type {debug_type(container)} as array")
        if not quiet:
            ev.warn(f"Trying to access array offset on value of type {debug_type(container)}")
        return None

    async def assign(self, value: Any) -> Any:
        ev = self.ex.evaluator
        container = await self.base.container_for_write()
        match container:
            case PhpArray():
                if self.append:
                    self.ex.append(container, value)
                else:
                    container.set(self._array_key(), value)
                return value
            case PhpObject() if container.cls.instanceof('ArrayAccess'):
                await ev.call_method(container, 'offsetSet', [None if self.append else self.key, value])
                return value
            case PhpObject() | Closure():
                raise PhpError(f"Cannot use object of type {debug_type(container)} as array")
            case str():
                if self.append:
                    raise PhpError("[] operator not supported for strings")
                await self.base.assign(self.ex.string_offset_set(container, self.key, value))
                return value
        raise PhpError("Cannot use a scalar value as an array")

    async def container_for_write(self) -> Any:
        ev = self.ex.evaluator
        container = await self.base.container_for_write()
        if isinstance(container, PhpObject) and container.cls.instanceof('ArrayAccess'):
            return await ev.call_method(container, 'offsetGet', [None if self.append else self.key])
        if isinstance(container, str):
            raise PhpError("Cannot use string offset as an array")
        if not isinstance(container, PhpArray):
            raise PhpError("Cannot use a scalar value as an array")
        if self.append:
            slot = PhpArray()
            self.ex.append(container, slot)
            return slot
        key = self._array_key()
        slot = container.get(key)
        if slot is None or slot is False:
            slot = PhpArray()
            container.set(key, slot)
        return slot

    async def make_ref(self) -> Ref:
        ev = self.ex.evaluator
        container = await self.base.container_for_write()
        if isinstance(container, PhpObject) and container.cls.instanceof('ArrayAccess'):
            return Ref(await ev.call_method(container, 'offsetGet', [self.key]))
        if not isinstance(container, PhpArray):
            raise PhpError("Cannot create references to/from string offsets")
        if self.append:
            ref = Ref(None)
            self.ex.append(container, ref)
            return ref
        key = self._array_key()
        slot = container.raw(key)
        if isinstance(slot, Ref):
            return slot
        ref = Ref(slot)
        container.set_raw(key, ref)
        return ref

    async def bind_ref(self, ref: Ref) -> None:
        container = await self.base.container_for_write()
        if not isinstance(container, PhpArray):
            raise PhpError("Cannot create references to/from string offsets")
        if self.append:
            self.ex.append(container, ref)
        else:
            container.set_raw(self._array_key(), ref)

    async def isset(self) -> bool:
        ev = self.ex.evaluator
        container = await self.base.get(quiet=True)
        match container:
            case PhpArray():
                key = self._array_key()
                return key in container and container.get(key) is not None
            case str():
                if isinstance(self.key, str) and not is_numeric(self.key):
                    return False
                return self.ex.string_offset(container, self.key, quiet=True) is not None
            case PhpObject() if container.cls.instanceof('ArrayAccess'):
                return to_bool(await ev.call_method(container, 'offsetExists', [self.key]))
        return False

    async def unset(self) -> None:
        ev = self.ex.evaluator
        container = await self.base.get(quiet=True)
        match container:
            case PhpArray():
                container.unset(self._array_key())
            case PhpObject() if container.cls.instanceof('ArrayAccess'):
                await ev.call_method(container, 'offsetUnset', [self.key])
            case str():
                raise PhpError("Cannot unset string offsets")


class PropLV(LValue):
    def __init__(self, ex, env, base: LValue, name: str, nullsafe: bool = False):
        super().__init__(ex, env)
        self.base = base
        self.name = name
        self.nullsafe = nullsafe

    async def _object(self, quiet: bool) -> Any:
        obj = await self.base.get(quiet)
        if obj is None and self.nullsafe:
            raise _ShortCircuit()
        return obj

    async def get(self, quiet: bool = False) -> Any:
        obj = await self._object(quiet)
        return await self.ex.evaluator.objects.get_prop(obj, self.name, self.env, quiet)

    async def assign(self, value: Any) -> Any:
        obj = await self.base.get(quiet=True)
        return await self.ex.evaluator.objects.set_prop(obj, self.name, value, self.env)

    async def container_for_write(self) -> Any:
        obj = await self.base.get(quiet=True)
        return await self.ex.evaluator.objects.prop_for_write(obj, self.name, self.env)

    async def make_ref(self) -> Ref:
        obj = await self.base.get(quiet=True)
        return await self.ex.evaluator.objects.prop_ref(obj, self.name, self.env)

    async def bind_ref(self, ref: Ref) -> None:
        obj = await self.base.get(quiet=True)
        self.ex.evaluator.objects.bind_prop(obj, self.name, ref, self.env)

    async def isset(self) -> bool:
        obj = await self._object(quiet=True)
        return await self.ex.evaluator.objects.isset_prop(obj, self.name, self.env)

    async def unset(self) -> None:
        obj = await self._object(quiet=True)
        await self.ex.evaluator.objects.unset_prop(obj, self.name, self.env)


class StaticPropLV(LValue):
    def __init__(self, ex, env, cls, name: str):
        super().__init__(ex, env)
        self.cls = cls
        self.name = name

    def _slot(self, quiet: bool = False):
        return self.ex.evaluator.objects.static_slot(self.cls, self.name, self.env, quiet)

    async def get(self, quiet: bool = False) -> Any:
        ref, _ = self._slot(quiet)
        return ref.value if ref is not None else None

    async def assign(self, value: Any) -> Any:
        ev = self.ex.evaluator
        ref, prop = self._slot()
        if prop.type:
            value = ev.binder.check_property(prop, value, ev.strict_types)
        ref.value = value
        return value

    async def container_for_write(self) -> Any:
        ref, _ = self._slot()
        if ref.value is None:
            ref.value = PhpArray()
        return ref.value

    async def make_ref(self) -> Ref:
        ref, _ = self._slot()
        return ref

    async def bind_ref(self, ref: Ref) -> None:
        self._slot()
        self.cls.static_values[self.name] = ref

    async def unset(self) -> None:
        raise PhpError(f"Attempt to unset static property {self.cls.name}::${self.name}")


class TempLV(LValue):
    """The result of a non-assignable expression used as the base of a fetch."""

    def __init__(self, ex, env, value: Any):
        super().__init__(ex, env)
        self.value = value

    async def get(self, quiet: bool = False) -> Any:
        return self.value

    async def assign(self, value: Any) -> Any:
        raise PhpError("Cannot assign to a temporary expression")

    async def container_for_write(self) -> Any:
        return self.value

    async def make_ref(self) -> Ref:
        return Ref(self.value)

    async def unset(self) -> None:
        raise PhpError("Cannot unset a temporary expression")
