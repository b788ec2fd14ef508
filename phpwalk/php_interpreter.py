"""
The core phpwalk interpreter: the Evaluator and its statement dispatcher.

Statements evaluate to completion records (Normal, Return, Break, Continue,
Thrown, Exit). Expressions evaluate to plain values and are handled by the
ExpressionEvaluator; a ``throw`` or ``exit`` inside an expression unwinds as
ThrowSignal/ExitSignal and is turned back into a completion here.
"""
import asyncio
import inspect
import os
import sys
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from phpwalk import php_ast as ast
from phpwalk.php_binder import CallArg, CallBinder, Callee
from phpwalk.php_builtin_classes import BuiltinClasses
from phpwalk.php_classes import (
    ClassBuilder, FunctionDef, ParamDef, PhpClass, NO_DEFAULT, native_method,
)
from phpwalk.php_config import InterpreterConfig
from phpwalk.php_datatypes import (
    PhpArray, PhpObject, Closure, PhpError, ThrowSignal, ExitSignal, Ref,
    Normal, Return, Break, Continue, Thrown, Exit, NORMAL, Completion, copy_value,
)
from phpwalk.php_environment import Environment
from phpwalk.php_expressions import ExpressionEvaluator
from phpwalk.php_generators import GeneratorRunner
from phpwalk.php_namespaces import NamespaceResolver, NamespaceState
from phpwalk.php_objects import ObjectModel
from phpwalk.php_operators import debug_type, loose_equals, to_bool, to_int, to_str
from phpwalk.php_output import OutputSink

# Engine errors that the language itself raises as catchable throwables
CATCHABLE_ERRORS = frozenset({'TypeError', 'ArgumentCountError'})


class Evaluator:
    """The phpwalk execution engine. One instance is one isolated execution context."""

    def __init__(self, config: Optional[InterpreterConfig] = None,
                 on_output: Optional[Callable[[str], None]] = None):
        self.config = config or InterpreterConfig()
        self.globals = Environment()
        self.registry = self.globals.registry
        self.side_effects: List[Any] = []
        self._on_output = on_output
        self.output = OutputSink(on_write=self._record_output)
        self.builtins: Dict[str, Callable] = {}
        self.strict_types = self.config.strict_types
        self.ini: Dict[str, Any] = dict(self.config.ini)
        self.script_name = 'Standard input code'
        self.call_stack: List[dict] = []
        self.current_node = None
        self.active_tasks: set = set()
        self.silence = 0
        # `static` variables declared outside any function
        self.top_statics: Dict[str, Ref] = {}
        self.anonymous_classes: Dict[int, PhpClass] = {}
        self._builtin_signatures: Dict[Any, inspect.Signature] = {}

        self.binder = CallBinder(self)
        self.class_builder = ClassBuilder(self)
        self.objects = ObjectModel(self)
        self.expressions = ExpressionEvaluator(self)
        self.builtin_classes = BuiltinClasses(self)
        self.builtin_classes.install()

    # =================================================================
    # Diagnostics and output
    # =================================================================

    def _dbg(self, *parts):
        if os.environ.get("PHPWALK_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    def _record_output(self, text: str) -> None:
        self.side_effects.append({"topics": ["stdout"], "message": text})
        if self._on_output is not None:
            self._on_output(text)

    def write(self, text: str) -> None:
        self.output.write(text)

    def warn(self, message: str, level: str = 'Warning') -> None:
        """Records a non-fatal diagnostic. ``@`` suppresses it."""
        if self.silence:
            return
        line = self._current_line()
        suffix = f" on line {line}" if line else ""
        self.side_effects.append({"topics": ["stderr"], "message": f"{level}: {message}{suffix}"})
        self._dbg(level, message)

    def _current_line(self) -> Optional[int]:
        loc = getattr(self.current_node, 'loc', None)
        if isinstance(loc, dict):
            return loc.get('line')
        return None

    def _push_frame(self, name, func, args, call_site_node):
        loc = getattr(call_site_node, 'loc', None)
        self.call_stack.append({
            'name': name,
            'func': func,
            'args': args,
            'call_site': loc,
        })

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    def stack_trace(self) -> List[dict]:
        """The current call stack, innermost frame first."""
        frames = []
        for frame in reversed(self.call_stack):
            loc = frame.get('call_site') or {}
            frames.append({'function': frame['name'], 'line': loc.get('line'), 'file': self.script_name})
        return frames

    # --- Task tracking ---

    def register_task(self, task: asyncio.Task) -> None:
        self.active_tasks.add(task)
        task.add_done_callback(self.active_tasks.discard)

    def cancel_tasks(self) -> int:
        count = 0
        for task in list(self.active_tasks):
            if not task.done():
                task.cancel()
                count += 1
        self.active_tasks.clear()
        return count

    # =================================================================
    # Entry points
    # =================================================================

    async def run(self, program) -> Completion:
        """Hoists declarations and executes a whole program in the global scope."""
        body = program.body if isinstance(program, ast.Program) else list(program)
        self._hoist(body, NamespaceResolver())
        # Declarations are hoisted per file; the namespace itself is set as statements run
        self.globals.ns.enter(None)
        return await self.exec_block(body, self.globals)

    async def eval(self, node, env: Environment) -> Any:
        return await self.expressions.eval(node, env)

    async def exec_block(self, body, env: Environment) -> Completion:
        for stmt in body:
            result = await self.exec(stmt, env)
            if not isinstance(result, Normal):
                return result
        return NORMAL

    async def exec(self, stmt, env: Environment) -> Completion:
        """Executes one statement, turning unwinding signals into completions."""
        self.current_node = stmt
        try:
            return await self._exec(stmt, env)
        except ThrowSignal as t:
            return Thrown(t.exception)
        except ExitSignal as e:
            return Exit(e.status)
        except PhpError as err:
            if err.node is None:
                err.node = self.current_node
            if err.trace is None:
                err.trace = self.stack_trace()
            if err.php_class in CATCHABLE_ERRORS or self.config.errors_as_exceptions:
                return Thrown(self.error_to_throwable(err))
            raise

    # =================================================================
    # Statements
    # =================================================================

    async def _exec(self, stmt, env: Environment) -> Completion:
        match stmt:
            case ast.ExprStmt():
                await self.eval(stmt.expr, env)
                return NORMAL

            case ast.Echo():
                for expr in stmt.exprs:
                    value = await self.eval(expr, env)
                    self.write(await self.to_string(value, env))
                return NORMAL

            case ast.InlineHTML():
                self.write(stmt.text)
                return NORMAL

            case ast.Block():
                return await self.exec_block(stmt.body, env)

            case ast.If():
                if to_bool(await self.eval(stmt.cond, env)):
                    return await self.exec_block(stmt.then, env)
                for branch in stmt.elifs:
                    if to_bool(await self.eval(branch.cond, env)):
                        return await self.exec_block(branch.body, env)
                if stmt.else_ is not None:
                    return await self.exec_block(stmt.else_, env)
                return NORMAL

            case ast.While():
                while to_bool(await self.eval(stmt.cond, env)):
                    stop, out = self._loop_control(await self.exec_block(stmt.body, env))
                    if stop:
                        return out
                return NORMAL

            case ast.DoWhile():
                while True:
                    stop, out = self._loop_control(await self.exec_block(stmt.body, env))
                    if stop:
                        return out
                    if not to_bool(await self.eval(stmt.cond, env)):
                        return NORMAL

            case ast.For():
                for expr in stmt.init:
                    await self.eval(expr, env)
                while True:
                    proceed = True
                    for expr in stmt.cond:
                        proceed = to_bool(await self.eval(expr, env))
                    if not proceed:
                        return NORMAL
                    stop, out = self._loop_control(await self.exec_block(stmt.body, env))
                    if stop:
                        return out
                    for expr in stmt.step:
                        await self.eval(expr, env)

            case ast.Foreach():
                return await self._exec_foreach(stmt, env)

            case ast.Switch():
                return await self._exec_switch(stmt, env)

            case ast.Break():
                return Break(stmt.levels)

            case ast.Continue():
                return Continue(stmt.levels)

            case ast.Return():
                value = await self.eval(stmt.expr, env) if stmt.expr is not None else None
                return Return(value)

            case ast.Try():
                return await self._exec_try(stmt, env)

            case ast.Global():
                for name in stmt.names:
                    env.import_global(name)
                return NORMAL

            case ast.StaticVar():
                statics = env.function.statics if env.function is not None else self.top_statics
                for item in stmt.vars:
                    ref = statics.get(item.name)
                    if ref is None:
                        initial = await self.eval(item.default, env) if item.default is not None else None
                        ref = statics[item.name] = Ref(copy_value(initial))
                    env.bind_ref(item.name, ref)
                return NORMAL

            case ast.Unset():
                for target in stmt.targets:
                    await self.expressions.unset(target, env)
                return NORMAL

            case ast.ConstStmt():
                for item in stmt.items:
                    name = env.ns.qualify(item.name)
                    value = await self.eval(item.value, env)
                    if not self.registry.define_constant(name, value):
                        self.warn(f"Constant {name} already defined")
                return NORMAL

            case ast.Declare():
                if 'strict_types' in stmt.directives:
                    directive = stmt.directives['strict_types']
                    if isinstance(directive, ast.Expr):
                        directive = await self.eval(directive, env)
                    self.strict_types = bool(to_int(directive))
                if stmt.body is not None:
                    return await self.exec_block(stmt.body, env)
                return NORMAL

            case ast.Namespace():
                env.ns.enter(stmt.name)
                if stmt.body is None:
                    return NORMAL
                try:
                    return await self.exec_block(stmt.body, env)
                finally:
                    env.ns.enter(None)

            case ast.Use():
                for item in stmt.items:
                    name = f"{stmt.prefix.strip(chr(92))}\\{item.name}" if stmt.prefix else item.name
                    env.ns.add_use(item.kind or stmt.kind, name, item.alias)
                return NORMAL

            case ast.FunctionDecl():
                name = env.ns.qualify(stmt.name)
                existing = self.registry.find_function(name)
                if existing is not None and existing.decl is stmt:
                    return NORMAL
                self.registry.pending_functions.pop(name.lower(), None)
                await self.declare_function(stmt, env, name)
                return NORMAL

            case ast.ClassDecl() | ast.InterfaceDecl() | ast.TraitDecl() | ast.EnumDecl():
                name = env.ns.qualify(stmt.name)
                existing = self.registry.find_class(name)
                if existing is not None and existing.decl is stmt:
                    return NORMAL
                self.registry.pending_classes.pop(name.lower(), None)
                await self.class_builder.declare(stmt, env, name)
                return NORMAL

            case ast.Label() | ast.Nop():
                return NORMAL

            case ast.Goto():
                raise PhpError(f"'goto {stmt.label}' is not supported")

            case _:
                raise PhpError(f"Unsupported statement {type(stmt).__name__}")

    def _loop_control(self, result: Completion) -> Tuple[bool, Completion]:
        """Decides how a loop reacts to its body's completion: (stop, completion to return)."""
        match result:
            case Normal():
                return False, NORMAL
            case Break(levels=n):
                return True, (Break(n - 1) if n > 1 else NORMAL)
            case Continue(levels=n):
                if n > 1:
                    return True, Continue(n - 1)
                return False, NORMAL
            case _:
                return True, result

    async def _exec_switch(self, stmt: ast.Switch, env: Environment) -> Completion:
        subject = await self.eval(stmt.subject, env)
        start = None
        for i, case in enumerate(stmt.cases):
            if case.cond is not None and loose_equals(subject, await self.eval(case.cond, env)):
                start = i
                break
        if start is None:
            start = next((i for i, c in enumerate(stmt.cases) if c.cond is None), None)
        if start is None:
            return NORMAL
        for case in stmt.cases[start:]:
            result = await self.exec_block(case.body, env)
            match result:
                case Normal():
                    continue
                case Break(levels=n) | Continue(levels=n):
                    # `continue` targeting a switch acts like `break`
                    if n > 1:
                        return Break(n - 1) if isinstance(result, Break) else Continue(n - 1)
                    return NORMAL
                case _:
                    return result
        return NORMAL

    async def _exec_try(self, stmt: ast.Try, env: Environment) -> Completion:
        result = await self.exec_block(stmt.body, env)
        if isinstance(result, Thrown):
            clause = self._select_catch(stmt.catches, result.exception, env)
            if clause is not None:
                if clause.var:
                    env.set(clause.var, result.exception)
                result = await self.exec_block(clause.body, env)
        if stmt.finally_ is not None:
            final = await self.exec_block(stmt.finally_, env)
            if isinstance(final, (Thrown, Exit)):
                return final
            # An exit in flight is only replaced by another throw or exit
            if not isinstance(final, Normal) and not isinstance(result, Exit):
                return final
        return result

    def _select_catch(self, catches: List[ast.Catch], exception: PhpObject, env: Environment) -> Optional[ast.Catch]:
        if not catches:
            return None
        if not self.config.catch_by_type:
            return catches[0]
        for clause in catches:
            for type_name in clause.types:
                if exception.cls.instanceof(self.resolve_class_name(type_name, env)):
                    return clause
        return None

    # --- foreach ---

    async def _exec_foreach(self, stmt: ast.Foreach, env: Environment) -> Completion:
        exprs = self.expressions
        if stmt.by_ref:
            return await self._exec_foreach_ref(stmt, env)
        subject = await self.eval(stmt.subject, env)
        async with aclosing(self.iterate(subject, env)) as items:
            async for key, value in items:
                if stmt.key is not None:
                    await exprs.assign_to(stmt.key, key, env)
                await exprs.assign_to(stmt.value, value, env)
                stop, out = self._loop_control(await self.exec_block(stmt.body, env))
                if stop:
                    return out
        return NORMAL

    async def _exec_foreach_ref(self, stmt: ast.Foreach, env: Environment) -> Completion:
        exprs = self.expressions
        target = await exprs.lvalue(stmt.value, env)
        if isinstance(stmt.subject, (ast.ArrayLit, ast.Call, ast.New)):
            container = await self.eval(stmt.subject, env)
        else:
            container = await (await exprs.lvalue(stmt.subject, env)).container_for_write()
        if isinstance(container, PhpObject) and not container.cls.instanceof('Traversable'):
            slots = container.props
        elif isinstance(container, PhpArray):
            slots = None
        else:
            raise PhpError(f"foreach() argument must be of type array|object, {debug_type(container)} given")

        position = 0
        keys = container.keys() if slots is None else list(slots)
        while True:
            size = len(container) if slots is None else len(slots)
            if size != len(keys):
                keys = container.keys() if slots is None else list(slots)
            if position >= len(keys):
                return NORMAL
            key = keys[position]
            position += 1
            if slots is None:
                if key not in container:
                    continue
                slot = container.raw(key)
                if not isinstance(slot, Ref):
                    slot = Ref(slot)
                    container.set_raw(key, slot)
            else:
                if key not in slots:
                    continue
                slot = slots[key]
                if not isinstance(slot, Ref):
                    slot = slots[key] = Ref(slot)
            if stmt.key is not None:
                await exprs.assign_to(stmt.key, key, env)
            await target.bind_ref(slot)
            stop, out = self._loop_control(await self.exec_block(stmt.body, env))
            if stop:
                return out

    async def iterate(self, value, env: Environment) -> AsyncIterator[Tuple[Any, Any]]:
        """Yields (key, value) pairs for foreach, spreads and iterator builtins."""
        match value:
            case PhpArray():
                for key, item in value.items():
                    yield key, item
            case PhpObject() if isinstance(value.native, GeneratorRunner):
                runner = value.native
                await runner.rewind()
                while await runner.valid():
                    yield runner.current_key, runner.current_value
                    await runner.next()
            case PhpObject() if value.cls.instanceof('Iterator'):
                await self.call_method(value, 'rewind')
                while to_bool(await self.call_method(value, 'valid')):
                    item = await self.call_method(value, 'current')
                    key = await self.call_method(value, 'key')
                    yield key, item
                    await self.call_method(value, 'next')
            case PhpObject() if value.cls.instanceof('IteratorAggregate'):
                inner = await self.call_method(value, 'getIterator')
                if not (isinstance(inner, PhpObject) and inner.cls.instanceof('Traversable')):
                    self.throw_error('TypeError', f"{value.cls.name}::getIterator(): Return value must be "
                                                  f"of type Traversable, {debug_type(inner)} returned")
                async with aclosing(self.iterate(inner, env)) as items:
                    async for pair in items:
                        yield pair
            case PhpObject():
                for name, item in self.objects.visible_props(value, env):
                    yield name, item
            case _:
                self.warn(f"foreach() argument must be of type array|object, {debug_type(value)} given")

    # =================================================================
    # Declarations
    # =================================================================

    def _hoist(self, body, ns: NamespaceResolver) -> None:
        """Registers top-level functions and classes so they can be used before their statement runs."""
        for stmt in body:
            match stmt:
                case ast.Namespace():
                    ns.enter(stmt.name)
                    if stmt.body is not None:
                        self._hoist(stmt.body, ns)
                        ns.enter(None)
                case ast.Use():
                    for item in stmt.items:
                        name = f"{stmt.prefix.strip(chr(92))}\\{item.name}" if stmt.prefix else item.name
                        ns.add_use(item.kind or stmt.kind, name, item.alias)
                case ast.FunctionDecl():
                    key = ns.qualify(stmt.name).lower()
                    self.registry.pending_functions.setdefault(key, (stmt, ns.snapshot()))
                case ast.ClassDecl() | ast.InterfaceDecl() | ast.TraitDecl() | ast.EnumDecl():
                    key = ns.qualify(stmt.name).lower()
                    self.registry.pending_classes.setdefault(key, (stmt, ns.snapshot()))
                case ast.Declare() if stmt.body is not None:
                    self._hoist(stmt.body, ns)
                case ast.Block():
                    self._hoist(stmt.body, ns)

    def _decl_env(self, state: NamespaceState) -> Environment:
        """A scratch scope for declaring a hoisted symbol in its own namespace context."""
        env = Environment(parent=self.globals)
        env.ns = NamespaceResolver(state.copy())
        return env

    async def declare_function(self, decl: ast.FunctionDecl, env: Environment,
                               name: Optional[str] = None) -> FunctionDef:
        name = name or env.ns.qualify(decl.name)
        if name.lower() in self.builtins:
            raise PhpError(f"Cannot redeclare {name}()")
        func = await self.build_function(name, decl.params, decl.body, env,
                                         by_ref=decl.by_ref, return_type=decl.return_type)
        func.decl = decl
        self.registry.add_function(name, func)
        self._dbg("declare function", name)
        return func

    async def build_function(self, name: str, params: List[ast.Param], body, env: Environment, *,
                             by_ref: bool = False, return_type: Optional[str] = None,
                             cls: Optional[PhpClass] = None) -> FunctionDef:
        """Turns parameter and body nodes into a FunctionDef. Defaults are evaluated here, once."""
        defs = []
        for p in params:
            default = NO_DEFAULT
            if p.default is not None:
                if cls is not None:
                    default = await self.eval_in_class(p.default, cls, env)
                else:
                    default = await self.eval(p.default, env)
            ptype = env.ns.resolve_type(p.type)
            if ptype and default is None and not _is_nullable(ptype):
                # A null default makes the declared type implicitly nullable
                ptype = f"?{ptype}" if '|' not in ptype else f"{ptype}|null"
            defs.append(ParamDef(p.name, ptype, default, p.variadic, p.by_ref, p.promote, p.readonly))
        return FunctionDef(
            name, defs, body, cls=cls, is_generator=ast.contains_yield(body), by_ref=by_ref,
            return_type=env.ns.resolve_type(return_type), ns_state=env.ns.snapshot(),
        )

    async def eval_in_class(self, expr, cls: PhpClass, env: Optional[Environment] = None) -> Any:
        """Evaluates a constant expression (defaults, constants) with ``cls`` as self/static."""
        scope = Environment(parent=self.globals)
        if cls.ns_state is not None:
            scope.ns = NamespaceResolver(cls.ns_state)
        elif env is not None:
            scope.ns = env.ns
        scope.current_class = cls
        scope.static_class = cls
        return await self.eval(expr, scope)

    # --- Lookup ---

    async def find_function(self, name: str) -> Optional[FunctionDef]:
        func = self.registry.find_function(name)
        if func is None:
            pending = self.registry.pending_functions.pop(name.lstrip('\\').lower(), None)
            if pending is not None:
                decl, state = pending
                func = await self.declare_function(decl, self._decl_env(state), name.lstrip('\\'))
        return func

    async def find_class(self, name: str, env: Environment) -> Optional[PhpClass]:
        lname = name.lower()
        match lname:
            case 'self':
                if env.current_class is None:
                    raise PhpError('Cannot use "self" when no class scope is active')
                return env.current_class
            case 'static':
                if env.static_class is None and env.current_class is None:
                    raise PhpError('Cannot use "static" when no class scope is active')
                return env.static_class or env.current_class
            case 'parent':
                if env.current_class is None:
                    raise PhpError('Cannot use "parent" when no class scope is active')
                if env.current_class.parent is None:
                    raise PhpError('Cannot use "parent" when current class scope has no parent')
                return env.current_class.parent
        for resolved in env.ns.class_candidates(name):
            cls = self.registry.find_class(resolved)
            if cls is None:
                pending = self.registry.pending_classes.pop(resolved.lower(), None)
                if pending is not None:
                    decl, state = pending
                    cls = await self.class_builder.declare(decl, self._decl_env(state), resolved)
            if cls is not None:
                return cls
        return None

    def resolve_class_name(self, name: str, env: Environment) -> str:
        """Qualifies a class name for type tests, preferring a candidate that exists."""
        candidates = env.ns.class_candidates(name)
        return next((c for c in candidates if self.class_known(c)), candidates[0])

    def class_matches(self, cls: PhpClass, name: str) -> bool:
        """instanceof against a pre-resolved type name, with the global fallback."""
        if cls.instanceof(name):
            return True
        if '\\' in name and not self.class_known(name):
            bare = name.rsplit('\\', 1)[1]
            return self.class_known(bare) and cls.instanceof(bare)
        return False

    async def lookup_class(self, name: str, env: Environment) -> PhpClass:
        cls = await self.find_class(name, env)
        if cls is None:
            raise PhpError(f'Class "{env.ns.resolve_class(name)}" not found')
        return cls

    def class_known(self, name: str) -> bool:
        key = name.lstrip('\\').lower()
        return self.registry.find_class(key) is not None or key in self.registry.pending_classes

    def function_known(self, name: str) -> bool:
        key = name.lstrip('\\').lower()
        return key in self.builtins or self.registry.find_function(key) is not None \
            or key in self.registry.pending_functions

    async def constant(self, name: str, env: Environment) -> Any:
        bare = name.lstrip('\\')
        match bare.lower():
            case 'true':
                return True
            case 'false':
                return False
            case 'null':
                return None
        for candidate in env.ns.constant_candidates(name):
            if self.registry.has_constant(candidate):
                return self.registry.get_constant(candidate)
        raise PhpError(f'Undefined constant "{bare}"')

    # =================================================================
    # Calls
    # =================================================================

    async def function_callee(self, name: str, env: Environment) -> Callee:
        """Resolves a free function call: builtin table, then namespaced, then global user functions."""
        if '\\' not in name.lstrip('\\'):
            builtin = self.builtins.get(name.lstrip('\\').lower())
            if builtin is not None:
                return Callee(builtin=builtin, name=name.lstrip('\\').lower())
        for candidate in env.ns.function_candidates(name):
            func = await self.find_function(candidate)
            if func is not None:
                return Callee(func=func, name=func.name)
        raise PhpError(f"Call to undefined function {name.lstrip(chr(92))}()")

    async def resolve_callable(self, value, env: Environment) -> Callee:
        """Resolves any callable value: closures, names, [obj, 'm'] / ['C', 'm'] pairs, invokables."""
        match value:
            case Closure():
                return Callee(func=value.func, this=value.this, static_cls=value.static_scope,
                              closure=value, name=value.func.name)
            case str():
                if '::' in value:
                    cls_name, method = value.split('::', 1)
                    cls = await self.lookup_class(cls_name if cls_name.lower() in ('self', 'static', 'parent')
                                                  else '\\' + cls_name.lstrip('\\'), env)
                    return self.objects.static_callee(cls, method, env, forward=False)
                return await self.function_callee('\\' + value.lstrip('\\'), env)
            case PhpArray():
                if len(value) != 2:
                    raise PhpError("Array callback must have exactly two elements")
                target, method = value.values()
                if not isinstance(method, str):
                    raise PhpError("Array callback must have exactly two elements")
                if isinstance(target, PhpObject):
                    if method.lower().startswith('parent::'):
                        return self.objects.static_callee(target.cls.parent, method[8:], env, forward=True)
                    return self.objects.method_callee(target, method, env)
                if isinstance(target, str):
                    cls = await self.lookup_class(target if target.lower() in ('self', 'static', 'parent')
                                                  else '\\' + target.lstrip('\\'), env)
                    return self.objects.static_callee(cls, method, env, forward=False)
                raise PhpError("Array callback must have exactly two elements")
            case PhpObject():
                invoke = value.cls.find_method('__invoke')
                if invoke is not None:
                    return Callee(func=invoke, this=value, static_cls=value.cls, name='__invoke')
                raise PhpError(f"Object of type {value.cls.name} is not callable")
        raise PhpError(f"Value of type {debug_type(value)} is not callable")

    def is_callable(self, value) -> bool:
        match value:
            case Closure():
                return True
            case str():
                if '::' in value:
                    cls_name, method = value.split('::', 1)
                    cls = self.registry.find_class(cls_name)
                    return cls is not None and cls.find_method(method) is not None
                return self.function_known(value)
            case PhpArray():
                if len(value) != 2:
                    return False
                target, method = value.values()
                if not isinstance(method, str):
                    return False
                if isinstance(target, PhpObject):
                    return target.cls.find_method(method) is not None or \
                        target.cls.find_method('__call') is not None
                if isinstance(target, str):
                    cls = self.registry.find_class(target)
                    return cls is not None and (cls.find_method(method) is not None or
                                                cls.find_method('__callStatic') is not None)
                return False
            case PhpObject():
                return value.cls.find_method('__invoke') is not None
        return False

    async def call_value(self, value, values: List[Any], env: Optional[Environment] = None) -> Any:
        """Calls a callable value with already evaluated positional arguments."""
        env = env or self.globals
        callee = await self.resolve_callable(value, env)
        return await self.invoke(callee, [CallArg(v) for v in values], env)

    async def call_method(self, obj: PhpObject, name: str, values=(), env: Optional[Environment] = None) -> Any:
        """Host-initiated method call (iteration protocol, ArrayAccess, magic methods)."""
        method = obj.cls.find_method(name)
        if method is None:
            raise PhpError(f"Call to undefined method {obj.cls.name}::{name}()")
        return await self.call_function(method, [CallArg(v) for v in values], env or self.globals,
                                        this=obj, static_cls=obj.cls)

    def callable_to_closure(self, callee: Callee) -> Closure:
        """First-class callable syntax and Closure::fromCallable."""
        if callee.closure is not None:
            return callee.closure
        if callee.func is not None and callee.magic_name is None:
            return Closure(callee.func, this=callee.this, scope=callee.func.cls, static_scope=callee.static_cls,
                           handle=self.registry.object_handle())

        async def forward(ev, this, values):
            return await ev.invoke(callee, [CallArg(v) for v in values[-1].values()], ev.globals)

        return Closure(native_method(callee.magic_name or callee.name, forward, params=("...args",)),
                       handle=self.registry.object_handle())

    async def invoke(self, callee: Callee, args: List[CallArg], env: Environment, node=None) -> Any:
        if callee.builtin is not None:
            return await self._call_builtin(callee, args, env, node)
        if callee.magic_name is not None:
            packed = PhpArray()
            for arg in args:
                packed.set(arg.name, arg.value)
            args = [CallArg(callee.magic_name), CallArg(packed)]
        return await self.call_function(callee.func, args, env, this=callee.this,
                                        static_cls=callee.static_cls, closure=callee.closure, node=node)

    def _signature(self, fn) -> inspect.Signature:
        sig = self._builtin_signatures.get(fn)
        if sig is None:
            sig = self._builtin_signatures[fn] = inspect.signature(fn)
        return sig

    async def _call_builtin(self, callee: Callee, args: List[CallArg], env: Environment, node) -> Any:
        fn = callee.builtin
        positional, kwargs = [], {}
        for i, arg in enumerate(args):
            value = arg.value
            if callee.by_ref_at(i):
                value = arg.ref if arg.ref is not None else Ref(arg.value)
            if arg.name is None:
                if kwargs:
                    raise PhpError("Cannot use positional argument after named argument")
                positional.append(value)
            else:
                kwargs[arg.name] = value
        sig = self._signature(fn)
        if 'env' in sig.parameters:
            kwargs['env'] = env
        try:
            sig.bind(*positional, **kwargs)
        except TypeError:
            raise PhpError(self._arity_message(callee.name, sig, len(args), kwargs), 'ArgumentCountError')
        self._push_frame(callee.name, fn, positional, node)
        try:
            result = fn(*positional, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        finally:
            self._pop_frame()
        return result

    def _arity_message(self, name: str, sig: inspect.Signature, given: int, kwargs: dict) -> str:
        params = [p for p in sig.parameters.values() if p.name != 'env']
        for key in kwargs:
            if key != 'env' and key not in sig.parameters and \
                    not any(p.kind is p.VAR_KEYWORD for p in params):
                return f"Unknown named parameter ${key}"
        required = sum(1 for p in params if p.default is p.empty and
                       p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD))
        variadic = any(p.kind is p.VAR_POSITIONAL for p in params)
        maximum = sum(1 for p in params if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD))
        if given < required:
            qualifier = 'exactly' if required == maximum and not variadic else 'at least'
            count = required
        else:
            qualifier = 'exactly' if required == maximum else 'at most'
            count = maximum
        noun = 'argument' if count == 1 else 'arguments'
        return f"{name}() expects {qualifier} {count} {noun}, {given} given"

    async def call_function(self, func: FunctionDef, args: List[CallArg], env: Environment, *,
                            this: Optional[PhpObject] = None, static_cls: Optional[PhpClass] = None,
                            closure: Optional[Closure] = None, node=None) -> Any:
        """Binds arguments into a fresh call frame and runs the body."""
        if func.abstract:
            raise PhpError(f"Cannot call abstract method {func.qualified_name}()")
        if func.native is not None:
            scope = Environment(parent=self.globals)
            values = self.binder.bind(func, args, scope)
            self._push_frame(func.qualified_name, func, values, node)
            try:
                return await func.native(self, this, values)
            finally:
                self._pop_frame()

        if len(self.call_stack) >= self.config.max_call_depth:
            raise PhpError(f"Maximum function nesting level of '{self.config.max_call_depth}' reached, aborting!")

        if func.static:
            this = None
        scope = self.globals.new_enclosed()
        if func.ns_state is not None:
            scope.ns = NamespaceResolver(func.ns_state)
        scope.function = func
        scope.this = this
        scope.current_class = closure.scope if closure is not None else func.cls
        scope.static_class = static_cls or (this.cls if this is not None else None) or scope.current_class
        if closure is not None:
            for name, bound in closure.bound.items():
                if isinstance(bound, Ref):
                    scope.bind_ref(name, bound)
                else:
                    scope.vars[name] = Ref(copy_value(bound))

        values = self.binder.bind(func, args, scope, strict=self.strict_types)
        if this is not None and func.name.lower() == '__construct':
            for param in func.params:
                if param.promote:
                    self.objects.init_promoted(this, param, scope.vars[param.name].value)

        if func.is_generator:
            return self._make_generator(func, scope)

        self._push_frame(func.qualified_name, func, values, node)
        try:
            result = await self.exec_block(func.body, scope)
        finally:
            self._pop_frame()
        return self._completion_result(func, result)

    def _completion_result(self, func: FunctionDef, result: Completion) -> Any:
        match result:
            case Return(value=value):
                pass
            case Normal():
                if func.return_type == 'never':
                    raise PhpError(f"{func.display_name}: never-returning function must not implicitly return",
                                   'TypeError')
                if func.return_type and func.return_type not in ('void', 'mixed') \
                        and not _is_nullable(func.return_type):
                    raise PhpError(f"{func.display_name}: Return value must be of type {func.return_type}, "
                                   f"none returned", 'TypeError')
                value = None
            case Thrown(exception=exc):
                raise ThrowSignal(exc)
            case Exit(status=status):
                raise ExitSignal(status)
            case Break() | Continue():
                raise PhpError("'break' not in the 'loop' or 'switch' context")
        return self.binder.check_return(func, value, self.strict_types)

    def _make_generator(self, func: FunctionDef, scope: Environment) -> PhpObject:
        async def body():
            result = await self.exec_block(func.body, scope)
            match result:
                case Return(value=value):
                    return value
                case Thrown(exception=exc):
                    raise ThrowSignal(exc)
                case Exit(status=status):
                    raise ExitSignal(status)
            return None

        runner = GeneratorRunner(self, body, func.qualified_name)
        scope.generator = runner
        gen = PhpObject(self.builtin_classes.generator, handle=self.registry.object_handle())
        gen.native = runner
        return gen

    # =================================================================
    # Conversions and errors
    # =================================================================

    async def to_string(self, value, env: Optional[Environment] = None) -> str:
        match value:
            case str():
                return value
            case PhpObject():
                method = value.cls.find_method('__toString')
                if method is None:
                    raise PhpError(f"Object of class {value.cls.name} could not be converted to string")
                result = await self.call_function(method, [], env or self.globals, this=value)
                if not isinstance(result, str):
                    raise PhpError(f"{value.cls.name}::__toString(): Return value must be of type string, "
                                   f"{debug_type(result)} returned", 'TypeError')
                return result
            case PhpArray():
                self.warn("Array to string conversion")
                return "Array"
            case Closure():
                raise PhpError("Object of class Closure could not be converted to string")
        return to_str(value)

    def new_throwable(self, class_name: str, message: str = '', code: int = 0,
                      previous: Optional[PhpObject] = None) -> PhpObject:
        cls = self.registry.find_class(class_name) or self.registry.find_class('Error')
        obj = self.objects.create(cls)
        self.builtin_classes.init_throwable(obj, message, code, previous)
        return obj

    def throw_error(self, class_name: str, message: str) -> None:
        raise ThrowSignal(self.new_throwable(class_name, message))

    def error_to_throwable(self, err: PhpError) -> PhpObject:
        return self.new_throwable(err.php_class or 'Error', err.message)


def _is_nullable(type_str: str) -> bool:
    return type_str.startswith('?') or type_str in ('mixed', 'null') or 'null' in type_str.split('|')
