"""Terse constructors for the syntax trees the tests feed to ScriptRunner."""
from phpwalk import php_ast as ast
from phpwalk.php_config import InterpreterConfig
from phpwalk.php_runtime import ScriptRunner


def node(value):
    return value if isinstance(value, ast.Node) else ast.Lit(value)


def var(name):
    return ast.Var(name)


def arg(value, name=None):
    return ast.Arg(node(value), name=name)


def args_of(values, named=None):
    out = [v if isinstance(v, ast.Arg) else arg(v) for v in values]
    out += [arg(v, name=k) for k, v in (named or {}).items()]
    return out


def call(func, *values, **named):
    return ast.Call(func, args_of(values, named))


def new(cls, *values, **named):
    return ast.New(cls, args_of(values, named))


def mcall(obj, name, *values, **named):
    return ast.MethodCall(node(obj), name, args_of(values, named))


def scall(cls, name, *values):
    return ast.StaticCall(cls, name, args_of(values))


def prop(obj, name):
    return ast.PropFetch(node(obj), name)


def index(base, key=None):
    return ast.Index(node(base), None if key is None else node(key))


def binop(op, left, right):
    return ast.BinOp(op, node(left), node(right))


def array(*values, **pairs):
    items = [ast.ArrayItem(node(v)) for v in values]
    items += [ast.ArrayItem(node(v), key=ast.Lit(k)) for k, v in pairs.items()]
    return ast.ArrayLit(items)


def const(name):
    return ast.ConstFetch(name)


def assign(target, value, op=None):
    target = var(target) if isinstance(target, str) else target
    return ast.ExprStmt(ast.Assign(target, node(value), op))


def stmt(expr):
    return ast.ExprStmt(expr)


def echo(*exprs):
    return ast.Echo([node(e) for e in exprs])


def ret(value=None):
    return ast.Return(None if value is None else node(value))


def param(name, **kw):
    return ast.Param(name, **kw)


def params_of(names):
    return [param(p) if isinstance(p, str) else p for p in names]


def function(name, params, body, **kw):
    return ast.FunctionDecl(name, params_of(params), body, **kw)


def method(name, params, body, **kw):
    return ast.MethodDecl(name, params_of(params), body, **kw)


def closure(params, body, uses=(), **kw):
    return ast.ClosureExpr(params_of(params), body, [ast.ClosureUse(u.lstrip('&'), by_ref=u.startswith('&'))
                                                     for u in uses], **kw)


def arrow(params, expr):
    return ast.ArrowFn(params_of(params), node(expr))


def yield_(value=None, key=None):
    return ast.Yield(None if value is None else node(value), None if key is None else node(key))


async def run(*stmts, **config):
    """Runs the statements as one program; returns (runner, result)."""
    runner = ScriptRunner(InterpreterConfig(**config))
    result = await runner.handle_script(ast.Program(list(stmts)))
    return runner, result
