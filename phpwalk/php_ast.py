"""
Syntax tree node types consumed by the phpwalk evaluator.

The parser is an external collaborator: it (or the document transformer in
php_transformer) builds these nodes. Every node kind maps to exactly one
dispatch case in the statement or expression evaluator.

Names of classes, functions and constants are plain strings as written in
the source (``'Foo'``, ``'\\App\\Foo'``, ``'self'``); the evaluator resolves
them through the namespace resolver. Types are strings too (``'?int'``,
``'int|string'``, ``'Countable&Iterator'``).
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, List, Optional, Union


class Node:
    """Base for every syntax tree node. ``loc`` is attached by the AST supplier."""
    loc: Optional[dict] = None


class Expr(Node):
    pass


class Stmt(Node):
    pass


# =================================================================
# Expressions
# =================================================================

@dataclass(eq=False)
class Lit(Expr):
    value: Any


@dataclass(eq=False)
class Var(Expr):
    # A str for $name, an Expr for $$name
    name: Union[str, Expr]


@dataclass(eq=False)
class ArrayItem(Node):
    value: Optional[Expr]
    key: Optional[Expr] = None
    by_ref: bool = False
    unpack: bool = False


@dataclass(eq=False)
class ArrayLit(Expr):
    items: List[Optional[ArrayItem]] = field(default_factory=list)


@dataclass(eq=False)
class ListExpr(Expr):
    """``list(...)`` destructuring target; ``None`` items are skipped slots."""
    items: List[Optional[ArrayItem]] = field(default_factory=list)


@dataclass(eq=False)
class BinOp(Expr):
    op: str
    left: Expr
    right: Expr


@dataclass(eq=False)
class UnaryOp(Expr):
    op: str
    operand: Expr


@dataclass(eq=False)
class IncDec(Expr):
    op: str          # '++' or '--'
    target: Expr
    prefix: bool = True


@dataclass(eq=False)
class Ternary(Expr):
    cond: Expr
    then: Optional[Expr]   # None for the short form ``a ?: b``
    else_: Expr


@dataclass(eq=False)
class Assign(Expr):
    target: Expr
    value: Expr
    op: Optional[str] = None   # compound operator, e.g. '+', '.', '??'


@dataclass(eq=False)
class AssignRef(Expr):
    target: Expr
    source: Expr


@dataclass(eq=False)
class Arg(Node):
    value: Expr
    name: Optional[str] = None
    unpack: bool = False


@dataclass(eq=False)
class Call(Expr):
    func: Union[str, Expr]
    args: List[Arg] = field(default_factory=list)


@dataclass(eq=False)
class New(Expr):
    cls: Union[str, Expr, 'ClassDecl']
    args: List[Arg] = field(default_factory=list)


@dataclass(eq=False)
class MethodCall(Expr):
    obj: Expr
    name: Union[str, Expr]
    args: List[Arg] = field(default_factory=list)
    nullsafe: bool = False


@dataclass(eq=False)
class StaticCall(Expr):
    cls: Union[str, Expr]
    name: Union[str, Expr]
    args: List[Arg] = field(default_factory=list)


@dataclass(eq=False)
class CallableRef(Expr):
    """First-class callable syntax: ``strlen(...)``, ``$obj->m(...)``, ``A::m(...)``."""
    call: Expr


@dataclass(eq=False)
class PropFetch(Expr):
    obj: Expr
    name: Union[str, Expr]
    nullsafe: bool = False


@dataclass(eq=False)
class StaticPropFetch(Expr):
    cls: Union[str, Expr]
    name: Union[str, Expr]


@dataclass(eq=False)
class ClassConstFetch(Expr):
    cls: Union[str, Expr]
    name: str


@dataclass(eq=False)
class ConstFetch(Expr):
    name: str


@dataclass(eq=False)
class Index(Expr):
    base: Expr
    index: Optional[Expr] = None   # None for the append form ``$a[]``


@dataclass(eq=False)
class Interp(Expr):
    """A double-quoted or heredoc string: literal ``str`` parts and expressions."""
    parts: List[Union[str, Expr]] = field(default_factory=list)


@dataclass(eq=False)
class Param(Node):
    name: str
    type: Optional[str] = None
    default: Optional[Expr] = None
    variadic: bool = False
    by_ref: bool = False
    promote: Optional[str] = None   # visibility for constructor promotion
    readonly: bool = False


@dataclass(eq=False)
class ClosureUse(Node):
    name: str
    by_ref: bool = False


@dataclass(eq=False)
class ClosureExpr(Expr):
    params: List[Param] = field(default_factory=list)
    body: List[Stmt] = field(default_factory=list)
    uses: List[ClosureUse] = field(default_factory=list)
    static: bool = False
    by_ref: bool = False
    return_type: Optional[str] = None


@dataclass(eq=False)
class ArrowFn(Expr):
    params: List[Param] = field(default_factory=list)
    expr: Expr = None
    static: bool = False
    by_ref: bool = False
    return_type: Optional[str] = None


@dataclass(eq=False)
class Yield(Expr):
    value: Optional[Expr] = None
    key: Optional[Expr] = None


@dataclass(eq=False)
class YieldFrom(Expr):
    expr: Expr


@dataclass(eq=False)
class Throw(Expr):
    expr: Expr


@dataclass(eq=False)
class Print(Expr):
    expr: Expr


@dataclass(eq=False)
class Isset(Expr):
    vars: List[Expr] = field(default_factory=list)


@dataclass(eq=False)
class Empty(Expr):
    expr: Expr


@dataclass(eq=False)
class Exit(Expr):
    expr: Optional[Expr] = None


@dataclass(eq=False)
class MatchArm(Node):
    conds: Optional[List[Expr]]   # None for ``default``
    body: Expr


@dataclass(eq=False)
class Match(Expr):
    subject: Expr
    arms: List[MatchArm] = field(default_factory=list)


@dataclass(eq=False)
class Instanceof(Expr):
    expr: Expr
    cls: Union[str, Expr]


@dataclass(eq=False)
class Cast(Expr):
    type: str
    expr: Expr


@dataclass(eq=False)
class Clone(Expr):
    expr: Expr


@dataclass(eq=False)
class MagicConst(Expr):
    name: str   # '__LINE__', '__CLASS__', ...


@dataclass(eq=False)
class ErrorSuppress(Expr):
    expr: Expr


@dataclass(eq=False)
class Include(Expr):
    expr: Expr
    kind: str = 'include'


# =================================================================
# Statements
# =================================================================

@dataclass(eq=False)
class Program(Node):
    body: List[Stmt] = field(default_factory=list)


@dataclass(eq=False)
class Block(Stmt):
    body: List[Stmt] = field(default_factory=list)


@dataclass(eq=False)
class ExprStmt(Stmt):
    expr: Expr


@dataclass(eq=False)
class Echo(Stmt):
    exprs: List[Expr] = field(default_factory=list)


@dataclass(eq=False)
class InlineHTML(Stmt):
    text: str


@dataclass(eq=False)
class ElseIf(Node):
    cond: Expr
    body: List[Stmt] = field(default_factory=list)


@dataclass(eq=False)
class If(Stmt):
    cond: Expr
    then: List[Stmt] = field(default_factory=list)
    elifs: List[ElseIf] = field(default_factory=list)
    else_: Optional[List[Stmt]] = None


@dataclass(eq=False)
class While(Stmt):
    cond: Expr
    body: List[Stmt] = field(default_factory=list)


@dataclass(eq=False)
class DoWhile(Stmt):
    body: List[Stmt]
    cond: Expr


@dataclass(eq=False)
class For(Stmt):
    init: List[Expr] = field(default_factory=list)
    cond: List[Expr] = field(default_factory=list)
    step: List[Expr] = field(default_factory=list)
    body: List[Stmt] = field(default_factory=list)


@dataclass(eq=False)
class Foreach(Stmt):
    subject: Expr
    value: Expr
    key: Optional[Expr] = None
    by_ref: bool = False
    body: List[Stmt] = field(default_factory=list)


@dataclass(eq=False)
class Case(Node):
    cond: Optional[Expr]   # None for ``default``
    body: List[Stmt] = field(default_factory=list)


@dataclass(eq=False)
class Switch(Stmt):
    subject: Expr
    cases: List[Case] = field(default_factory=list)


@dataclass(eq=False)
class Break(Stmt):
    levels: int = 1


@dataclass(eq=False)
class Continue(Stmt):
    levels: int = 1


@dataclass(eq=False)
class Return(Stmt):
    expr: Optional[Expr] = None


@dataclass(eq=False)
class Catch(Node):
    types: List[str]
    var: Optional[str] = None
    body: List[Stmt] = field(default_factory=list)


@dataclass(eq=False)
class Try(Stmt):
    body: List[Stmt]
    catches: List[Catch] = field(default_factory=list)
    finally_: Optional[List[Stmt]] = None


@dataclass(eq=False)
class Global(Stmt):
    names: List[str] = field(default_factory=list)


@dataclass(eq=False)
class StaticVarItem(Node):
    name: str
    default: Optional[Expr] = None


@dataclass(eq=False)
class StaticVar(Stmt):
    vars: List[StaticVarItem] = field(default_factory=list)


@dataclass(eq=False)
class Unset(Stmt):
    targets: List[Expr] = field(default_factory=list)


@dataclass(eq=False)
class ConstItem(Node):
    name: str
    value: Expr


@dataclass(eq=False)
class ConstStmt(Stmt):
    items: List[ConstItem] = field(default_factory=list)


@dataclass(eq=False)
class Declare(Stmt):
    directives: dict = field(default_factory=dict)
    body: Optional[List[Stmt]] = None


@dataclass(eq=False)
class Namespace(Stmt):
    name: Optional[str]
    body: Optional[List[Stmt]] = None   # None for the unbraced form


@dataclass(eq=False)
class UseItem(Node):
    name: str
    alias: Optional[str] = None
    kind: Optional[str] = None   # per-item kind inside a grouped use


@dataclass(eq=False)
class Use(Stmt):
    items: List[UseItem] = field(default_factory=list)
    kind: str = 'class'   # 'class', 'function' or 'const'
    prefix: Optional[str] = None   # group prefix for ``use A\{B, C}``


@dataclass(eq=False)
class Label(Stmt):
    name: str


@dataclass(eq=False)
class Goto(Stmt):
    label: str


@dataclass(eq=False)
class Nop(Stmt):
    pass


# =================================================================
# Declarations
# =================================================================

@dataclass(eq=False)
class FunctionDecl(Stmt):
    name: str
    params: List[Param] = field(default_factory=list)
    body: List[Stmt] = field(default_factory=list)
    by_ref: bool = False
    return_type: Optional[str] = None


@dataclass(eq=False)
class PropertyDecl(Node):
    name: str
    default: Optional[Expr] = None
    visibility: str = 'public'
    static: bool = False
    readonly: bool = False
    type: Optional[str] = None


@dataclass(eq=False)
class MethodDecl(Node):
    name: str
    params: List[Param] = field(default_factory=list)
    body: Optional[List[Stmt]] = None   # None for abstract/interface methods
    visibility: str = 'public'
    static: bool = False
    abstract: bool = False
    final: bool = False
    by_ref: bool = False
    return_type: Optional[str] = None


@dataclass(eq=False)
class ClassConstDecl(Node):
    name: str
    value: Expr
    visibility: str = 'public'
    final: bool = False


@dataclass(eq=False)
class TraitAdaptation(Node):
    method: str
    trait: Optional[str] = None
    insteadof: List[str] = field(default_factory=list)
    alias: Optional[str] = None
    visibility: Optional[str] = None


@dataclass(eq=False)
class TraitUse(Node):
    traits: List[str] = field(default_factory=list)
    adaptations: List[TraitAdaptation] = field(default_factory=list)


@dataclass(eq=False)
class EnumCase(Node):
    name: str
    value: Optional[Expr] = None


@dataclass(eq=False)
class ClassDecl(Stmt):
    name: Optional[str]   # None for ``new class``
    parent: Optional[str] = None
    interfaces: List[str] = field(default_factory=list)
    members: List[Node] = field(default_factory=list)
    abstract: bool = False
    final: bool = False
    readonly: bool = False


@dataclass(eq=False)
class InterfaceDecl(Stmt):
    name: str
    extends: List[str] = field(default_factory=list)
    members: List[Node] = field(default_factory=list)


@dataclass(eq=False)
class TraitDecl(Stmt):
    name: str
    members: List[Node] = field(default_factory=list)


@dataclass(eq=False)
class EnumDecl(Stmt):
    name: str
    backing_type: Optional[str] = None
    interfaces: List[str] = field(default_factory=list)
    members: List[Node] = field(default_factory=list)


CLASS_LIKE = (ClassDecl, InterfaceDecl, TraitDecl, EnumDecl)


# =================================================================
# Tree walking helpers
# =================================================================

def iter_children(node):
    """Yields the direct child nodes of ``node`` (lists are flattened)."""
    if not is_dataclass(node):
        return
    for f in fields(node):
        value = getattr(node, f.name)
        if isinstance(value, Node):
            yield value
        elif isinstance(value, list):
            for item in value:
                if isinstance(item, Node):
                    yield item
                elif isinstance(item, list):
                    yield from (x for x in item if isinstance(x, Node))


_SCOPE_BOUNDARIES = (ClosureExpr, ArrowFn, FunctionDecl, MethodDecl) + CLASS_LIKE


def contains_yield(body) -> bool:
    """True when a function body lexically contains ``yield`` or ``yield from``.

    Nested functions, closures and classes are their own bodies and are not searched.
    """
    stack = list(body) if isinstance(body, list) else [body]
    while stack:
        node = stack.pop()
        if isinstance(node, (Yield, YieldFrom)):
            return True
        if isinstance(node, _SCOPE_BOUNDARIES):
            continue
        stack.extend(iter_children(node))
    return False


def used_variables(node) -> List[str]:
    """Names of plain variables referenced in ``node``, in first-use order.

    Arrow functions capture these by value from the defining scope. Nested
    arrow functions are searched (they capture through us); other function
    bodies are not.
    """
    seen: dict = {}
    stack = [node]
    while stack:
        cur = stack.pop()
        if isinstance(cur, Var) and isinstance(cur.name, str):
            seen.setdefault(cur.name, None)
        if isinstance(cur, ClosureExpr):
            for use in cur.uses:
                seen.setdefault(use.name, None)
            continue
        if isinstance(cur, (FunctionDecl, MethodDecl) + CLASS_LIKE):
            continue
        stack.extend(reversed(list(iter_children(cur))))
    return list(seen)


NODE_TYPES = {
    cls.__name__: cls
    for cls in list(globals().values())
    if isinstance(cls, type) and issubclass(cls, Node) and is_dataclass(cls)
}
