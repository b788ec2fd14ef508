"""
The object model: function and method definitions, class records and the
builder that turns class-like declarations into finalized class tables.

A PhpClass keeps its parent link and interfaces, and when its declaration
is finalized it gets a flattened method table and property table covering
inheritance and trait composition. Method and property resolution afterwards
is a single dictionary access.
"""
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from phpwalk import php_ast as ast
from phpwalk.php_datatypes import PhpError, PhpObject, Ref, UNINITIALIZED, copy_value

if TYPE_CHECKING:
    from phpwalk.php_interpreter import Evaluator
    from phpwalk.php_environment import Environment
    from phpwalk.php_namespaces import NamespaceState

NO_DEFAULT = object()


# =================================================================
# Definitions
# =================================================================

class ParamDef:
    def __init__(self, name: str, type: Optional[str] = None, default: Any = NO_DEFAULT,
                 variadic: bool = False, by_ref: bool = False, promote: Optional[str] = None,
                 readonly: bool = False):
        self.name = name
        self.type = type
        self.default = default
        self.variadic = variadic
        self.by_ref = by_ref
        self.promote = promote
        self.readonly = readonly

    @property
    def has_default(self) -> bool:
        return self.default is not NO_DEFAULT

    def __repr__(self):
        return f"ParamDef(${self.name})"


class FunctionDef:
    """A user function, closure body, method, or a native (host) method.

    Default values of parameters are evaluated once, when the definition is
    built, and reused on every call. ``native`` is an async callable
    ``(evaluator, this, args) -> value`` for builtin class methods.
    """
    def __init__(self, name: str, params: List[ParamDef], body: Any = None, *,
                 cls: Optional['PhpClass'] = None, visibility: str = 'public',
                 static: bool = False, abstract: bool = False, final: bool = False,
                 is_generator: bool = False, by_ref: bool = False,
                 return_type: Optional[str] = None, ns_state: Optional['NamespaceState'] = None,
                 native: Optional[Callable] = None):
        self.name = name
        self.params = params
        self.body = body
        self.cls = cls
        self.visibility = visibility
        self.static = static
        self.abstract = abstract
        self.final = final
        self.is_generator = is_generator
        self.by_ref = by_ref
        self.return_type = return_type
        self.ns_state = ns_state
        self.native = native
        # `static $x` slots, keyed by variable name
        self.statics: Dict[str, Ref] = {}
        # The declaring AST node, used to skip re-declaration after hoisting
        self.decl = None
        # The class that first declared this method (visibility of overrides)
        self.prototype: Optional['PhpClass'] = cls

    @property
    def qualified_name(self) -> str:
        if self.cls is not None:
            return f"{self.cls.name}::{self.name}"
        return self.name

    @property
    def display_name(self) -> str:
        return f"{self.qualified_name}()"

    def param_index(self) -> Dict[str, int]:
        return {p.name: i for i, p in enumerate(self.params)}

    def copy_for(self, cls: 'PhpClass', name: Optional[str] = None,
                 visibility: Optional[str] = None) -> 'FunctionDef':
        """A copy re-homed into ``cls`` (trait import)."""
        new = FunctionDef(
            name or self.name, self.params, self.body, cls=cls,
            visibility=visibility or self.visibility, static=self.static,
            abstract=self.abstract, final=self.final, is_generator=self.is_generator,
            by_ref=self.by_ref, return_type=self.return_type, ns_state=self.ns_state,
            native=self.native,
        )
        return new

    def __repr__(self):
        return f"<FunctionDef {self.qualified_name}>"


def native_method(name: str, fn: Callable, params=(), **kwargs) -> FunctionDef:
    """Wraps a host coroutine as a method. ``params`` are names or (name, default) pairs."""
    defs = []
    for p in params:
        if isinstance(p, tuple):
            defs.append(ParamDef(p[0], default=p[1]))
        elif p.startswith('...'):
            defs.append(ParamDef(p[3:], variadic=True))
        else:
            defs.append(ParamDef(p))
    return FunctionDef(name, defs, native=fn, **kwargs)


class PropertyDef:
    def __init__(self, name: str, default: Any = None, visibility: str = 'public',
                 static: bool = False, readonly: bool = False, type: Optional[str] = None,
                 cls: Optional['PhpClass'] = None):
        self.name = name
        self.default = default
        self.visibility = visibility
        self.static = static
        self.readonly = readonly
        self.type = type
        self.cls = cls

    def copy_for(self, cls: 'PhpClass') -> 'PropertyDef':
        return PropertyDef(self.name, copy_value(self.default), self.visibility, self.static,
                           self.readonly, self.type, cls)


class ConstDef:
    """A class constant. The expression is evaluated on first access."""
    def __init__(self, name: str, expr: Any = None, cls: Optional['PhpClass'] = None,
                 visibility: str = 'public', final: bool = False, value: Any = None,
                 evaluated: bool = False):
        self.name = name
        self.expr = expr
        self.cls = cls
        self.visibility = visibility
        self.final = final
        self.value = value
        self.evaluated = evaluated
        self.evaluating = False


# =================================================================
# Classes
# =================================================================

class PhpClass:
    """A class, interface, trait or enum record with finalized lookup tables."""

    def __init__(self, name: str, kind: str = 'class', parent: Optional['PhpClass'] = None):
        self.name = name
        self.kind = kind
        self.parent = parent
        self.interfaces: List['PhpClass'] = []
        self.abstract = kind == 'interface'
        self.final = False
        self.readonly = False
        self.methods: Dict[str, FunctionDef] = {}
        self.props: Dict[str, PropertyDef] = {}
        self.static_props: Dict[str, PropertyDef] = {}
        self.static_values: Dict[str, Ref] = {}
        self.constants: Dict[str, ConstDef] = {}
        self.ancestors = {name.lower()}
        self.enum_cases: Dict[str, PhpObject] = {}
        self.backing_type: Optional[str] = None
        self.ns_state = None
        self.decl = None

    def __repr__(self):
        return f"<PhpClass {self.kind} {self.name}>"

    @property
    def short_name(self) -> str:
        return self.name.rsplit('\\', 1)[-1]

    def find_method(self, name: str) -> Optional[FunctionDef]:
        return self.methods.get(name.lower())

    def instanceof(self, name: str) -> bool:
        return name.lstrip('\\').lower() in self.ancestors

    def is_subclass_of(self, other: 'PhpClass') -> bool:
        return other.name.lower() in self.ancestors

    def find_static(self, name: str):
        return self.static_values.get(name), self.static_props.get(name)

    def all_interfaces(self) -> List['PhpClass']:
        seen: Dict[str, PhpClass] = {}
        stack: List[PhpClass] = []
        cur: Optional[PhpClass] = self
        while cur is not None:
            stack.extend(cur.interfaces)
            cur = cur.parent
        while stack:
            iface = stack.pop()
            key = iface.name.lower()
            if key not in seen:
                seen[key] = iface
                stack.extend(iface.interfaces)
        return list(seen.values())

    def add_method(self, func: FunctionDef) -> None:
        func.cls = func.cls or self
        self.methods[func.name.lower()] = func


def can_access(declaring: Optional[PhpClass], visibility: str, scope: Optional[PhpClass]) -> bool:
    """Visibility rule for members declared in ``declaring`` seen from ``scope``."""
    if visibility == 'public' or declaring is None:
        return True
    if scope is None:
        return False
    if visibility == 'private':
        return scope is declaring
    return scope.is_subclass_of(declaring) or declaring.is_subclass_of(scope)


def scope_label(scope: Optional[PhpClass]) -> str:
    return f"scope {scope.name}" if scope is not None else "global scope"


# =================================================================
# Declaration
# =================================================================

class ClassBuilder:
    """Builds and registers PhpClass records from class-like declarations."""

    def __init__(self, evaluator: 'Evaluator'):
        self.evaluator = evaluator

    async def declare(self, decl, env: 'Environment', name: Optional[str] = None) -> PhpClass:
        ev = self.evaluator
        match decl:
            case ast.ClassDecl():
                kind = 'class'
            case ast.InterfaceDecl():
                kind = 'interface'
            case ast.TraitDecl():
                kind = 'trait'
            case ast.EnumDecl():
                kind = 'enum'
            case _:
                raise PhpError(f"Not a class declaration: {type(decl).__name__}")

        if name is None:
            name = env.ns.qualify(decl.name)
        if ev.registry.find_class(name) is not None:
            raise PhpError(f"Cannot declare {kind} {name}, because the name is already in use")
        cls = PhpClass(name, kind)
        cls.ns_state = env.ns.snapshot()
        cls.decl = decl
        ev._dbg("declare", kind, name)

        if isinstance(decl, ast.ClassDecl):
            cls.abstract = decl.abstract
            cls.final = decl.final
            cls.readonly = decl.readonly
            if decl.parent:
                parent = await ev.lookup_class(decl.parent, env)
                if parent.kind != 'class':
                    raise PhpError(f"Class {name} cannot extend {parent.kind} {parent.name}")
                if parent.final:
                    raise PhpError(f"Class {name} cannot extend final class {parent.name}")
                cls.parent = parent

        match decl:
            case ast.ClassDecl() | ast.EnumDecl():
                iface_names = list(decl.interfaces)
            case ast.InterfaceDecl():
                iface_names = list(decl.extends)
            case _:
                iface_names = []
        if kind == 'enum':
            iface_names.append('\\BackedEnum' if decl.backing_type else '\\UnitEnum')
        for iname in iface_names:
            iface = await ev.lookup_class(iname, env)
            if iface.kind != 'interface':
                verb = 'extend' if kind == 'interface' else 'implement'
                raise PhpError(f"{name} cannot {verb} {iface.name} - it is not an interface")
            if iface not in cls.interfaces:
                cls.interfaces.append(iface)

        self._inherit(cls)

        members = decl.members
        for member in members:
            if isinstance(member, ast.TraitUse):
                await self._use_traits(cls, member, env)

        for member in members:
            match member:
                case ast.ClassConstDecl():
                    inherited = cls.constants.get(member.name)
                    if inherited is not None and inherited.final and inherited.cls is not cls:
                        raise PhpError(f"{name}::{member.name} cannot override final constant "
                                       f"{inherited.cls.name}::{member.name}")
                    cls.constants[member.name] = ConstDef(member.name, member.value, cls,
                                                          member.visibility, member.final)
                case ast.PropertyDecl():
                    await self._declare_property(cls, member, env)
                case ast.MethodDecl():
                    await self._declare_method(cls, member, env)
                case ast.EnumCase() | ast.TraitUse():
                    pass
                case _:
                    raise PhpError(f"Unsupported class member {type(member).__name__}")

        if kind == 'enum':
            await self._declare_enum_cases(cls, decl, env)

        self._verify(cls)
        ev.registry.add_class(cls)
        return cls

    # --- Inheritance ---

    def _inherit(self, cls: PhpClass) -> None:
        parent = cls.parent
        if parent is not None:
            cls.methods = dict(parent.methods)
            cls.props = dict(parent.props)
            cls.static_props = dict(parent.static_props)
            # Static slots are shared with the parent until redeclared
            cls.static_values = dict(parent.static_values)
            cls.constants = dict(parent.constants)
            cls.ancestors |= parent.ancestors
            cls.backing_type = parent.backing_type
        for iface in cls.interfaces:
            cls.ancestors |= iface.ancestors
            for cname, const in iface.constants.items():
                cls.constants.setdefault(cname, const)
            if cls.kind == 'interface':
                for mname, method in iface.methods.items():
                    cls.methods.setdefault(mname, method)

    async def _use_traits(self, cls: PhpClass, use: ast.TraitUse, env: 'Environment') -> None:
        ev = self.evaluator
        traits = []
        for tname in use.traits:
            trait = await ev.lookup_class(tname, env)
            if trait.kind != 'trait':
                raise PhpError(f"{cls.name} cannot use {trait.name} - it is not a trait")
            traits.append(trait)

        def find_trait(tname: Optional[str], method: str) -> PhpClass:
            if tname:
                resolved = ev.resolve_class_name(tname, env).lower()
                for t in traits:
                    if t.name.lower() == resolved:
                        return t
                raise PhpError(f"Required Trait {tname} wasn't added to {cls.name}")
            for t in traits:
                if method.lower() in t.methods:
                    return t
            raise PhpError(f"An alias was defined for {method} but this method does not exist")

        excluded = set()
        for ad in use.adaptations:
            if ad.insteadof:
                find_trait(ad.trait, ad.method)
                for loser in ad.insteadof:
                    excluded.add((find_trait(loser, ad.method).name.lower(), ad.method.lower()))

        provided_by: Dict[str, PhpClass] = {}
        for trait in traits:
            for mname, method in trait.methods.items():
                if (trait.name.lower(), mname) in excluded:
                    continue
                if mname in provided_by and not method.abstract:
                    other = provided_by[mname]
                    raise PhpError(f"Trait method {other.name}::{method.name} has not been applied as "
                                   f"{cls.name}::{method.name}, because of collision with "
                                   f"{trait.name}::{method.name}")
                existing = cls.methods.get(mname)
                if method.abstract and existing is not None and not existing.abstract:
                    continue
                provided_by[mname] = trait
                cls.methods[mname] = method.copy_for(cls)
            for pname, prop in trait.props.items():
                cls.props[pname] = prop.copy_for(cls)
            for pname, prop in trait.static_props.items():
                cls.static_props[pname] = prop.copy_for(cls)
                cls.static_values[pname] = Ref(copy_value(trait.static_values[pname].value))
            for cname, const in trait.constants.items():
                cls.constants.setdefault(cname, const)

        for ad in use.adaptations:
            if ad.insteadof or not (ad.alias or ad.visibility):
                continue
            trait = find_trait(ad.trait, ad.method)
            method = trait.methods.get(ad.method.lower())
            if method is None:
                raise PhpError(f"An alias was defined for {trait.name}::{ad.method} but this method does not exist")
            if ad.alias:
                cls.methods[ad.alias.lower()] = method.copy_for(cls, name=ad.alias,
                                                                visibility=ad.visibility)
            else:
                cls.methods[ad.method.lower()] = method.copy_for(cls, visibility=ad.visibility)

    # --- Members ---

    async def _declare_property(self, cls: PhpClass, decl: ast.PropertyDecl, env: 'Environment') -> None:
        ev = self.evaluator
        if decl.default is not None:
            default = await ev.eval_in_class(decl.default, cls, env)
        elif decl.type and not decl.readonly:
            # Typed properties without a default start uninitialized
            default = UNINITIALIZED
        elif decl.readonly or cls.readonly:
            default = UNINITIALIZED
        else:
            default = None
        type_ = env.ns.resolve_type(decl.type)
        prop = PropertyDef(decl.name, default, decl.visibility, decl.static,
                           decl.readonly or cls.readonly, type_, cls)
        if decl.static:
            cls.static_props[decl.name] = prop
            cls.static_values[decl.name] = Ref(None if default is UNINITIALIZED else default)
        else:
            inherited = cls.props.get(decl.name)
            if inherited is not None and inherited.cls is not cls and \
                    _VIS_RANK[decl.visibility] > _VIS_RANK[inherited.visibility] and \
                    inherited.visibility != 'private':
                raise PhpError(f"Access level to {cls.name}::${decl.name} must be "
                               f"{inherited.visibility} (as in class {inherited.cls.name})"
                               f"{' or weaker' if inherited.visibility == 'protected' else ''}")
            cls.props[decl.name] = prop

    async def _declare_method(self, cls: PhpClass, decl: ast.MethodDecl, env: 'Environment') -> None:
        ev = self.evaluator
        lname = decl.name.lower()
        inherited = cls.methods.get(lname)
        if inherited is not None and inherited.final and inherited.cls is not cls \
                and inherited.visibility != 'private':
            raise PhpError(f"Cannot override final method {inherited.cls.name}::{inherited.name}()")
        abstract = decl.abstract or cls.kind == 'interface'
        if abstract and decl.body is not None and cls.kind != 'interface':
            raise PhpError(f"Abstract function {cls.name}::{decl.name}() cannot contain body")
        if not abstract and decl.body is None:
            raise PhpError(f"Non-abstract method {cls.name}::{decl.name}() must contain body")
        if inherited is not None and inherited.cls is not cls and inherited.visibility != 'private' \
                and _VIS_RANK[decl.visibility] > _VIS_RANK[inherited.visibility]:
            raise PhpError(f"Access level to {cls.name}::{decl.name}() must be {inherited.visibility} "
                           f"(as in class {inherited.cls.name})"
                           f"{' or weaker' if inherited.visibility == 'protected' else ''}")
        func = await ev.build_function(
            decl.name, decl.params, decl.body or [], env,
            by_ref=decl.by_ref, return_type=decl.return_type, cls=cls,
        )
        func.visibility = decl.visibility
        func.static = decl.static
        func.abstract = abstract
        func.final = decl.final
        if inherited is not None and inherited.visibility != 'private':
            func.prototype = inherited.prototype
        cls.methods[lname] = func
        if lname == '__construct':
            for param in func.params:
                if param.promote:
                    cls.props[param.name] = PropertyDef(
                        param.name, UNINITIALIZED, param.promote, False,
                        param.readonly or cls.readonly, param.type, cls,
                    )

    async def _declare_enum_cases(self, cls: PhpClass, decl: ast.EnumDecl, env: 'Environment') -> None:
        ev = self.evaluator
        cls.backing_type = decl.backing_type
        for member in decl.members:
            if not isinstance(member, ast.EnumCase):
                continue
            case = PhpObject(cls, {'name': member.name}, ev.registry.object_handle())
            if decl.backing_type:
                if member.value is None:
                    raise PhpError(f"Case {member.name} of backed enum {cls.name} must have a value")
                case.props['value'] = await ev.eval_in_class(member.value, cls, env)
            elif member.value is not None:
                raise PhpError(f"Case {member.name} of non-backed enum {cls.name} must not have a value")
            case.readonly_done.update(case.props)
            cls.enum_cases[member.name] = case
            cls.constants[member.name] = ConstDef(member.name, cls=cls, value=case, evaluated=True)
        ev.builtin_classes.install_enum_methods(cls)

    # --- Verification ---

    def _verify(self, cls: PhpClass) -> None:
        if cls.kind not in ('class', 'enum') or cls.abstract:
            return
        missing: Dict[str, FunctionDef] = {}
        for lname, method in cls.methods.items():
            if method.abstract:
                missing[lname] = method
        for iface in cls.all_interfaces():
            for lname, method in iface.methods.items():
                impl = cls.methods.get(lname)
                if impl is None or impl.abstract:
                    missing.setdefault(lname, method)
        if missing:
            n = len(missing)
            listing = ", ".join(f"{m.cls.name}::{m.name}" for m in missing.values())
            raise PhpError(
                f"Class {cls.name} contains {n} abstract method{'s' if n != 1 else ''} and must "
                f"therefore be declared abstract or implement the remaining methods ({listing})"
            )


_VIS_RANK = {'public': 0, 'protected': 1, 'private': 2}
