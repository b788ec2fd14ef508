"""
Namespace tracking and name resolution.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

SPECIAL_CLASS_NAMES = frozenset({'self', 'static', 'parent'})

BUILTIN_TYPES = frozenset({
    'int', 'float', 'string', 'bool', 'array', 'object', 'callable', 'iterable', 'mixed',
    'null', 'void', 'never', 'false', 'true', 'self', 'static', 'parent',
})


@dataclass
class NamespaceState:
    namespace: str = ''
    aliases: Dict[str, Dict[str, str]] = field(
        default_factory=lambda: {'class': {}, 'function': {}, 'const': {}}
    )

    def copy(self) -> 'NamespaceState':
        return NamespaceState(self.namespace, {k: dict(v) for k, v in self.aliases.items()})


class NamespaceResolver:
    """Holds the current namespace plus the class, function and constant alias tables."""

    def __init__(self, state: Optional[NamespaceState] = None):
        self.state = state if state is not None else NamespaceState()

    @property
    def namespace(self) -> str:
        return self.state.namespace

    def snapshot(self) -> NamespaceState:
        return self.state.copy()

    def enter(self, name: Optional[str]) -> None:
        """Switches namespace; ``use`` imports do not carry over."""
        self.state = NamespaceState((name or '').strip('\\'))

    def add_use(self, kind: str, name: str, alias: Optional[str] = None) -> None:
        name = name.strip('\\')
        alias = alias or name.rsplit('\\', 1)[-1]
        # Function and class aliases are case-insensitive, constants are not
        key = alias if kind == 'const' else alias.lower()
        self.state.aliases[kind][key] = name

    def qualify(self, name: str) -> str:
        """Prefixes the current namespace onto a declaration name."""
        if self.state.namespace:
            return f"{self.state.namespace}\\{name}"
        return name

    def resolve_class(self, name: str) -> str:
        """Fully qualifies a class/interface/trait/enum reference (no leading backslash)."""
        if name.startswith('\\'):
            return name[1:]
        if name.lower() in SPECIAL_CLASS_NAMES:
            return name.lower()
        if name.lower().startswith('namespace\\'):
            return self.qualify(name[len('namespace\\'):])
        head, sep, rest = name.partition('\\')
        alias = self.state.aliases['class'].get(head.lower())
        if alias is not None:
            return f"{alias}{sep}{rest}" if sep else alias
        return self.qualify(name)

    def class_candidates(self, name: str) -> List[str]:
        """Names to try, in order, for a class reference.

        An unqualified, un-aliased name inside a namespace falls back to the
        global name so builtin classes stay reachable.
        """
        resolved = self.resolve_class(name)
        if self.state.namespace and '\\' not in name \
                and name.lower() not in SPECIAL_CLASS_NAMES \
                and name.lower() not in self.state.aliases['class']:
            return [resolved, name]
        return [resolved]

    def function_candidates(self, name: str) -> List[str]:
        """Names to try, in order, for a function call."""
        if name.startswith('\\'):
            return [name[1:]]
        if '\\' in name:
            if name.lower().startswith('namespace\\'):
                return [self.qualify(name[len('namespace\\'):])]
            head, _, rest = name.partition('\\')
            alias = self.state.aliases['class'].get(head.lower())
            if alias is not None:
                return [f"{alias}\\{rest}"]
            return [self.qualify(name)]
        alias = self.state.aliases['function'].get(name.lower())
        if alias is not None:
            return [alias]
        if self.state.namespace:
            return [self.qualify(name), name]
        return [name]

    def constant_candidates(self, name: str) -> List[str]:
        if name.startswith('\\'):
            return [name[1:]]
        if '\\' in name:
            head, _, rest = name.partition('\\')
            alias = self.state.aliases['class'].get(head.lower())
            if alias is not None:
                return [f"{alias}\\{rest}"]
            return [self.qualify(name)]
        alias = self.state.aliases['const'].get(name)
        if alias is not None:
            return [alias]
        if self.state.namespace:
            return [self.qualify(name), name]
        return [name]

    def resolve_type(self, type_str: Optional[str]) -> Optional[str]:
        """Qualifies the class names inside a type declaration, keeping builtin types."""
        if not type_str:
            return type_str
        nullable = type_str.startswith('?')
        body = type_str[1:] if nullable else type_str
        sep = '&' if '&' in body and '|' not in body else '|'
        parts = []
        for part in body.split(sep):
            part = part.strip().strip('()')
            if part.lower() in BUILTIN_TYPES:
                parts.append(part.lower())
            else:
                parts.append(self.resolve_class(part))
        resolved = sep.join(parts)
        return f"?{resolved}" if nullable else resolved
