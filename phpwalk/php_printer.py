"""
Formatters for PHP values: var_dump, print_r and var_export output.
"""
from phpwalk.php_datatypes import (
    PhpArray, PhpObject, Closure, Resource, Ref, UNINITIALIZED, deref,
)
from phpwalk.php_operators import repr_float, to_str


class Printer:
    """Renders PHP values in the three debug output formats."""

    def __init__(self, indent_width=2):
        self._indent_char = " " * indent_width
        self._dump_handlers = self._create_dump_handlers()

    def pformat(self, obj, level=0):
        """Public entry point: the var_export form, used by the CLI for result values."""
        return self.var_export(obj, level)

    # =================================================================
    # var_dump
    # =================================================================

    def _create_dump_handlers(self):
        return {
            type(None): lambda o, l, s: "NULL",
            bool: lambda o, l, s: f"bool({'true' if o else 'false'})",
            int: lambda o, l, s: f"int({o})",
            float: lambda o, l, s: f"float({repr_float(o)})",
            str: lambda o, l, s: f'string({len(o.encode("utf-8"))}) "{o}"',
            PhpArray: self._dump_array,
            PhpObject: self._dump_object,
            Closure: lambda o, l, s: f"object(Closure)#{o.id} (0) {{\n{self._indent_char * l}}}",
            Resource: lambda o, l, s: f"resource({o.id}) of type ({'Unknown' if o.closed else o.kind})",
        }

    def var_dump(self, obj) -> str:
        return self._dump(obj, 0, set()) + "\n"

    def _dump(self, obj, level, seen):
        obj = deref(obj)
        handler = self._dump_handlers.get(type(obj))
        if handler is None:
            return f"NULL"
        return handler(obj, level, seen)

    def _dump_array(self, arr, level, seen):
        if id(arr) in seen:
            return "*RECURSION*"
        pad = self._indent_char * (level + 1)
        lines = [f"array({len(arr)}) {{"]
        seen.add(id(arr))
        for key, value in arr.items():
            shown = key if isinstance(key, int) else f'"{key}"'
            lines.append(f"{pad}[{shown}]=>")
            lines.append(pad + self._dump(value, level + 1, seen))
        seen.discard(id(arr))
        lines.append(f"{self._indent_char * level}}}")
        return "\n".join(lines)

    def _dump_object(self, obj, level, seen):
        if obj.cls.kind == 'enum':
            return f"enum({obj.cls.name}::{obj.get_prop('name')})"
        if obj.id in seen:
            return "*RECURSION*"
        pad = self._indent_char * (level + 1)
        props = [(name, slot) for name, slot in obj.props.items()]
        lines = [f"object({obj.cls.name})#{obj.id} ({len(props)}) {{"]
        seen.add(obj.id)
        for name, slot in props:
            lines.append(f"{pad}[{self._dump_prop_label(obj, name)}]=>")
            if deref(slot) is UNINITIALIZED:
                lines.append(f"{pad}uninitialized({obj.cls.props[name].type or 'mixed'})")
            else:
                lines.append(pad + self._dump(slot, level + 1, seen))
        seen.discard(obj.id)
        lines.append(f"{self._indent_char * level}}}")
        return "\n".join(lines)

    @staticmethod
    def _dump_prop_label(obj, name):
        decl = obj.cls.props.get(name)
        if decl is None or decl.visibility == 'public':
            return f'"{name}"'
        if decl.visibility == 'protected':
            return f'"{name}":protected'
        return f'"{name}":"{decl.cls.name}":private'

    # =================================================================
    # print_r
    # =================================================================

    def print_r(self, obj, level=0, seen=None) -> str:
        obj = deref(obj)
        seen = seen if seen is not None else set()
        if isinstance(obj, PhpArray):
            if id(obj) in seen:
                return "Array\n *RECURSION*"
            seen.add(id(obj))
            text = self._print_r_table("Array", obj.items(), level, seen)
            seen.discard(id(obj))
            return text
        if isinstance(obj, PhpObject):
            if obj.id in seen:
                return f"{obj.cls.name} Object\n *RECURSION*"
            seen.add(obj.id)
            items = []
            for name, slot in obj.props.items():
                if deref(slot) is UNINITIALIZED:
                    continue
                decl = obj.cls.props.get(name)
                label = name
                if decl is not None and decl.visibility == 'protected':
                    label = f"{name}:protected"
                elif decl is not None and decl.visibility == 'private':
                    label = f"{name}:{decl.cls.name}:private"
                items.append((label, slot))
            text = self._print_r_table(f"{obj.cls.name} Object", items, level, seen)
            seen.discard(obj.id)
            return text
        if isinstance(obj, Closure):
            return self._print_r_table("Closure Object", [], level, seen)
        return to_str(obj)

    def _print_r_table(self, title, items, level, seen):
        pad = " " * level
        lines = [title, f"{pad}("]
        for key, value in items:
            lines.append(f"{pad}    [{key}] => {self.print_r(value, level + 8, seen)}")
        lines.append(f"{pad})")
        return "\n".join(lines) + "\n"

    # =================================================================
    # var_export
    # =================================================================

    def var_export(self, obj, level=0) -> str:
        obj = deref(obj)
        match obj:
            case None:
                return "NULL"
            case bool():
                return 'true' if obj else 'false'
            case int():
                return str(obj)
            case float():
                text = repr_float(obj)
                if text.lstrip('-').isdigit():
                    text += ".0"
                return text
            case str():
                return "'" + obj.replace("\\", "\\\\").replace("'", "\\'") + "'"
            case PhpArray():
                return self._export_array(obj, level)
            case PhpObject() if obj.cls.kind == 'enum':
                return f"\\{obj.cls.name}::{obj.get_prop('name')}"
            case PhpObject():
                return self._export_object(obj, level)
            case Closure():
                return "\\Closure::__set_state(array(\n))"
        return "NULL"

    def _export_entries(self, items, level, pad):
        lines = []
        for key, value in items:
            shown = key if isinstance(key, int) else self.var_export(str(key))
            value = deref(value)
            if isinstance(value, (PhpArray, PhpObject)) and not \
                    (isinstance(value, PhpObject) and value.cls.kind == 'enum'):
                lines.append(f"{pad}{shown} => \n{pad}{self.var_export(value, level + 1)},")
            else:
                lines.append(f"{pad}{shown} => {self.var_export(value, level + 1)},")
        return lines

    def _export_array(self, arr, level):
        outer = self._indent_char * level
        pad = self._indent_char * (level + 1)
        lines = ["array ("] + self._export_entries(arr.items(), level, pad) + [f"{outer})"]
        return "\n".join(lines)

    def _export_object(self, obj, level):
        outer = self._indent_char * level
        pad = outer + "   "
        items = [(name, slot) for name, slot in obj.props.items() if deref(slot) is not UNINITIALIZED]
        entries = self._export_entries(items, level, pad)
        if obj.cls.name == 'stdClass':
            return "\n".join(["(object) array("] + entries + [f"{outer})"])
        return "\n".join([f"\\{obj.cls.name}::__set_state(array("] + entries + [f"{outer}))"])
