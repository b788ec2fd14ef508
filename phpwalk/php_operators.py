"""
Type juggling, comparison and arithmetic for phpwalk values.

Everything here is synchronous and works on already-evaluated values. The
evaluator converts objects to strings (``__toString``) before handing them to
string operations; comparisons treat objects structurally.
"""
import math
import re
from decimal import Decimal
from typing import Any, Callable, Optional, Tuple

from phpwalk.php_datatypes import (
    PhpArray, PhpObject, Closure, Resource, PhpError, INT_MAX, INT_MIN, deref,
)

_NUMERIC = re.compile(
    r'^[ \t\n\r\v\f]*([+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?)[ \t\n\r\v\f]*$'
)
_LEADING_NUMERIC = re.compile(
    r'^[ \t\n\r\v\f]*([+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?)'
)


# =================================================================
# Type names
# =================================================================

def gettype(value: Any) -> str:
    match value:
        case None:
            return "NULL"
        case bool():
            return "boolean"
        case int():
            return "integer"
        case float():
            return "double"
        case str():
            return "string"
        case PhpArray():
            return "array"
        case Resource():
            return "resource"
        case _:
            return "object"


def debug_type(value: Any) -> str:
    match value:
        case None:
            return "null"
        case bool():
            return "bool"
        case int():
            return "int"
        case float():
            return "float"
        case str():
            return "string"
        case PhpArray():
            return "array"
        case Closure():
            return "Closure"
        case PhpObject():
            return value.cls.name
        case Resource():
            return f"resource ({value.kind})"
        case _:
            return type(value).__name__


# =================================================================
# Numbers and strings
# =================================================================

def _parse_number(text: str) -> Any:
    if any(c in text for c in '.eE'):
        n = float(text)
        return n
    n = int(text)
    if INT_MIN <= n <= INT_MAX:
        return n
    return float(n)


def numeric_value(s: str) -> Optional[Any]:
    """The int/float value of a fully numeric string, else None."""
    m = _NUMERIC.match(s)
    if not m:
        return None
    return _parse_number(m.group(1))


def is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, str) and numeric_value(value) is not None


def leading_number(s: str) -> Tuple[Any, bool]:
    """Parses a leading number. Returns (value, is_fully_numeric)."""
    m = _NUMERIC.match(s)
    if m:
        return _parse_number(m.group(1)), True
    m = _LEADING_NUMERIC.match(s)
    if m:
        return _parse_number(m.group(1)), False
    return 0, False


def wrap_int(n: int) -> Any:
    """Integer results outside the signed 64-bit range become floats."""
    if INT_MIN <= n <= INT_MAX:
        return n
    try:
        return float(n)
    except OverflowError:
        return math.inf if n > 0 else -math.inf


def format_float(f: float, precision: int = 14) -> str:
    """Formats a float the way echo does (``precision`` significant digits)."""
    if f != f:
        return "NAN"
    if f in (math.inf, -math.inf):
        return "INF" if f > 0 else "-INF"
    if f == 0:
        return "-0" if math.copysign(1.0, f) < 0 else "0"
    s = '%.*G' % (precision, f)
    if 'E' in s:
        mant, exp = s.split('E')
        if '.' not in mant:
            mant += '.0'
        sign, digits = exp[0], exp[1:].lstrip('0') or '0'
        return f"{mant}E{sign}{digits}"
    return s


def repr_float(f: float) -> str:
    """Shortest round-trip form used by var_dump, var_export and json_encode."""
    if f != f or f in (math.inf, -math.inf):
        return format_float(f)
    if f == int(f) and abs(f) < 1e15:
        if f == 0 and math.copysign(1.0, f) < 0:
            return "-0"
        return str(int(f))
    sign, digits, exponent = Decimal(repr(f)).as_tuple()
    sci = len(digits) + exponent - 1
    if sci < -4 or sci >= 15:
        mant = ''.join(map(str, digits)).rstrip('0') or '0'
        body = mant[0] + '.' + (mant[1:] or '0')
        return ('-' if sign else '') + body + 'E' + ('+' if sci >= 0 else '-') + str(abs(sci))
    return repr(f)


def to_bool(value: Any) -> bool:
    match value:
        case None:
            return False
        case bool():
            return value
        case int() | float():
            return value != 0
        case str():
            return value not in ("", "0")
        case PhpArray():
            return len(value) > 0
        case _:
            return True


def to_int(value: Any) -> int:
    match value:
        case None:
            return 0
        case bool():
            return int(value)
        case int():
            return value
        case float():
            if value != value or value in (math.inf, -math.inf):
                return 0
            n = int(value)
            if not INT_MIN <= n <= INT_MAX:
                # Out of range conversions wrap modulo 2**64
                n = (n + 2 ** 63) % 2 ** 64 - 2 ** 63
            return n
        case str():
            n, _ = leading_number(value)
            return to_int(n) if isinstance(n, float) else n
        case PhpArray():
            return 1 if len(value) else 0
        case Resource():
            return value.id
        case _:
            return 1


def to_float(value: Any) -> float:
    match value:
        case str():
            n, _ = leading_number(value)
            return float(n)
        case float():
            return value
        case _:
            return float(to_int(value))


def to_number(value: Any) -> Any:
    match value:
        case bool():
            return int(value)
        case int() | float():
            return value
        case None:
            return 0
        case str():
            return leading_number(value)[0]
        case _:
            return to_int(value)


def to_str(value: Any) -> str:
    """String conversion for non-object values."""
    match value:
        case None:
            return ""
        case bool():
            return "1" if value else ""
        case int():
            return str(value)
        case float():
            return format_float(value)
        case str():
            return value
        case PhpArray():
            return "Array"
        case Resource():
            return f"Resource id #{value.id}"
        case _:
            raise PhpError(f"Object of class {debug_type(value)} could not be converted to string")


# =================================================================
# Comparison
# =================================================================

def _sign(x) -> int:
    return (x > 0) - (x < 0)


def _cmp_numbers(a, b) -> int:
    return (a > b) - (a < b)


def _cmp_str(a: str, b: str) -> int:
    return _sign((a > b) - (a < b))


def compare(a: Any, b: Any) -> int:
    """Three-way comparison (``<=>``) with loose typing."""
    a = deref(a)
    b = deref(b)
    if a is None and b is None:
        return 0
    if isinstance(a, bool) or isinstance(b, bool):
        return _cmp_numbers(to_bool(a), to_bool(b))
    if a is None:
        if isinstance(b, str):
            return _cmp_str("", b)
        return _cmp_numbers(False, to_bool(b))
    if b is None:
        if isinstance(a, str):
            return _cmp_str(a, "")
        return _cmp_numbers(to_bool(a), False)
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return _cmp_numbers(a, b)
    if isinstance(a, str) and isinstance(b, str):
        na, nb = numeric_value(a), numeric_value(b)
        if na is not None and nb is not None:
            return _cmp_numbers(na, nb)
        return _cmp_str(a, b)
    if isinstance(a, (int, float)) and isinstance(b, str):
        nb = numeric_value(b)
        if nb is not None:
            return _cmp_numbers(a, nb)
        return _cmp_str(to_str(a), b)
    if isinstance(a, str) and isinstance(b, (int, float)):
        return -compare(b, a)
    if isinstance(a, PhpArray) and isinstance(b, PhpArray):
        return _compare_tables(a.items(), b)
    if isinstance(a, PhpArray):
        return 1
    if isinstance(b, PhpArray):
        return -1
    if isinstance(a, PhpObject) and isinstance(b, PhpObject):
        if a is b:
            return 0
        if a.cls is not b.cls:
            return 1
        return _compare_tables(
            [(k, deref(v)) for k, v in a.props.items()],
            PhpArray({k: deref(v) for k, v in b.props.items()}),
        )
    if isinstance(a, (PhpObject, Closure)):
        return 0 if a is b else 1
    if isinstance(b, (PhpObject, Closure)):
        return -1
    if isinstance(a, Resource) or isinstance(b, Resource):
        return _cmp_numbers(to_int(a), to_int(b))
    return _cmp_numbers(to_float(a), to_float(b))


def _compare_tables(items, other: PhpArray) -> int:
    if len(items) != len(other):
        return _cmp_numbers(len(items), len(other))
    for key, value in items:
        if key not in other:
            return 1
        c = compare(value, other.get(key))
        if c:
            return c
    return 0


def loose_equals(a: Any, b: Any) -> bool:
    a = deref(a)
    b = deref(b)
    if isinstance(a, float) or isinstance(b, float):
        if isinstance(a, (int, float)) and isinstance(b, (int, float)) and \
                not isinstance(a, bool) and not isinstance(b, bool):
            return a == b
    if isinstance(a, PhpObject) and isinstance(b, PhpObject) and a.cls is not b.cls:
        return False
    if isinstance(a, PhpArray) != isinstance(b, PhpArray):
        if not (isinstance(a, bool) or isinstance(b, bool) or a is None or b is None):
            return False
    return compare(a, b) == 0


def strict_equals(a: Any, b: Any) -> bool:
    a = deref(a)
    b = deref(b)
    if type(a) is not type(b):
        return False
    if isinstance(a, PhpArray):
        if len(a) != len(b):
            return False
        for (ka, va), (kb, vb) in zip(a.items(), b.items()):
            if ka != kb or type(ka) is not type(kb) or not strict_equals(va, vb):
                return False
        return True
    if isinstance(a, (PhpObject, Closure, Resource)):
        return a is b
    return a == b


# =================================================================
# Arithmetic
# =================================================================

def _operand(value: Any, op: str, a: Any, b: Any, warn: Optional[Callable] = None) -> Any:
    match value:
        case bool():
            return int(value)
        case int() | float():
            return value
        case None:
            return 0
        case str():
            n, full = leading_number(value)
            if not full and not _LEADING_NUMERIC.match(value):
                raise PhpError(f"Unsupported operand types: {debug_type(a)} {op} {debug_type(b)}",
                               'TypeError')
            if not full and warn is not None:
                warn("A non-numeric value encountered")
            return n
        case Resource():
            return value.id
        case _:
            raise PhpError(f"Unsupported operand types: {debug_type(a)} {op} {debug_type(b)}",
                           'TypeError')


def _int_pow(x: int, y: int) -> Any:
    if abs(x) > 1 and y * math.log2(abs(x)) > 64:
        try:
            return math.pow(x, y)
        except OverflowError:
            return math.inf if x > 0 or y % 2 == 0 else -math.inf
    return wrap_int(x ** y)


def arith(op: str, a: Any, b: Any, warn: Optional[Callable] = None) -> Any:
    """Applies a binary arithmetic operator: + - * / % **.

    ``warn`` receives the diagnostic for leading-numeric string operands.
    """
    if op == '+' and isinstance(a, PhpArray) and isinstance(b, PhpArray):
        result = a.copy()
        for key, slot in b.raw_items():
            if key not in result:
                result.set_raw(key, slot.copy() if isinstance(slot, PhpArray) else slot)
        return result
    x = _operand(a, op, a, b, warn)
    y = _operand(b, op, a, b, warn)
    both_int = isinstance(x, int) and isinstance(y, int)
    match op:
        case '+':
            r = x + y
        case '-':
            r = x - y
        case '*':
            r = x * y
        case '/':
            if y == 0:
                raise PhpError("Division by zero", 'DivisionByZeroError')
            if both_int and x % y == 0:
                return wrap_int(x // y)
            return x / y
        case '%':
            xi, yi = to_int(x), to_int(y)
            if yi == 0:
                raise PhpError("Modulo by zero", 'DivisionByZeroError')
            r = abs(xi) % abs(yi)
            return -r if xi < 0 else r
        case '**':
            if both_int and y >= 0:
                return _int_pow(x, y)
            if x < 0 and math.isfinite(y) and not float(y).is_integer():
                return math.nan
            try:
                return float(x) ** float(y)
            except OverflowError:
                return math.inf
            except ZeroDivisionError:
                return math.inf
        case _:
            raise PhpError(f"Unknown arithmetic operator {op}")
    if both_int:
        return wrap_int(r)
    return float(r)


def _to_int64(n: int) -> int:
    return (n + 2 ** 63) % 2 ** 64 - 2 ** 63


def bitwise(op: str, a: Any, b: Any, warn: Optional[Callable] = None) -> Any:
    if op in ('&', '|', '^') and isinstance(a, str) and isinstance(b, str):
        # Byte-wise string operations
        if op == '&':
            return ''.join(chr(ord(x) & ord(y)) for x, y in zip(a, b))
        if op == '|':
            longer = a if len(a) >= len(b) else b
            head = ''.join(chr(ord(x) | ord(y)) for x, y in zip(a, b))
            return head + longer[len(head):]
        return ''.join(chr(ord(x) ^ ord(y)) for x, y in zip(a, b))
    x = to_int(_operand(a, op, a, b, warn))
    y = to_int(_operand(b, op, a, b, warn))
    match op:
        case '&':
            return x & y
        case '|':
            return x | y
        case '^':
            return x ^ y
        case '<<':
            if y < 0:
                raise PhpError("Bit shift by negative number", 'ArithmeticError')
            return 0 if y >= 64 else _to_int64(x << y)
        case '>>':
            if y < 0:
                raise PhpError("Bit shift by negative number", 'ArithmeticError')
            return (-1 if x < 0 else 0) if y >= 64 else x >> y
    raise PhpError(f"Unknown bitwise operator {op}")


def negate(value: Any) -> Any:
    return arith('*', value, -1)


def bit_not(value: Any) -> Any:
    if isinstance(value, float):
        return ~to_int(value)
    if isinstance(value, int) and not isinstance(value, bool):
        return ~value
    if isinstance(value, str):
        return ''.join(chr(~ord(c) & 0xFF) for c in value)
    raise PhpError(f"Cannot perform bitwise not on {debug_type(value)}", 'TypeError')


def increment(value: Any) -> Any:
    match value:
        case None:
            return 1
        case bool():
            return value
        case int():
            return wrap_int(value + 1)
        case float():
            return value + 1
        case str():
            return _str_increment(value)
        case _:
            return value


def decrement(value: Any) -> Any:
    match value:
        case None | bool():
            return value
        case int():
            return wrap_int(value - 1)
        case float():
            return value - 1
        case str():
            if value == "":
                return -1
            n = numeric_value(value)
            return value if n is None else arith('-', n, 1)
        case _:
            return value


def _str_increment(s: str) -> Any:
    if s == "":
        return "1"
    n = numeric_value(s)
    if n is not None:
        return arith('+', n, 1)
    chars = list(s)
    i = len(chars) - 1
    while i >= 0:
        c = chars[i]
        if c == 'z':
            chars[i] = 'a'
        elif c == 'Z':
            chars[i] = 'A'
        elif c == '9':
            chars[i] = '0'
        elif c.isascii() and c.isalnum():
            chars[i] = chr(ord(c) + 1)
            return ''.join(chars)
        else:
            return ''.join(chars)
        i -= 1
    first = s[0]
    prefix = '1' if first.isdigit() else ('a' if first.islower() else 'A')
    return prefix + ''.join(chars)
