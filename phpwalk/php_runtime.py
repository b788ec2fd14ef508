# php_runtime.py

import re
import math
import time
import random
import asyncio
import inspect
import functools
from contextlib import aclosing
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, List, Optional, Literal, Dict
from dataclasses import dataclass, field

from phpwalk import php_ast as ast
from phpwalk.php_binder import CallArg
from phpwalk.php_builtin_classes import trace_as_string
from phpwalk.php_config import InterpreterConfig
from phpwalk.php_datatypes import (
    PhpArray, PhpObject, Closure, Resource, Ref, PhpError, ThrowSignal,
    Return, Thrown, Exit, Completion, INT_MAX, INT_MIN, copy_value, deref,
)
from phpwalk.php_environment import SUPERGLOBALS
from phpwalk.php_interpreter import Evaluator
from phpwalk.php_operators import (
    arith, compare, debug_type, gettype, is_numeric, loose_equals, strict_equals,
    to_bool, to_float, to_int, to_number, to_str,
)
from phpwalk.php_printer import Printer
from phpwalk.php_serialize import deserialize, serialize, to_php
from phpwalk.php_transformer import AstTransformer

# ===================================================================
# 1. Constants
# ===================================================================

E_ERROR, E_WARNING, E_NOTICE = 1, 2, 8
E_USER_ERROR, E_USER_WARNING, E_USER_NOTICE, E_USER_DEPRECATED = 256, 512, 1024, 16384
E_ALL = 32767

SORT_REGULAR, SORT_NUMERIC, SORT_STRING, SORT_FLAG_CASE = 0, 1, 2, 8
COUNT_NORMAL, COUNT_RECURSIVE = 0, 1
STR_PAD_LEFT, STR_PAD_RIGHT, STR_PAD_BOTH = 0, 1, 2
ARRAY_FILTER_USE_BOTH, ARRAY_FILTER_USE_KEY = 1, 2

JSON_OBJECT_AS_ARRAY = 1
JSON_FORCE_OBJECT = 16
JSON_UNESCAPED_SLASHES = 64
JSON_PRETTY_PRINT = 128
JSON_UNESCAPED_UNICODE = 256
JSON_THROW_ON_ERROR = 4194304

PHP_VERSION = "8.3.0"

PREDEFINED_CONSTANTS = {
    'PHP_EOL': "\n",
    'PHP_INT_MAX': INT_MAX,
    'PHP_INT_MIN': INT_MIN,
    'PHP_INT_SIZE': 8,
    'PHP_FLOAT_EPSILON': 2.220446049250313e-16,
    'PHP_FLOAT_MAX': 1.7976931348623157e308,
    'PHP_FLOAT_MIN': 2.2250738585072014e-308,
    'PHP_VERSION': PHP_VERSION,
    'PHP_MAJOR_VERSION': 8,
    'PHP_OS': 'Linux',
    'PHP_OS_FAMILY': 'Linux',
    'NAN': math.nan,
    'INF': math.inf,
    'M_PI': math.pi,
    'M_E': math.e,
    'M_SQRT2': math.sqrt(2),
    'E_ERROR': E_ERROR,
    'E_WARNING': E_WARNING,
    'E_NOTICE': E_NOTICE,
    'E_USER_ERROR': E_USER_ERROR,
    'E_USER_WARNING': E_USER_WARNING,
    'E_USER_NOTICE': E_USER_NOTICE,
    'E_USER_DEPRECATED': E_USER_DEPRECATED,
    'E_ALL': E_ALL,
    'SORT_REGULAR': SORT_REGULAR,
    'SORT_NUMERIC': SORT_NUMERIC,
    'SORT_STRING': SORT_STRING,
    'SORT_FLAG_CASE': SORT_FLAG_CASE,
    'COUNT_NORMAL': COUNT_NORMAL,
    'COUNT_RECURSIVE': COUNT_RECURSIVE,
    'STR_PAD_LEFT': STR_PAD_LEFT,
    'STR_PAD_RIGHT': STR_PAD_RIGHT,
    'STR_PAD_BOTH': STR_PAD_BOTH,
    'ARRAY_FILTER_USE_BOTH': ARRAY_FILTER_USE_BOTH,
    'ARRAY_FILTER_USE_KEY': ARRAY_FILTER_USE_KEY,
    'JSON_OBJECT_AS_ARRAY': JSON_OBJECT_AS_ARRAY,
    'JSON_FORCE_OBJECT': JSON_FORCE_OBJECT,
    'JSON_UNESCAPED_SLASHES': JSON_UNESCAPED_SLASHES,
    'JSON_PRETTY_PRINT': JSON_PRETTY_PRINT,
    'JSON_UNESCAPED_UNICODE': JSON_UNESCAPED_UNICODE,
    'JSON_THROW_ON_ERROR': JSON_THROW_ON_ERROR,
    'JSON_ERROR_NONE': 0,
    'JSON_ERROR_SYNTAX': 4,
    'ENT_QUOTES': 3,
}

_MISSING = object()
_FORMAT_SPEC = re.compile(r"%(?:(\d+)\$)?((?:[-+ 0]|'.)*)(\d+)?(?:\.(\d+))?([bcdeEfFgGosuxX%])")
_IDENTIFIER = re.compile(r"^[A-Za-z_\x80-￿][A-Za-z0-9_\x80-￿]*$")
_ASCII_UPPER = str.maketrans("abcdefghijklmnopqrstuvwxyz", "ABCDEFGHIJKLMNOPQRSTUVWXYZ")
_ASCII_LOWER = str.maketrans("ABCDEFGHIJKLMNOPQRSTUVWXYZ", "abcdefghijklmnopqrstuvwxyz")


def byref(*positions):
    """Marks the argument positions a builtin takes by reference."""
    def decorate(func):
        func._php_byref = positions
        return func
    return decorate


# ===================================================================
# 2. Helpers
# ===================================================================

def _type_error(fname: str, position: int, pname: str, expected: str, value: Any) -> PhpError:
    return PhpError(f"{fname}(): Argument #{position} (${pname}) must be of type {expected}, "
                    f"{debug_type(value)} given", 'TypeError')


def _require_array(fname: str, position: int, pname: str, value: Any) -> PhpArray:
    value = deref(value)
    if not isinstance(value, PhpArray):
        raise _type_error(fname, position, pname, 'array', value)
    return value


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def _value_comparator(flags: int):
    mode = flags & ~SORT_FLAG_CASE
    if mode == SORT_STRING:
        if flags & SORT_FLAG_CASE:
            return lambda a, b: _cmp(to_str(a).lower(), to_str(b).lower())
        return lambda a, b: _cmp(to_str(a), to_str(b))
    if mode == SORT_NUMERIC:
        return lambda a, b: _cmp(to_number(a), to_number(b))
    return compare


async def merge_sort(items: list, cmp) -> list:
    """Stable sort with an awaitable three-way comparator (user callbacks)."""
    if len(items) <= 1:
        return list(items)
    mid = len(items) // 2
    left = await merge_sort(items[:mid], cmp)
    right = await merge_sort(items[mid:], cmp)
    merged, i, j = [], 0, 0
    while i < len(left) and j < len(right):
        if await cmp(right[j], left[i]) < 0:
            merged.append(right[j])
            j += 1
        else:
            merged.append(left[i])
            i += 1
    merged.extend(left[i:])
    merged.extend(right[j:])
    return merged


def _rebuild(pairs, keep_keys: bool) -> PhpArray:
    if keep_keys:
        return PhpArray.from_pairs(pairs)
    return PhpArray.from_list(v for _, v in pairs)


def _renumber(pairs) -> PhpArray:
    """Integer keys are renumbered from 0; string keys are kept."""
    arr = PhpArray()
    for k, v in pairs:
        if isinstance(k, int):
            arr.append(v)
        else:
            arr.set_raw(k, v)
    return arr


def _char_list(chars: str) -> str:
    out, i = [], 0
    while i < len(chars):
        if i + 3 < len(chars) and chars[i + 1:i + 3] == '..':
            out.extend(chr(c) for c in range(ord(chars[i]), ord(chars[i + 3]) + 1))
            i += 4
        else:
            out.append(chars[i])
            i += 1
    return ''.join(out)


def _str_key(value: Any) -> str:
    """The comparison key array_unique/array_diff use for values."""
    if isinstance(value, PhpObject):
        return f"\0object#{value.id}"
    if isinstance(value, PhpArray):
        return "Array"
    return to_str(value)


def _slice_bounds(n: int, offset: int, length) -> tuple:
    if offset < 0:
        offset = max(n + offset, 0)
    offset = min(offset, n)
    if length is None:
        end = n
    elif length < 0:
        end = max(n + length, offset)
    else:
        end = min(offset + length, n)
    return offset, end


def _format_exponent(text: str) -> str:
    mant, exp = text.lower().split('e')
    return f"{mant}e{int(exp):+d}"


def _pad(body: str, sign: str, flags: str, width: Optional[str]) -> str:
    pad_char, left = ' ', False
    for flag in re.findall(r"'.|.", flags):
        if flag == '-':
            left = True
        elif flag == '0':
            pad_char = '0'
        elif flag.startswith("'"):
            pad_char = flag[1]
    width = int(width) if width else 0
    text = sign + body
    if len(text) >= width:
        return text
    if left:
        return text + pad_char * (width - len(text))
    if pad_char == '0' and sign:
        return sign + body.rjust(width - len(sign), '0')
    return text.rjust(width, pad_char)


def _round_half_up(value: float, places: int) -> Decimal:
    return Decimal(repr(float(value))).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


# ===================================================================
# 3. The builtin function table
# ===================================================================

class StdLib:
    """Contains Python implementations for the builtin functions.

    Every ``_name`` method is exposed to scripts as ``name``. A builtin that
    declares a keyword-only ``env`` parameter receives the caller's scope.
    """
    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator
        self.printer = Printer()
        self.json_error = (0, "No error")
        self.random = random.Random()

    def install(self) -> None:
        ev = self.evaluator
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                ev.builtins[name[1:].lower()] = member
        for name, value in PREDEFINED_CONSTANTS.items():
            ev.registry.define_constant(name, value)
        ev.registry.define_constant('STDOUT', Resource('stream', {'target': 'stdout'}, ev.registry.resource_handle()))
        ev.registry.define_constant('STDERR', Resource('stream', {'target': 'stderr'}, ev.registry.resource_handle()))

    # --- Output ---

    def _var_dump(self, value, *values):
        for v in (value,) + values:
            self.evaluator.write(self.printer.var_dump(v))

    def _print_r(self, value, return_=False):
        text = self.printer.print_r(value)
        if return_:
            return text
        self.evaluator.write(text)
        return True

    def _var_export(self, value, return_=False):
        text = self.printer.var_export(value)
        if return_:
            return text
        self.evaluator.write(text)
        return None

    async def format_string(self, fname: str, fmt: str, args: list) -> str:
        out, pos, next_arg = [], 0, 0
        for m in _FORMAT_SPEC.finditer(fmt):
            out.append(fmt[pos:m.start()])
            pos = m.end()
            argnum, flags, width, precision, conv = m.groups()
            if conv == '%':
                out.append('%')
                continue
            if argnum:
                index = int(argnum) - 1
                if index < 0:
                    raise PhpError("Argument number specifier must be greater than zero and less than "
                                   f"{INT_MAX}", 'ValueError')
            else:
                index = next_arg
                next_arg += 1
            if index >= len(args):
                raise PhpError(f"{index + 2} arguments are required, {len(args) + 1} given",
                               'ArgumentCountError')
            arg = args[index]
            prec = int(precision) if precision is not None else None
            sign = ''
            match conv:
                case 'd':
                    n = to_int(arg)
                    body = str(abs(n))
                    sign = '-' if n < 0 else ('+' if '+' in flags else '')
                case 'u':
                    n = to_int(arg)
                    body = str(n + 2 ** 64 if n < 0 else n)
                case 'f' | 'F':
                    x = to_float(arg)
                    body = f"{abs(x):.{6 if prec is None else prec}f}"
                    sign = '-' if x < 0 else ('+' if '+' in flags else '')
                case 'e' | 'E':
                    x = to_float(arg)
                    body = _format_exponent(f"{abs(x):.{6 if prec is None else prec}e}")
                    body = body.upper() if conv == 'E' else body
                    sign = '-' if x < 0 else ('+' if '+' in flags else '')
                case 'g' | 'G':
                    x = to_float(arg)
                    body = f"{abs(x):.{6 if prec is None else prec or 1}g}"
                    if 'e' in body:
                        body = _format_exponent(body)
                    body = body.upper() if conv == 'G' else body
                    sign = '-' if x < 0 else ('+' if '+' in flags else '')
                case 's':
                    body = await self.evaluator.to_string(arg)
                    if prec is not None:
                        body = body[:prec]
                case 'x' | 'X' | 'o' | 'b':
                    n = to_int(arg)
                    if n < 0:
                        n += 2 ** 64
                    body = format(n, {'x': 'x', 'X': 'X', 'o': 'o', 'b': 'b'}[conv])
                case 'c':
                    out.append(chr(to_int(arg) % 256))
                    continue
            out.append(_pad(body, sign, flags, width))
        out.append(fmt[pos:])
        return ''.join(out)

    async def _sprintf(self, format, *values):
        return await self.format_string('sprintf', to_str(format), list(values))

    async def _vsprintf(self, format, values):
        return await self.format_string('vsprintf', to_str(format),
                                        _require_array('vsprintf', 2, 'values', values).values())

    async def _printf(self, format, *values):
        text = await self.format_string('printf', to_str(format), list(values))
        self.evaluator.write(text)
        return len(text.encode('utf-8'))

    def _number_format(self, num, decimals=0, decimal_separator='.', thousands_separator=','):
        decimals = max(to_int(decimals), 0)
        q = _round_half_up(to_float(num), decimals)
        negative = q < 0
        int_part, _, frac = f"{abs(q):f}".partition('.')
        groups = []
        while len(int_part) > 3:
            groups.insert(0, int_part[-3:])
            int_part = int_part[:-3]
        groups.insert(0, int_part)
        text = to_str(thousands_separator).join(groups)
        if decimals:
            text += to_str(decimal_separator) + frac.ljust(decimals, '0')[:decimals]
        if negative and any(c not in '0.,' for c in f"{abs(q):f}"):
            text = '-' + text
        return text

    # --- Output buffering ---

    def _ob_start(self):
        self.evaluator.output.start()
        return True

    def _ob_get_clean(self):
        out = self.evaluator.output
        if out.level == 0:
            return False
        return out.end(flush=False)

    def _ob_get_contents(self):
        text = self.evaluator.output.contents()
        return False if text is None else text

    def _ob_end_clean(self):
        return self.evaluator.output.end(flush=False) is not None

    def _ob_end_flush(self):
        return self.evaluator.output.end(flush=True) is not None

    def _ob_get_level(self):
        return self.evaluator.output.level

    # --- Strings ---

    def _strlen(self, string):
        return len(to_str(string).encode('utf-8'))

    def _strtoupper(self, string): return to_str(string).translate(_ASCII_UPPER)
    def _strtolower(self, string): return to_str(string).translate(_ASCII_LOWER)

    def _ucfirst(self, string):
        s = to_str(string)
        return s[:1].translate(_ASCII_UPPER) + s[1:]

    def _lcfirst(self, string):
        s = to_str(string)
        return s[:1].translate(_ASCII_LOWER) + s[1:]

    def _ucwords(self, string, separators=" \t\r\n\f\v"):
        out, capitalize = [], True
        for ch in to_str(string):
            out.append(ch.translate(_ASCII_UPPER) if capitalize else ch)
            capitalize = ch in separators
        return ''.join(out)

    def _str_repeat(self, string, times):
        times = to_int(times)
        if times < 0:
            raise PhpError("str_repeat(): Argument #2 ($times) must be greater than or equal to 0", 'ValueError')
        return to_str(string) * times

    def _substr(self, string, offset, length=None):
        s = to_str(string)
        start, end = _slice_bounds(len(s), to_int(offset), None if length is None else to_int(length))
        return s[start:end]

    def _strpos(self, haystack, needle, offset=0):
        h, n, offset = to_str(haystack), to_str(needle), to_int(offset)
        if offset < 0:
            offset += len(h)
        if not 0 <= offset <= len(h):
            raise PhpError("strpos(): Argument #3 ($offset) must be contained in argument #1 ($haystack)",
                           'ValueError')
        idx = h.find(n, offset)
        return False if idx < 0 else idx

    def _stripos(self, haystack, needle, offset=0):
        return self._strpos(to_str(haystack).lower(), to_str(needle).lower(), offset)

    def _strrpos(self, haystack, needle, offset=0):
        h, n, offset = to_str(haystack), to_str(needle), to_int(offset)
        idx = h.rfind(n, offset) if offset >= 0 else h.rfind(n, 0, len(h) + offset + len(n))
        return False if idx < 0 else idx

    def _str_contains(self, haystack, needle): return to_str(needle) in to_str(haystack)
    def _str_starts_with(self, haystack, needle): return to_str(haystack).startswith(to_str(needle))
    def _str_ends_with(self, haystack, needle): return to_str(haystack).endswith(to_str(needle))

    def _substr_count(self, haystack, needle):
        if to_str(needle) == '':
            raise PhpError("substr_count(): Argument #2 ($needle) cannot be empty", 'ValueError')
        return to_str(haystack).count(to_str(needle))

    def _strcmp(self, string1, string2):
        return _cmp(to_str(string1), to_str(string2))

    def _strcasecmp(self, string1, string2):
        return _cmp(to_str(string1).lower(), to_str(string2).lower())

    @byref(3)
    def _str_replace(self, search, replace, subject, count=None):
        total = 0

        def replace_one(text: str) -> str:
            nonlocal total
            if isinstance(search, PhpArray):
                searches = [to_str(s) for s in search.values()]
                if isinstance(replace, PhpArray):
                    repl = [to_str(r) for r in replace.values()]
                    replacements = repl + [''] * (len(searches) - len(repl))
                else:
                    replacements = [to_str(replace)] * len(searches)
            else:
                searches, replacements = [to_str(search)], [to_str(replace)]
            for s, r in zip(searches, replacements):
                if s:
                    total += text.count(s)
                    text = text.replace(s, r)
            return text

        if isinstance(subject, PhpArray):
            result = PhpArray.from_pairs((k, replace_one(to_str(v))) for k, v in subject.items())
        else:
            result = replace_one(to_str(subject))
        if isinstance(count, Ref):
            count.value = total
        return result

    def _strtr(self, string, from_, to=None):
        s = to_str(string)
        if to is None:
            pairs = {to_str(k): to_str(v) for k, v in _require_array('strtr', 2, 'replace_pairs', from_).items()
                     if to_str(k) != ''}
            if not pairs:
                return s
            pattern = re.compile('|'.join(re.escape(k) for k in sorted(pairs, key=len, reverse=True)))
            return pattern.sub(lambda m: pairs[m.group(0)], s)
        src, dst = to_str(from_), to_str(to)
        n = min(len(src), len(dst))
        return s.translate(str.maketrans(src[:n], dst[:n]))

    def _trim(self, string, characters=" \n\r\t\v\x00"):
        return to_str(string).strip(_char_list(to_str(characters)))

    def _ltrim(self, string, characters=" \n\r\t\v\x00"):
        return to_str(string).lstrip(_char_list(to_str(characters)))

    def _rtrim(self, string, characters=" \n\r\t\v\x00"):
        return to_str(string).rstrip(_char_list(to_str(characters)))

    def _chop(self, string, characters=" \n\r\t\v\x00"):
        return self._rtrim(string, characters)

    def _explode(self, separator, string, limit=INT_MAX):
        sep, s, limit = to_str(separator), to_str(string), to_int(limit)
        if sep == '':
            raise PhpError("explode(): Argument #1 ($separator) cannot be empty", 'ValueError')
        if limit > 0:
            parts = s.split(sep, limit - 1)
        else:
            parts = s.split(sep)
            if limit < 0:
                parts = parts[:limit]
        return PhpArray.from_list(parts)

    async def _implode(self, separator, array=None):
        if array is None:
            if not isinstance(separator, PhpArray):
                raise _type_error('implode', 2, 'array', '?array', None)
            separator, array = '', separator
        array = _require_array('implode', 2, 'array', array)
        parts = [await self.evaluator.to_string(v) for v in array.values()]
        return to_str(separator).join(parts)

    async def _join(self, separator, array=None):
        return await self._implode(separator, array)

    def _str_pad(self, string, length, pad_string=' ', pad_type=STR_PAD_RIGHT):
        s, length, pad = to_str(string), to_int(length), to_str(pad_string)
        if pad == '':
            raise PhpError("str_pad(): Argument #3 ($pad_string) must be a non-empty string", 'ValueError')
        total = length - len(s)
        if total <= 0:
            return s
        if pad_type == STR_PAD_LEFT:
            left, right = total, 0
        elif pad_type == STR_PAD_BOTH:
            left = total // 2
            right = total - left
        else:
            left, right = 0, total

        def fill(n):
            return (pad * (n // len(pad) + 1))[:n]
        return fill(left) + s + fill(right)

    def _strrev(self, string): return to_str(string)[::-1]

    def _str_split(self, string, length=1):
        s, length = to_str(string), to_int(length)
        if length < 1:
            raise PhpError("str_split(): Argument #2 ($length) must be greater than 0", 'ValueError')
        return PhpArray.from_list(s[i:i + length] for i in range(0, len(s), length))

    def _nl2br(self, string):
        return re.sub(r"(\r\n|\n|\r)", r"<br />\1", to_str(string))

    def _htmlspecialchars(self, string, flags=3, encoding=None, double_encode=True):
        s = to_str(string).replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')
        s = s.replace('"', '&quot;')
        if to_int(flags) & 3 == 3:
            s = s.replace("'", '&#039;')
        return s

    def _str_word_count(self, string):
        return len(re.findall(r"[A-Za-z'-]+", to_str(string)))

    def _ord(self, character):
        s = to_str(character).encode('utf-8')
        return s[0] if s else 0

    def _chr(self, codepoint):
        return chr(to_int(codepoint) % 256)

    # --- Arrays ---

    async def _count(self, value, mode=COUNT_NORMAL):
        if isinstance(value, PhpObject) and value.cls.instanceof('Countable'):
            return to_int(await self.evaluator.call_method(value, 'count'))
        if not isinstance(value, PhpArray):
            raise _type_error('count', 1, 'value', 'Countable|array', value)
        if mode == COUNT_RECURSIVE:
            return sum(1 + (await self._count(v, mode) if isinstance(v, PhpArray) else 0)
                       for v in value.values())
        return len(value)

    async def _sizeof(self, value, mode=COUNT_NORMAL):
        return await self._count(value, mode)

    def _array_keys(self, array, filter_value=_MISSING, strict=False):
        array = _require_array('array_keys', 1, 'array', array)
        if filter_value is _MISSING:
            return PhpArray.from_list(array.keys())
        same = strict_equals if strict else loose_equals
        return PhpArray.from_list(k for k, v in array.items() if same(v, filter_value))

    def _array_values(self, array):
        return PhpArray.from_list(copy_value(v) for v in _require_array('array_values', 1, 'array', array).values())

    def _array_merge(self, *arrays):
        result = PhpArray()
        for i, array in enumerate(arrays, 1):
            for k, v in _require_array('array_merge', i, 'arrays', array).items():
                if isinstance(k, int):
                    result.append(copy_value(v))
                else:
                    result.set(k, copy_value(v))
        return result

    async def _array_map(self, callback, array, *arrays, env):
        ev = self.evaluator
        array = _require_array('array_map', 2, 'array', array)
        if not arrays:
            if callback is None:
                return array.copy()
            result = PhpArray()
            for k, v in array.items():
                result.set(k, await ev.call_value(callback, [v], env))
            return result
        columns = [array] + [_require_array('array_map', i + 3, 'arrays', a) for i, a in enumerate(arrays)]
        width = max(len(c) for c in columns)
        values = [c.values() + [None] * (width - len(c)) for c in columns]
        result = PhpArray()
        for i in range(width):
            row = [col[i] for col in values]
            if callback is None:
                result.append(PhpArray.from_list(row))
            else:
                result.append(await ev.call_value(callback, row, env))
        return result

    async def _array_filter(self, array, callback=None, mode=0, *, env):
        array = _require_array('array_filter', 1, 'array', array)
        result = PhpArray()
        for k, v in array.items():
            if callback is None:
                keep = to_bool(v)
            elif mode == ARRAY_FILTER_USE_KEY:
                keep = to_bool(await self.evaluator.call_value(callback, [k], env))
            elif mode == ARRAY_FILTER_USE_BOTH:
                keep = to_bool(await self.evaluator.call_value(callback, [v, k], env))
            else:
                keep = to_bool(await self.evaluator.call_value(callback, [v], env))
            if keep:
                result.set(k, copy_value(v))
        return result

    async def _array_reduce(self, array, callback, initial=None, *, env):
        carry = initial
        for v in _require_array('array_reduce', 1, 'array', array).values():
            carry = await self.evaluator.call_value(callback, [carry, v], env)
        return carry

    @byref(0)
    async def _array_walk(self, array, callback, arg=_MISSING, *, env):
        ev = self.evaluator
        arr = _require_array('array_walk', 1, 'array', array)
        callee = await ev.resolve_callable(callback, env)
        for key in arr.keys():
            if key not in arr:
                continue
            slot = arr.raw(key)
            ref = slot if isinstance(slot, Ref) else Ref(slot)
            args = [CallArg(ref.value, ref=ref), CallArg(key)]
            if arg is not _MISSING:
                args.append(CallArg(arg))
            await ev.invoke(callee, args, env)
            if not isinstance(slot, Ref):
                arr.set_raw(key, ref.value)
        return True

    def _array_sum(self, array):
        total = 0
        for v in _require_array('array_sum', 1, 'array', array).values():
            if isinstance(v, (PhpArray, PhpObject)):
                continue
            total = arith('+', total, to_number(v))
        return total

    def _array_product(self, array):
        total = 1
        for v in _require_array('array_product', 1, 'array', array).values():
            if isinstance(v, (PhpArray, PhpObject)):
                continue
            total = arith('*', total, to_number(v))
        return total

    def _in_array(self, needle, haystack, strict=False):
        same = strict_equals if strict else loose_equals
        return any(same(v, needle) for v in _require_array('in_array', 2, 'haystack', haystack).values())

    def _array_search(self, needle, haystack, strict=False):
        same = strict_equals if strict else loose_equals
        for k, v in _require_array('array_search', 2, 'haystack', haystack).items():
            if same(v, needle):
                return k
        return False

    def _array_key_exists(self, key, array):
        if isinstance(array, PhpObject):
            return to_str(key) in array.props
        return ('' if key is None else key) in _require_array('array_key_exists', 2, 'array', array)

    def _key_exists(self, key, array):
        return self._array_key_exists(key, array)

    @byref(0)
    def _array_push(self, array, *values):
        arr = _require_array('array_push', 1, 'array', array)
        for v in values:
            arr.append(copy_value(v))
        return len(arr)

    @byref(0)
    def _array_pop(self, array):
        arr = _require_array('array_pop', 1, 'array', array)
        if not len(arr):
            return None
        key = arr.keys()[-1]
        value = arr.get(key)
        arr.unset(key)
        arr.next_index = max((k for k in arr.keys() if isinstance(k, int)), default=-1) + 1
        arr.pos = 0
        return value

    @byref(0)
    def _array_shift(self, array):
        arr = _require_array('array_shift', 1, 'array', array)
        if not len(arr):
            return None
        pairs = arr.raw_items()
        array.value = _renumber(pairs[1:])
        return deref(pairs[0][1])

    @byref(0)
    def _array_unshift(self, array, *values):
        arr = _require_array('array_unshift', 1, 'array', array)
        result = PhpArray.from_list(copy_value(v) for v in values)
        for k, v in arr.raw_items():
            if isinstance(k, int):
                result.append(v)
            else:
                result.set_raw(k, v)
        array.value = result
        return len(result)

    @byref(0)
    def _array_splice(self, array, offset, length=None, replacement=None):
        arr = _require_array('array_splice', 1, 'array', array)
        pairs = arr.raw_items()
        start, end = _slice_bounds(len(pairs), to_int(offset), None if length is None else to_int(length))
        if replacement is None:
            inserted = []
        elif isinstance(replacement, PhpArray):
            inserted = [(0, v) for v in replacement.values()]
        else:
            inserted = [(0, replacement)]
        array.value = _renumber(pairs[:start] + inserted + pairs[end:])
        return _renumber(pairs[start:end])

    def _array_slice(self, array, offset, length=None, preserve_keys=False):
        pairs = _require_array('array_slice', 1, 'array', array).items()
        start, end = _slice_bounds(len(pairs), to_int(offset), None if length is None else to_int(length))
        chosen = [(k, copy_value(v)) for k, v in pairs[start:end]]
        return PhpArray.from_pairs(chosen) if preserve_keys else _renumber(chosen)

    def _array_reverse(self, array, preserve_keys=False):
        pairs = list(reversed(_require_array('array_reverse', 1, 'array', array).items()))
        pairs = [(k, copy_value(v)) for k, v in pairs]
        return PhpArray.from_pairs(pairs) if preserve_keys else _renumber(pairs)

    def _array_combine(self, keys, values):
        keys = _require_array('array_combine', 1, 'keys', keys).values()
        values = _require_array('array_combine', 2, 'values', values).values()
        if len(keys) != len(values):
            raise PhpError("array_combine(): Argument #1 ($keys) and argument #2 ($values) must have "
                           "the same number of elements", 'ValueError')
        return PhpArray.from_pairs((k if isinstance(k, int) else to_str(k), copy_value(v))
                                   for k, v in zip(keys, values))

    def _array_flip(self, array):
        result = PhpArray()
        for k, v in _require_array('array_flip', 1, 'array', array).items():
            if isinstance(v, (int, str)) and not isinstance(v, bool):
                result.set(v, k)
            else:
                self.evaluator.warn("array_flip(): Can only flip string and integer values, entry skipped")
        return result

    def _array_unique(self, array, flags=SORT_STRING):
        result = PhpArray()
        seen_keys, seen_values = set(), []
        for k, v in _require_array('array_unique', 1, 'array', array).items():
            if flags == SORT_REGULAR:
                if any(loose_equals(v, s) for s in seen_values):
                    continue
                seen_values.append(v)
            else:
                key = _str_key(v)
                if key in seen_keys:
                    continue
                seen_keys.add(key)
            result.set(k, copy_value(v))
        return result

    def _array_fill(self, start_index, count, value):
        start, count = to_int(start_index), to_int(count)
        if count < 0:
            raise PhpError("array_fill(): Argument #2 ($count) must be greater than or equal to 0", 'ValueError')
        return PhpArray.from_pairs((start + i, copy_value(value)) for i in range(count))

    def _array_fill_keys(self, keys, value):
        return PhpArray.from_pairs((k, copy_value(value))
                                   for k in _require_array('array_fill_keys', 1, 'keys', keys).values())

    def _array_diff(self, array, *arrays):
        excluded = {_str_key(v) for i, other in enumerate(arrays, 2)
                    for v in _require_array('array_diff', i, 'arrays', other).values()}
        return PhpArray.from_pairs((k, copy_value(v)) for k, v in _require_array('array_diff', 1, 'array', array).items()
                                   if _str_key(v) not in excluded)

    def _array_diff_key(self, array, *arrays):
        others = [_require_array('array_diff_key', i, 'arrays', a) for i, a in enumerate(arrays, 2)]
        return PhpArray.from_pairs((k, copy_value(v)) for k, v in _require_array('array_diff_key', 1, 'array', array).items()
                                   if not any(k in o for o in others))

    def _array_intersect(self, array, *arrays):
        others = [{_str_key(v) for v in _require_array('array_intersect', i, 'arrays', a).values()}
                  for i, a in enumerate(arrays, 2)]
        return PhpArray.from_pairs((k, copy_value(v)) for k, v in _require_array('array_intersect', 1, 'array', array).items()
                                   if all(_str_key(v) in o for o in others))

    def _array_intersect_key(self, array, *arrays):
        others = [_require_array('array_intersect_key', i, 'arrays', a) for i, a in enumerate(arrays, 2)]
        return PhpArray.from_pairs((k, copy_value(v)) for k, v in _require_array('array_intersect_key', 1, 'array', array).items()
                                   if all(k in o for o in others))

    def _array_chunk(self, array, length, preserve_keys=False):
        length = to_int(length)
        if length < 1:
            raise PhpError("array_chunk(): Argument #2 ($length) must be greater than 0", 'ValueError')
        pairs = _require_array('array_chunk', 1, 'array', array).items()
        result = PhpArray()
        for i in range(0, len(pairs), length):
            chunk = [(k, copy_value(v)) for k, v in pairs[i:i + length]]
            result.append(PhpArray.from_pairs(chunk) if preserve_keys else PhpArray.from_list(v for _, v in chunk))
        return result

    def _array_column(self, array, column_key, index_key=None):
        result = PhpArray()
        for row in _require_array('array_column', 1, 'array', array).values():
            if isinstance(row, PhpObject):
                fields = {k: deref(v) for k, v in row.props.items()}
            elif isinstance(row, PhpArray):
                fields = dict(row.items())
            else:
                continue
            if column_key is None:
                value = row
            elif column_key in fields or (isinstance(row, PhpArray) and column_key in row):
                value = row.get(column_key) if isinstance(row, PhpArray) else fields[column_key]
            else:
                continue
            index = None
            if index_key is not None:
                index = row.get(index_key) if isinstance(row, PhpArray) else fields.get(index_key)
            result.set(index, copy_value(value))
        return result

    def _array_key_first(self, array):
        keys = _require_array('array_key_first', 1, 'array', array).keys()
        return keys[0] if keys else None

    def _array_key_last(self, array):
        keys = _require_array('array_key_last', 1, 'array', array).keys()
        return keys[-1] if keys else None

    def _array_is_list(self, array):
        return _require_array('array_is_list', 1, 'array', array).is_list()

    def _range(self, start, end, step=1):
        if isinstance(start, str) and isinstance(end, str) and len(start) == 1 and len(end) == 1 \
                and not (start.isdigit() and end.isdigit()):
            st = abs(to_int(step))
            if st == 0:
                raise PhpError("range(): Argument #3 ($step) cannot be 0", 'ValueError')
            s, e = ord(start), ord(end)
            return PhpArray.from_list(chr(c) for c in (range(s, e + 1, st) if s <= e else range(s, e - 1, -st)))
        s, e, st = to_number(start), to_number(end), to_number(step)
        if st == 0:
            raise PhpError("range(): Argument #3 ($step) cannot be 0", 'ValueError')
        st = abs(st)
        if isinstance(st, float) and st == int(st):
            st = int(st)
        if not any(isinstance(x, float) for x in (s, e, st)):
            return PhpArray.from_list(range(s, e + 1, st) if s <= e else range(s, e - 1, -st))
        direction = 1 if s <= e else -1
        n = int(math.floor(abs(e - s) / st + 1e-9))
        return PhpArray.from_list(float(s + direction * i * st) for i in range(n + 1))

    def _compact(self, var_name, *var_names, env):
        result = PhpArray()

        def add(name):
            if isinstance(name, PhpArray):
                for n in name.values():
                    add(n)
                return
            value, found = env.get(to_str(name))
            if found:
                result.set(to_str(name), copy_value(value))
            else:
                self.evaluator.warn(f"compact(): Undefined variable ${to_str(name)}")

        for name in (var_name,) + var_names:
            add(name)
        return result

    def _extract(self, array, *, env):
        count = 0
        for k, v in _require_array('extract', 1, 'array', array).items():
            if isinstance(k, str) and _IDENTIFIER.match(k) and k != 'this':
                env.set(k, copy_value(v))
                count += 1
        return count

    def _get_defined_vars(self, *, env):
        return env.defined_vars()

    # --- Sorting ---

    def sort_by(self, array: Ref, fname: str, cmp, by_key: bool, keep_keys: bool, reverse: bool = False):
        arr = _require_array(fname, 1, 'array', array)
        index = 0 if by_key else 1

        def order(x, y):
            c = cmp(deref(x[index]), deref(y[index]))
            return -c if reverse else c
        array.value = _rebuild(sorted(arr.raw_items(), key=functools.cmp_to_key(order)), keep_keys)
        return True

    async def user_sort(self, array: Ref, fname: str, callback, env, by_key: bool, keep_keys: bool):
        arr = _require_array(fname, 1, 'array', array)
        index = 0 if by_key else 1

        async def order(x, y):
            return to_int(await self.evaluator.call_value(callback, [deref(x[index]), deref(y[index])], env))
        array.value = _rebuild(await merge_sort(arr.raw_items(), order), keep_keys)
        return True

    @byref(0)
    def _sort(self, array, flags=SORT_REGULAR):
        return self.sort_by(array, 'sort', _value_comparator(flags), False, False)

    @byref(0)
    def _rsort(self, array, flags=SORT_REGULAR):
        return self.sort_by(array, 'rsort', _value_comparator(flags), False, False, reverse=True)

    @byref(0)
    def _asort(self, array, flags=SORT_REGULAR):
        return self.sort_by(array, 'asort', _value_comparator(flags), False, True)

    @byref(0)
    def _arsort(self, array, flags=SORT_REGULAR):
        return self.sort_by(array, 'arsort', _value_comparator(flags), False, True, reverse=True)

    @byref(0)
    def _ksort(self, array, flags=SORT_REGULAR):
        return self.sort_by(array, 'ksort', _value_comparator(flags), True, True)

    @byref(0)
    def _krsort(self, array, flags=SORT_REGULAR):
        return self.sort_by(array, 'krsort', _value_comparator(flags), True, True, reverse=True)

    @byref(0)
    async def _usort(self, array, callback, *, env):
        return await self.user_sort(array, 'usort', callback, env, False, False)

    @byref(0)
    async def _uasort(self, array, callback, *, env):
        return await self.user_sort(array, 'uasort', callback, env, False, True)

    @byref(0)
    async def _uksort(self, array, callback, *, env):
        return await self.user_sort(array, 'uksort', callback, env, True, True)

    # --- Internal array cursor ---

    @byref(0)
    def _current(self, array):
        item = _require_array('current', 1, 'array', array).current_item()
        return False if item is None else item[1]

    @byref(0)
    def _pos(self, array):
        return self._current(array)

    @byref(0)
    def _key(self, array):
        item = _require_array('key', 1, 'array', array).current_item()
        return None if item is None else item[0]

    @byref(0)
    def _next(self, array):
        arr = _require_array('next', 1, 'array', array)
        arr.pos = min(arr.pos + 1, len(arr))
        return self._current(array)

    @byref(0)
    def _prev(self, array):
        arr = _require_array('prev', 1, 'array', array)
        arr.pos = arr.pos - 1 if arr.pos > 0 else len(arr)
        return self._current(array)

    @byref(0)
    def _reset(self, array):
        _require_array('reset', 1, 'array', array).pos = 0
        return self._current(array)

    @byref(0)
    def _end(self, array):
        arr = _require_array('end', 1, 'array', array)
        arr.pos = max(len(arr) - 1, 0)
        return self._current(array)

    # --- Iterators ---

    async def _iterator_to_array(self, iterator, preserve_keys=True, *, env):
        result = PhpArray()
        async with aclosing(self.evaluator.iterate(iterator, env)) as items:
            async for k, v in items:
                if preserve_keys:
                    result.set(k, copy_value(v))
                else:
                    result.append(copy_value(v))
        return result

    async def _iterator_count(self, iterator, *, env):
        count = 0
        async with aclosing(self.evaluator.iterate(iterator, env)) as items:
            async for _ in items:
                count += 1
        return count

    # --- Math ---

    def _abs(self, num):
        n = to_number(num)
        if n == INT_MIN and isinstance(n, int):
            return -float(n)
        return abs(n)

    def _max(self, value, *values):
        return self.extremum('max', value, values, 1)

    def _min(self, value, *values):
        return self.extremum('min', value, values, -1)

    def extremum(self, fname, value, values, direction):
        if values:
            items = [value] + list(values)
        else:
            items = _require_array(fname, 1, 'value', value).values()
            if not items:
                raise PhpError(f"{fname}(): Argument #1 ($value) must contain at least one element", 'ValueError')
        best = items[0]
        for v in items[1:]:
            if compare(v, best) * direction > 0:
                best = v
        return best

    def _floor(self, num):
        n = to_number(num)
        return float(math.floor(n)) if math.isfinite(n) else float(n)

    def _ceil(self, num):
        n = to_number(num)
        return float(math.ceil(n)) if math.isfinite(n) else float(n)

    def _round(self, num, precision=0):
        n = to_number(num)
        if isinstance(n, float) and not math.isfinite(n):
            return n
        return float(_round_half_up(n, to_int(precision)))

    def _intdiv(self, num1, num2):
        a, b = to_int(num1), to_int(num2)
        if b == 0:
            raise PhpError("Division by zero", 'DivisionByZeroError')
        if a == INT_MIN and b == -1:
            raise PhpError("Division of PHP_INT_MIN by -1 is not an integer", 'ArithmeticError')
        q = abs(a) // abs(b)
        return q if (a < 0) == (b < 0) else -q

    def _fmod(self, num1, num2):
        x, y = to_float(num1), to_float(num2)
        return math.nan if y == 0 else math.fmod(x, y)

    def _sqrt(self, num):
        x = to_float(num)
        return math.nan if x < 0 else math.sqrt(x)

    def _pow(self, num, exponent):
        return arith('**', to_number(num), to_number(exponent))

    def _pi(self): return math.pi

    def _is_nan(self, num): return math.isnan(to_float(num))
    def _is_infinite(self, num): return math.isinf(to_float(num))
    def _is_finite(self, num): return math.isfinite(to_float(num))

    def _rand(self, min=None, max=None):
        if min is None:
            return self.random.randint(0, 2147483647)
        return self.random.randint(to_int(min), to_int(max))

    def _mt_rand(self, min=None, max=None):
        return self._rand(min, max)

    def _random_int(self, min, max):
        if to_int(min) > to_int(max):
            raise PhpError("random_int(): Argument #1 ($min) must be less than or equal to argument #2 ($max)",
                           'ValueError')
        return self.random.randint(to_int(min), to_int(max))

    def _mt_srand(self, seed=None):
        self.random.seed(seed)

    # --- Types ---

    def _gettype(self, value): return gettype(value)
    def _get_debug_type(self, value): return debug_type(value)
    def _is_int(self, value): return isinstance(value, int) and not isinstance(value, bool)
    def _is_integer(self, value): return self._is_int(value)
    def _is_float(self, value): return isinstance(value, float)
    def _is_string(self, value): return isinstance(value, str)
    def _is_bool(self, value): return isinstance(value, bool)
    def _is_array(self, value): return isinstance(value, PhpArray)
    def _is_null(self, value): return value is None
    def _is_numeric(self, value): return is_numeric(value)
    def _is_object(self, value): return isinstance(value, (PhpObject, Closure))
    def _is_resource(self, value): return isinstance(value, Resource) and not value.closed
    def _is_scalar(self, value): return isinstance(value, (int, float, str))
    def _is_callable(self, value): return self.evaluator.is_callable(value)

    def _is_iterable(self, value):
        return isinstance(value, PhpArray) or (isinstance(value, PhpObject) and value.cls.instanceof('Traversable'))

    def _is_countable(self, value):
        return isinstance(value, PhpArray) or (isinstance(value, PhpObject) and value.cls.instanceof('Countable'))

    def _intval(self, value, base=10):
        if isinstance(value, str) and base != 10:
            text = value.strip().lower()
            prefixes = {16: '0x', 8: '0o', 2: '0b'}
            if base == 0:
                base = next((b for b, p in prefixes.items() if text.lstrip('+-').startswith(p)), 10)
                if base == 10 and text.lstrip('+-').startswith('0') and len(text.lstrip('+-')) > 1:
                    base = 8
            digits = re.match(r"[+-]?(0[xob])?[0-9a-z]*", text).group(0)
            try:
                return int(digits, base)
            except ValueError:
                return 0
        return to_int(value)

    def _floatval(self, value): return to_float(value)
    def _doubleval(self, value): return to_float(value)
    def _boolval(self, value): return to_bool(value)

    async def _strval(self, value):
        return await self.evaluator.to_string(value)

    @byref(0)
    async def _settype(self, var, type):
        aliases = {'integer': 'int', 'boolean': 'bool', 'double': 'float'}
        target = aliases.get(to_str(type).lower(), to_str(type).lower())
        if target not in ('int', 'float', 'string', 'bool', 'array', 'object', 'null'):
            raise PhpError("settype(): Argument #2 ($type) must be a valid type", 'ValueError')
        var.value = await self.evaluator.expressions.cast(target, var.value, self.evaluator.globals)
        return True

    # --- Classes and objects ---

    def class_of(self, value, allow_string: bool = True):
        ev = self.evaluator
        if isinstance(value, PhpObject):
            return value.cls
        if isinstance(value, Closure):
            return ev.builtin_classes.closure
        if allow_string and isinstance(value, str):
            return ev.registry.find_class(value)
        return None

    def _get_class(self, object=None, *, env):
        if object is None:
            if env.current_class is None:
                raise PhpError("get_class() without arguments must be called from within a class")
            return env.current_class.name
        cls = self.class_of(object, allow_string=False)
        if cls is None:
            raise _type_error('get_class', 1, 'object', 'object', object)
        return cls.name

    def _get_parent_class(self, object_or_class=None, *, env):
        cls = env.current_class if object_or_class is None else self.class_of(object_or_class)
        if cls is None or cls.parent is None:
            return False
        return cls.parent.name

    def _method_exists(self, object_or_class, method):
        cls = self.class_of(object_or_class)
        return cls is not None and cls.find_method(to_str(method)) is not None

    def _property_exists(self, object_or_class, property):
        name = to_str(property)
        if isinstance(object_or_class, PhpObject) and name in object_or_class.props:
            return True
        cls = self.class_of(object_or_class)
        return cls is not None and (name in cls.props or name in cls.static_props)

    async def class_kind_exists(self, name, kinds) -> bool:
        cls = await self.evaluator.find_class('\\' + to_str(name).lstrip('\\'), self.evaluator.globals)
        return cls is not None and cls.kind in kinds

    async def _class_exists(self, class_, autoload=True):
        return await self.class_kind_exists(class_, ('class',))

    async def _interface_exists(self, interface, autoload=True):
        return await self.class_kind_exists(interface, ('interface',))

    async def _trait_exists(self, trait, autoload=True):
        return await self.class_kind_exists(trait, ('trait',))

    async def _enum_exists(self, enum, autoload=True):
        return await self.class_kind_exists(enum, ('enum',))

    def _function_exists(self, function):
        return self.evaluator.function_known(to_str(function))

    def _get_object_vars(self, object, *, env):
        return PhpArray.from_pairs((k, copy_value(v)) for k, v in self.evaluator.objects.visible_props(object, env))

    def _get_class_methods(self, object_or_class, *, env):
        cls = self.class_of(object_or_class)
        if cls is None:
            return PhpArray()
        return PhpArray.from_list(m.name for m in cls.methods.values()
                                  if self.evaluator.objects._method_visible(m, env.current_class))

    def _spl_object_id(self, object):
        if not isinstance(object, (PhpObject, Closure)):
            raise _type_error('spl_object_id', 1, 'object', 'object', object)
        return object.id

    def _spl_object_hash(self, object):
        return f"{self._spl_object_id(object):032x}"

    def _is_a(self, object_or_class, class_, allow_string=False):
        cls = self.class_of(object_or_class, allow_string=allow_string)
        return cls is not None and cls.instanceof(to_str(class_))

    def _is_subclass_of(self, object_or_class, class_, allow_string=True):
        cls = self.class_of(object_or_class, allow_string=allow_string)
        target = to_str(class_).lstrip('\\').lower()
        return cls is not None and cls.name.lower() != target and cls.instanceof(target)

    # --- Functions and callables ---

    async def _call_user_func(self, callback, *args, env):
        ev = self.evaluator
        return await ev.invoke(await ev.resolve_callable(callback, env), [CallArg(a) for a in args], env)

    async def _call_user_func_array(self, callback, args, *, env):
        ev = self.evaluator
        call_args = [CallArg(v, name=k if isinstance(k, str) else None)
                     for k, v in _require_array('call_user_func_array', 2, 'args', args).items()]
        return await ev.invoke(await ev.resolve_callable(callback, env), call_args, env)

    def _func_get_args(self, *, env):
        if env.function is None:
            raise PhpError("func_get_args() cannot be called from the global scope")
        return PhpArray.from_list(copy_value(v) for v in env.args)

    def _func_num_args(self, *, env):
        if env.function is None:
            raise PhpError("func_num_args() must be called from a function context")
        return len(env.args)

    # --- Constants ---

    def _define(self, constant_name, value, case_insensitive=False):
        name = to_str(constant_name)
        if not self.evaluator.registry.define_constant(name, copy_value(value)):
            self.evaluator.warn(f"Constant {name} already defined")
            return False
        return True

    def _defined(self, constant_name):
        return self.evaluator.registry.has_constant(to_str(constant_name))

    async def _constant(self, name, *, env):
        ev = self.evaluator
        name = to_str(name)
        if '::' in name:
            cls_name, const = name.split('::', 1)
            cls = await ev.lookup_class('\\' + cls_name.lstrip('\\'), env)
            return await ev.objects.class_constant(cls, const, env)
        if ev.registry.has_constant(name):
            return ev.registry.get_constant(name)
        raise PhpError(f'Undefined constant "{name}"')

    # --- JSON ---

    async def json_native(self, value, env, flags: int, depth: int = 0):
        if depth > 512:
            raise ValueError("Maximum stack depth exceeded")
        match value:
            case None | bool() | int() | str():
                return value
            case float():
                if not math.isfinite(value):
                    raise ValueError("Inf and NaN cannot be JSON encoded")
                return value
            case PhpArray():
                if value.is_list() and not flags & JSON_FORCE_OBJECT:
                    return [await self.json_native(v, env, flags, depth + 1) for v in value.values()]
                return {str(k): await self.json_native(v, env, flags, depth + 1) for k, v in value.items()}
            case PhpObject() if value.cls.instanceof('JsonSerializable'):
                inner = await self.evaluator.call_method(value, 'jsonSerialize', env=env)
                return await self.json_native(inner, env, flags, depth + 1)
            case PhpObject() if value.cls.kind == 'enum':
                if value.cls.backing_type is None:
                    raise ValueError("Non-backed enums have no default serialization")
                return value.get_prop('value')
            case PhpObject():
                return {k: await self.json_native(v, env, flags, depth + 1)
                        for k, v in self.evaluator.objects.visible_props(value, self.evaluator.globals)}
            case Closure():
                return {}
        raise ValueError("Type is not supported")

    def json_failure(self, code: int, message: str, flags: int):
        self.json_error = (code, message)
        if flags & JSON_THROW_ON_ERROR:
            raise ThrowSignal(self.evaluator.new_throwable('JsonException', message, code))

    async def _json_encode(self, value, flags=0, depth=512, *, env):
        flags = to_int(flags)
        try:
            native = await self.json_native(value, env, flags)
            text = serialize(native, fmt='json', pretty=bool(flags & JSON_PRETTY_PRINT),
                             escape_slashes=not flags & JSON_UNESCAPED_SLASHES,
                             ensure_ascii=not flags & JSON_UNESCAPED_UNICODE)
        except ValueError as e:
            code = 7 if 'Inf and NaN' in str(e) or 'JSON compliant' in str(e) else 8
            message = "Inf and NaN cannot be JSON encoded" if code == 7 else str(e)
            self.json_failure(code, message, flags)
            return False
        self.json_error = (0, "No error")
        return text

    def _json_decode(self, json, associative=None, depth=512, flags=0):
        flags = to_int(flags)
        try:
            data = deserialize(to_str(json), fmt='json')
        except ValueError:
            self.json_failure(4, "Syntax error", flags)
            return None
        self.json_error = (0, "No error")
        if associative or (associative is None and flags & JSON_OBJECT_AS_ARRAY):
            return to_php(data)
        return to_php(data, self.make_std_object)

    def make_std_object(self, props: PhpArray) -> PhpObject:
        obj = self.evaluator.objects.create(self.evaluator.builtin_classes.std_class)
        for k, v in props.items():
            obj.props[str(k)] = v
        return obj

    def _json_last_error(self): return self.json_error[0]
    def _json_last_error_msg(self): return self.json_error[1]

    # --- Diagnostics and configuration ---

    def _error_log(self, message, message_type=0, destination=None):
        self.evaluator.side_effects.append({"topics": ["stderr"], "message": to_str(message)})
        return True

    def _trigger_error(self, message, error_level=E_USER_NOTICE):
        level = to_int(error_level)
        if level == E_USER_ERROR:
            raise PhpError(to_str(message))
        label = {E_USER_WARNING: 'Warning', E_USER_DEPRECATED: 'Deprecated'}.get(level, 'Notice')
        self.evaluator.warn(to_str(message), label)
        return True

    def _user_error(self, message, error_level=E_USER_NOTICE):
        return self._trigger_error(message, error_level)

    def _error_reporting(self, error_level=None):
        return E_ALL

    def _ini_get(self, option):
        value = self.evaluator.ini.get(to_str(option), _MISSING)
        return False if value is _MISSING else to_str(value)

    def _ini_set(self, option, value):
        old = self._ini_get(option)
        self.evaluator.ini[to_str(option)] = value
        return old

    def _phpversion(self, extension=None):
        return PHP_VERSION

    def _time(self): return int(time.time())

    def _microtime(self, as_float=False):
        now = time.time()
        if as_float:
            return now
        return f"{now - int(now):.8f} {int(now)}"

    def _hrtime(self, as_number=False):
        ns = time.monotonic_ns()
        return ns if as_number else PhpArray.from_list([ns // 10 ** 9, ns % 10 ** 9])

    async def _usleep(self, microseconds):
        await asyncio.sleep(to_int(microseconds) / 1e6)

    # --- Streams ---

    def _fopen(self, filename, mode='r'):
        target = {'php://stdout': 'stdout', 'php://output': 'stdout', 'php://stderr': 'stderr',
                  'php://memory': 'memory', 'php://temp': 'memory'}.get(to_str(filename))
        if target is None:
            self.evaluator.warn(f"fopen({to_str(filename)}): Failed to open stream: operation not supported")
            return False
        return Resource('stream', {'target': target, 'buffer': [], 'offset': 0},
                        self.evaluator.registry.resource_handle())

    def _fwrite(self, stream, data, length=None):
        if not isinstance(stream, Resource) or stream.closed:
            raise _type_error('fwrite', 1, 'stream', 'resource', stream)
        text = to_str(data) if length is None else to_str(data)[:to_int(length)]
        match stream.payload['target']:
            case 'stdout':
                self.evaluator.write(text)
            case 'stderr':
                self.evaluator.side_effects.append({"topics": ["stderr"], "message": text})
            case _:
                stream.payload['buffer'].append(text)
        return len(text.encode('utf-8'))

    def _fputs(self, stream, data, length=None):
        return self._fwrite(stream, data, length)

    def _rewind(self, stream):
        if isinstance(stream, Resource):
            stream.payload['offset'] = 0
        return True

    def _stream_get_contents(self, stream):
        text = ''.join(stream.payload.get('buffer', []))
        offset = stream.payload.get('offset', 0)
        stream.payload['offset'] = len(text)
        return text[offset:]

    def _fclose(self, stream):
        if not isinstance(stream, Resource):
            raise _type_error('fclose', 1, 'stream', 'resource', stream)
        stream.closed = True
        return True

    def _get_resource_type(self, resource):
        return 'Unknown' if resource.closed else resource.kind


# ===================================================================
# 4. Script Execution
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    output: str = ""
    exit_status: Optional[int] = None
    error_message: Optional[str] = None
    error_token: Optional[Dict] = None
    side_effects: List[Dict] = field(default_factory=list)
    stack_trace: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")

        # Add a location prefix when we have a token; avoid duplicating the same prefix
        if self.error_token and self.error_token.get('line') is not None:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


class ScriptRunner:
    """Transforms AST documents and executes them in one isolated Evaluator."""

    def __init__(self, config: Optional[InterpreterConfig] = None, on_output=None):
        self.config = config or InterpreterConfig()
        self.evaluator = Evaluator(self.config, on_output=on_output)
        self.stdlib = StdLib(self.evaluator)
        self.transformer = AstTransformer()
        self._initialized = False

    async def _initialize(self):
        if self._initialized:
            return
        self.stdlib.install()
        seeds = {k.lstrip('$'): v for k, v in (self.config.superglobals or {}).items()}
        for name in sorted(SUPERGLOBALS - {'GLOBALS'}):
            self.evaluator.globals.set(name, to_php(seeds.get(name) or {}))
        self._initialized = True

    def _to_program(self, script) -> ast.Program:
        match script:
            case ast.Program():
                return script
            case list() if all(isinstance(s, ast.Node) for s in script):
                return ast.Program(script)
            case str() | bytes():
                return self.transformer.program(deserialize(script))
            case _:
                return self.transformer.program(script)

    def get_global(self, name: str) -> Any:
        value, found = self.evaluator.globals.get(name)
        return value if found else None

    async def handle_script(self, script) -> ExecutionResult:
        await self._initialize()
        ev = self.evaluator
        effects_start = len(ev.side_effects)
        output_start = len(ev.output.chunks)

        def finish(status, **kwargs) -> ExecutionResult:
            return ExecutionResult(status=status, output=''.join(ev.output.chunks[output_start:]),
                                   side_effects=ev.side_effects[effects_start:], **kwargs)

        try:
            program = self._to_program(script)
        except ValueError as e:
            return finish('error', error_message=f"ParseError: {e}")

        try:
            try:
                completion: Completion = await ev.run(program)
            finally:
                ev.output.flush_all()
                tasks = list(ev.active_tasks)
                ev.cancel_tasks()
                if tasks:
                    await asyncio.gather(*tasks, return_exceptions=True)
        except PhpError as e:
            return self._fatal(finish, e)

        match completion:
            case Thrown(exception=exc):
                return self._uncaught(finish, exc)
            case Exit(status=status):
                return finish('success', exit_status=status)
            case Return(value=value):
                return finish('success', value=value)
        return finish('success')

    def _report(self, text: str) -> None:
        self.evaluator.side_effects.append({"topics": ["stderr"], "message": text})

    def _fatal(self, finish, e: PhpError) -> ExecutionResult:
        ev = self.evaluator
        loc = getattr(e.node, 'loc', None)
        line = loc.get('line') if isinstance(loc, dict) else None
        frames = e.trace or []
        where = f" in {ev.script_name} on line {line}" if line else ""
        self._report(f"PHP Fatal error:  {e.message}{where}\nStack trace:\n{trace_as_string(frames)}")
        ev._dbg("fatal", e.message)
        return finish('error', error_message=f"PHP Fatal error:  {e.message}",
                      error_token=loc if isinstance(loc, dict) else None, stack_trace=frames)

    def _uncaught(self, finish, exc: PhpObject) -> ExecutionResult:
        ev = self.evaluator
        message = to_str(exc.get_prop('message'))
        line = exc.get_prop('line')
        frames = (exc.native or {}).get('trace', [])
        self._report(
            f"PHP Fatal error:  Uncaught {exc.cls.name}: {message} in {exc.get_prop('file')}:{line}\n"
            f"Stack trace:\n{trace_as_string(frames)}\n  thrown in {exc.get_prop('file')} on line {line}"
        )
        ev._dbg("uncaught", exc.cls.name, message)
        return finish('error', error_message=f"PHP Fatal error:  Uncaught {exc.cls.name}: {message}",
                      error_token={'line': line, 'col': None} if line else None, stack_trace=frames)
