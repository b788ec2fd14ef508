from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Optional
import collections.abc

# YAML is already a project dependency (config loading)
import yaml

from phpwalk.php_datatypes import PhpArray


# --------------------------
# Format detection
# --------------------------

def detect_format(source: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns 'json' or 'yaml'.
    ``source`` may be a content type or a file name; falls back to sniffing ``data_hint``.
    """
    s = (source or "").lower()
    if 'json' in s:
        return 'json'
    if 'yaml' in s or s.endswith('.yml'):
        return 'yaml'

    if data_hint is not None:
        head = data_hint.lstrip()
        if head.startswith('{') or head.startswith('['):
            return 'json'
        if head:
            return 'yaml'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                source: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Convert document text (JSON or YAML) to plain Python structures.
    Raises ValueError when the text does not parse.
    """
    text = data.decode('utf-8') if isinstance(data, (bytes, bytearray)) else str(data)
    f = fmt or detect_format(source, text)
    if f == 'json':
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON document: {e}") from e
    if f == 'yaml':
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML document: {e}") from e
    raise ValueError(f"Unsupported document format: {f!r}")


def load_document(path: str | Path) -> Any:
    p = Path(path)
    return deserialize(p.read_text(encoding="utf-8"), source=p.name)


def serialize(value: Any,
              *,
              fmt: str,
              pretty: bool = True,
              escape_slashes: bool = False,
              ensure_ascii: bool = False) -> str:
    """
    Convert plain Python structures into JSON or YAML text.
    JSON output follows json_encode's layout: compact by default, four-space indent when pretty.
    """
    f = (fmt or '').lower()
    if f == 'json':
        if pretty:
            text = json.dumps(value, ensure_ascii=ensure_ascii, indent=4, separators=(',', ': '),
                              allow_nan=False)
        else:
            text = json.dumps(value, ensure_ascii=ensure_ascii, separators=(',', ':'), allow_nan=False)
        if escape_slashes:
            text = text.replace('/', '\\/')
        return text
    if f == 'yaml':
        return yaml.safe_dump(value, sort_keys=False)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def to_php(value: Any, make_object: Optional[Callable[[PhpArray], Any]] = None) -> Any:
    """
    Convert decoded structures into PHP values: lists and mappings become arrays.
    With ``make_object``, mappings become objects built from their property array instead.
    """
    if isinstance(value, collections.abc.Mapping):
        arr = PhpArray()
        for k, v in value.items():
            arr.set(str(k) if make_object is not None else k, to_php(v, make_object))
        return make_object(arr) if make_object is not None else arr
    if isinstance(value, (list, tuple)):
        return PhpArray.from_list(to_php(v, make_object) for v in value)
    return value


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "load_document",
    "to_php",
]
