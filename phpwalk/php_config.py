"""
Interpreter configuration, loaded from YAML.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass
class InterpreterConfig:
    # Default for scripts without declare(strict_types=...)
    strict_types: bool = False
    # `false` evaluates both operands of && / || / and / or
    short_circuit_logic: bool = True
    # `false` lets the first catch clause take every exception
    catch_by_type: bool = True
    # Surface engine errors (TypeError, DivisionByZeroError, ...) as catchable throwables
    errors_as_exceptions: bool = False
    max_call_depth: int = 512
    echo_to_stdout: bool = False
    superglobals: Dict[str, Any] = field(default_factory=dict)
    ini: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Optional[dict]) -> 'InterpreterConfig':
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)


def load_config(path: Optional[str] = None) -> InterpreterConfig:
    """Loads a YAML config file; falls back to $PHPWALK_CONFIG, then to defaults."""
    path = path or os.environ.get("PHPWALK_CONFIG")
    if not path:
        return InterpreterConfig()
    text = Path(path).read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return InterpreterConfig.from_mapping(data)
