"""
Utilities for building the environment used to configure quickpay.

Settings come from three layers: a per-user configuration file, the process
environment, and explicit overrides. Later layers win. The result is a plain
mapping of ``QUICKPAY_*`` keys that can be fed into
:class:`quickpay.core.config.QuickPayConfig`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "QuickPayEnvironment",
    "build_environment",
    "parse_config_file",
]

ENV_PREFIX = "QUICKPAY_"


DEFAULT_CONFIG_FILE = Path.home() / ".config" / "quickpay"


def _normalize_key(key: str) -> str:
    key = key.strip().upper()
    if not key.startswith(ENV_PREFIX):
        key = ENV_PREFIX + key
    return key


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


def parse_config_file(path: Path) -> Dict[str, str]:
    """
    Read ``KEY=VALUE`` lines from ``path``.

    Keys may be written bare (``client_id``) or with the ``QUICKPAY_`` prefix;
    both normalise to the prefixed upper-case form. A missing file yields an
    empty mapping.
    """
    values: Dict[str, str] = {}
    try:
        data = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return values

    for raw_line in data.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[_normalize_key(key)] = _unquote(value.strip())
    return values


def _prefixed(values: Mapping[str, str]) -> Dict[str, str]:
    return {key: value for key, value in values.items() if key.startswith(ENV_PREFIX)}


@dataclass(frozen=True)
class QuickPayEnvironment:
    """
    A resolved set of ``QUICKPAY_*`` variables.
    """

    variables: Mapping[str, str]

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.variables.get(key, default)


def build_environment(
    *,
    config_file: Optional[str | Path] = DEFAULT_CONFIG_FILE,
    base: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> QuickPayEnvironment:
    """
    Assemble a :class:`QuickPayEnvironment` from multiple sources.

    ``base`` defaults to :data:`os.environ` and takes precedence over
    ``config_file``; set ``config_file`` to ``None`` to skip file loading.
    ``overrides`` always win.
    """
    merged: Dict[str, str] = _prefixed(base if base is not None else os.environ)

    if config_file is not None:
        for key, value in parse_config_file(Path(config_file)).items():
            merged.setdefault(key, value)

    if overrides:
        for key, value in overrides.items():
            merged[_normalize_key(key)] = value

    return QuickPayEnvironment(variables=merged)
