"""stackproof Configuration: project-level .stackproofrc.yml support.

Loads configuration from .stackproofrc.yml (or .stackproofrc.yaml,
.stackproofrc.json) found by walking up from the working directory. Only
proof parameters are configurable; they are fixed process-wide by
``stackproof.init``.

Example .stackproofrc.yml:
    prover:
      num_queries: 32          # FRI queries per proof
      max_trace_length: 1048576
      workers: 4               # threads hashing Merkle leaves, 0 = sequential
      min_stack_depth: 16      # output words below this depth are overflow
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProverParameters:
    num_queries: int = 32
    max_trace_length: int = 1 << 20
    workers: int = 0
    min_stack_depth: int = 16


@dataclass(frozen=True)
class StackproofConfig:
    """Project-level stackproof configuration."""
    prover: ProverParameters = field(default_factory=ProverParameters)
    path: Optional[str] = None


_CONFIG_FILES = [
    ".stackproofrc.yml",
    ".stackproofrc.yaml",
    ".stackproofrc.json",
]


def find_config(start_dir: str = ".") -> Optional[str]:
    """Find the nearest config file by walking up from start_dir."""
    current = os.path.abspath(start_dir)
    while True:
        for name in _CONFIG_FILES:
            path = os.path.join(current, name)
            if os.path.isfile(path):
                return path
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
    return None


def load_config(path: Optional[str] = None, start_dir: str = ".") -> StackproofConfig:
    """Load configuration from a file.

    If no path is given, searches for a config file starting from start_dir.
    If no config file is found or it cannot be parsed, returns defaults.
    """
    if path is None:
        path = find_config(start_dir)
    if path is None:
        return StackproofConfig()

    try:
        with open(path, "r") as f:
            content = f.read()
    except OSError as exc:
        logger.warning("cannot read %s: %s", path, exc)
        return StackproofConfig()

    try:
        if path.endswith(".json"):
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        logger.warning("cannot parse %s: %s", path, exc)
        return StackproofConfig()

    config = _dict_to_config(data if isinstance(data, dict) else {}, path)
    logger.debug("loaded %s: %s", path, config.prover)
    return config


def _positive_int(data: dict[str, Any], key: str, default: int, minimum: int = 1) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        if key in data:
            logger.warning("ignoring prover.%s = %r", key, value)
        return default
    return value


def _dict_to_config(data: dict[str, Any], path: Optional[str] = None) -> StackproofConfig:
    """Convert a parsed dict to StackproofConfig. Unknown keys are ignored."""
    prover = data.get("prover")
    if not isinstance(prover, dict):
        return StackproofConfig(path=path)
    defaults = ProverParameters()
    return StackproofConfig(
        prover=ProverParameters(
            num_queries=_positive_int(prover, "num_queries", defaults.num_queries),
            max_trace_length=_positive_int(prover, "max_trace_length", defaults.max_trace_length),
            workers=_positive_int(prover, "workers", defaults.workers, minimum=0),
            min_stack_depth=_positive_int(prover, "min_stack_depth", defaults.min_stack_depth),
        ),
        path=path,
    )
