"""
taskweave — Environment Config Loader

Settings are layered, later layers winning:
  base file    TASKWEAVE_CONFIG, else ./taskweave.yaml
  overlay      <TW_CONFIG_DIR or config>/<TW_ENV>.yaml
  env vars     TW_FLOW__MAX_STEPS=250 -> {"flow": {"max_steps": 250}}

Consumers read single values through get_config_value:

    budget = get_config_value("flow.max_steps", default=100)
    policy = get_config_value("retry.openai", cfg, {})

Recognised sections: flow, retry.<provider>, rate_limits.<provider>.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("taskweave.config")

DEFAULT_CONFIG_FILE = "taskweave.yaml"
ENV_PREFIX = "TW_"
NESTING_SEPARATOR = "__"

# Meta variables that steer loading and are not settings themselves.
_META_VARS = frozenset({"TW_ENV", "TW_CONFIG_DIR", "TW_VERSION"})


def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Return a new dict with `overlay` laid over `base`. Nested dicts merge
    key by key; any other value (lists included) replaces the old one.
    Neither input is modified.
    """
    merged = copy.deepcopy(base)
    for key, incoming in overlay.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(incoming, dict):
            merged[key] = deep_merge(current, incoming)
        else:
            merged[key] = copy.deepcopy(incoming)
    return merged


def _read_yaml(path: str | Path) -> dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f)
    return data or {}


# ── Overlay ─────────────────────────────────────────────────────

def _overlay_paths(base_path: str, env: str, config_dir: str) -> list[Path]:
    directory = Path(config_dir)
    beside_base = Path(os.path.dirname(base_path) or ".") / "config"
    return [directory / f"{env}.yaml", directory / f"{env}.yml", beside_base / f"{env}.yaml"]


def _load_overlay_file(base_path: str, env: str = "", config_dir: str = "") -> dict[str, Any]:
    env = env or os.environ.get("TW_ENV", "")
    if not env:
        return {}
    config_dir = config_dir or os.environ.get("TW_CONFIG_DIR", "config")

    found = next((p for p in _overlay_paths(base_path, env, config_dir) if p.is_file()), None)
    if found is None:
        logger.debug("env=%s has no overlay file", env)
        return {}

    overlay = _read_yaml(found)
    logger.info("Applied %s overlay from %s (%d top-level keys)", env, found, len(overlay))
    return overlay


# ── Environment variables ───────────────────────────────────────

def _parse_scalar(raw: str) -> Any:
    """Interpret an env value the way YAML would ("7" -> 7, "true" -> True)."""
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def _set_nested(target: dict, path: list[str], value: Any):
    *parents, leaf = path
    for part in parents:
        target = target.setdefault(part, {})
    target[leaf] = value


def _load_env_overrides(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name, raw in os.environ.items():
        if not name.startswith(prefix) or name in _META_VARS:
            continue
        path = [p for p in name[len(prefix):].lower().split(NESTING_SEPARATOR) if p]
        if path:
            _set_nested(overrides, path, _parse_scalar(raw))

    if overrides:
        logger.debug("%d config section(s) overridden from %s* variables", len(overrides), prefix)
    return overrides


# ── Public API ──────────────────────────────────────────────────

def load_config(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Build the merged configuration.

    Args:
        base_path: Base YAML file; falls back to TASKWEAVE_CONFIG, then
            taskweave.yaml. A missing file contributes nothing.
        env: Overlay profile; falls back to TW_ENV.
        config_dir: Overlay directory; falls back to TW_CONFIG_DIR.
        include_env_vars: Apply TW_* overrides last.

    The result also carries `_active_env` and `_config_source`.
    """
    source = base_path or os.environ.get("TASKWEAVE_CONFIG", DEFAULT_CONFIG_FILE)

    layers = []
    if os.path.isfile(source):
        layers.append(_read_yaml(source))
        logger.debug("Base config read from %s", source)
    layers.append(_load_overlay_file(source, env=env, config_dir=config_dir))
    if include_env_vars:
        layers.append(_load_env_overrides())

    config: dict[str, Any] = {}
    for layer in layers:
        if layer:
            config = deep_merge(config, layer)

    config["_active_env"] = env or os.environ.get("TW_ENV", "default")
    config["_config_source"] = source
    return config


def get_config_value(path: str, config: dict[str, Any] | None = None, default: Any = None) -> Any:
    """Look up a dotted path such as "retry.default.max_attempts"; `default` if any segment is missing."""
    node: Any = load_config() if config is None else config
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node
