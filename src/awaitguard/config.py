from __future__ import annotations

from collections.abc import Mapping
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import date, datetime, time
from pathlib import Path
from types import MappingProxyType
from typing import TypeAlias
import os
import tomllib

DEFAULT_CONFIG_NAME = "awaitguard.toml"
CONFIG_PATH_ENV = "AWAITGUARD_CONFIG"

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]

DEFAULT_SYNC_VARIANTS: dict[str, str] = {"expect": "expect_sync"}
DEFAULT_ELIDED_PACKAGES: frozenset[str] = frozenset(
    {"asyncio", "_pytest", "pluggy", "unittest", "awaitguard"}
)


@dataclass(frozen=True)
class GuardConfig:
    # Plain functions that only perform a synchronous check; a conflict
    # reported against one of them gets a hint naming its synchronous variant.
    sync_variants: Mapping[str, str] = field(
        default_factory=lambda: dict(DEFAULT_SYNC_VARIANTS), hash=False
    )
    elided_packages: frozenset[str] = DEFAULT_ELIDED_PACKAGES

    def __post_init__(self) -> None:
        object.__setattr__(self, "sync_variants", MappingProxyType(dict(self.sync_variants)))

    def sync_variant_for(self, function_name: str) -> str | None:
        return self.sync_variants.get(function_name)


_GUARD_CONFIG: ContextVar[GuardConfig] = ContextVar(
    "awaitguard_config",
    default=GuardConfig(),
)


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError:
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    if config_path is None:
        override = os.getenv(CONFIG_PATH_ENV, "").strip()
        if override:
            config_path = Path(override)
        else:
            base = root if root is not None else Path.cwd()
            config_path = base / DEFAULT_CONFIG_NAME
    return _load_toml(config_path)


def guard_defaults(
    root: Path | None = None, config_path: Path | None = None
) -> TomlTable:
    data = load_config(root=root, config_path=config_path)
    section = data.get("guard", {})
    return section if isinstance(section, dict) else {}


def _normalize_name_list(value: TomlValue) -> list[str]:
    items: list[str] = []
    if value is None:
        return items
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            if isinstance(item, str):
                items.extend([part.strip() for part in item.split(",") if part.strip()])
    return [item for item in items if item]


def _normalize_name_map(value: TomlValue) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    mapping: dict[str, str] = {}
    for key, item in value.items():
        name = str(key).strip()
        if not name or not isinstance(item, str) or not item.strip():
            continue
        mapping[name] = item.strip()
    return mapping


def guard_config_from_table(section: TomlTable | None) -> GuardConfig:
    if not isinstance(section, dict):
        return GuardConfig()
    sync_variants = dict(DEFAULT_SYNC_VARIANTS)
    if "sync_variants" in section:
        sync_variants = _normalize_name_map(section.get("sync_variants"))
    elided = set(DEFAULT_ELIDED_PACKAGES)
    if "elided_packages" in section:
        elided = set(_normalize_name_list(section.get("elided_packages")))
    elided.update(_normalize_name_list(section.get("extra_elided_packages")))
    return GuardConfig(sync_variants=sync_variants, elided_packages=frozenset(elided))


def load_guard_config(
    root: Path | None = None, config_path: Path | None = None
) -> GuardConfig:
    return guard_config_from_table(guard_defaults(root=root, config_path=config_path))


def get_guard_config() -> GuardConfig:
    return _GUARD_CONFIG.get()


def set_guard_config(config: GuardConfig) -> Token[GuardConfig]:
    return _GUARD_CONFIG.set(config)


def reset_guard_config(token: Token[GuardConfig]) -> None:
    _GUARD_CONFIG.reset(token)


@contextmanager
def guard_config_scope(config: GuardConfig):
    token = set_guard_config(config)
    try:
        yield config
    finally:
        reset_guard_config(token)
