"""
YAML run configuration with attribute access.

`Config().RANK_LIB.FOLDS` reads `configs/base.yaml` below the project root.
Nested sections are views on the same dictionary, so `update_dict` is seen
through every section object handed out earlier. The CLI composes its config
with Hydra instead (see `config_wrapper`).
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

DEFAULT_CONFIG = "configs/base.yaml"


def find_project_root(start: Path | str = __file__) -> Path:
    """First directory above `start` holding a pyproject.toml, else the working directory."""
    here = Path(start).resolve()
    return next(
        (d for d in (here, *here.parents) if (d / "pyproject.toml").is_file()),
        Path.cwd().resolve(),
    )


def resolve_config_path(path: str | Path) -> Path:
    p = Path(path).expanduser()
    if not p.is_absolute():
        p = find_project_root() / p
    p = p.resolve()
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {p}")
    return p


def merge_into(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Deep merge where `override` wins; returns `base`."""
    for key, value in override.items():
        current = base.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            merge_into(current, value)
        else:
            base[key] = copy.deepcopy(value)
    return base


class Config:
    def __init__(
        self,
        load: bool = True,
        cfg_dict: Optional[dict[str, Any]] = None,
        path: Optional[str | Path] = DEFAULT_CONFIG,
    ):
        if load:
            self.cfg_file: Optional[Path] = resolve_config_path(path or DEFAULT_CONFIG)
            with open(self.cfg_file, "r") as f:
                data = yaml.safe_load(f) or {}
        else:
            self.cfg_file = None
            data = cfg_dict if cfg_dict is not None else {}
        if not isinstance(data, dict):
            raise TypeError(f"Config root must be a mapping, got {type(data).__name__}")
        self.cfg_dict: dict[str, Any] = data

    def __getattr__(self, key: str) -> Any:
        # Only reached for names that are not instance attributes.
        try:
            value = self.__dict__["cfg_dict"][key]
        except KeyError:
            raise AttributeError(key) from None
        if isinstance(value, dict):
            return Config(load=False, cfg_dict=value)
        return value

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default)

    def update_dict(self, cfg_dict: Mapping[str, Any]) -> None:
        if not isinstance(cfg_dict, Mapping):
            raise TypeError("update_dict expects a mapping")
        merge_into(self.cfg_dict, cfg_dict)

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self.cfg_dict)

    def __repr__(self) -> str:
        return json.dumps(self.cfg_dict, indent=2, ensure_ascii=False)
