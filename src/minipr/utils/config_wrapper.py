from __future__ import annotations

from typing import Optional, Sequence

from hydra import compose, initialize_config_dir
from hydra.core.global_hydra import GlobalHydra
from omegaconf import DictConfig, OmegaConf

from minipr.utils.config import find_project_root


def Config(
    load: bool = True,
    overrides: Optional[Sequence[str]] = None,
    config_name: str = "base",
) -> DictConfig:
    """Compose the run config with Hydra, applying `KEY=VALUE` overrides."""
    if not load:
        return OmegaConf.create({})

    if GlobalHydra.instance().is_initialized():
        GlobalHydra.instance().clear()

    config_dir = find_project_root() / "configs"
    with initialize_config_dir(config_dir=str(config_dir), version_base=None):
        cfg = compose(config_name=config_name, overrides=list(overrides or []))
    return cfg
