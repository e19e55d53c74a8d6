from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
from PIL import Image


class AssetStoreError(Exception):
    pass


@dataclass
class AssetStoreConfig:
    root: str = field(default_factory=lambda: os.environ.get("SHEET_INDEX_ASSET_ROOT", "./sheet_assets"))
    enable_logging: bool = True
    log_level: int = logging.INFO


def _setup_logger(cfg: AssetStoreConfig) -> logging.Logger:
    logger = logging.getLogger("AssetStore")
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setFormatter(logging.Formatter("[AssetStore] %(asctime)s %(levelname)s - %(message)s"))
        logger.addHandler(h)
    logger.setLevel(cfg.log_level if cfg.enable_logging else logging.CRITICAL)
    return logger


# -------------------------
# Storage keys
# -------------------------
def sheet_prefix(project_id: str, job_id: str, source_index: int) -> str:
    return f"projects/{project_id}/jobs/{job_id}/sheets/{source_index}"


def render_path(project_id: str, job_id: str, source_index: int) -> str:
    return f"{sheet_prefix(project_id, job_id, source_index)}/render.png"


def titleblock_path(project_id: str, job_id: str, source_index: int) -> str:
    return f"{sheet_prefix(project_id, job_id, source_index)}/titleblock.png"


def crop_attempt_path(project_id: str, job_id: str, source_index: int, attempt: int) -> str:
    return f"{sheet_prefix(project_id, job_id, source_index)}/crop_attempt_{attempt}.png"


class LocalAssetStore:
    """PNG object store on the local filesystem, keyed by relative storage paths."""

    def __init__(self, cfg: AssetStoreConfig | None = None):
        self.cfg = cfg or AssetStoreConfig()
        self.logger = _setup_logger(self.cfg)
        self.root = Path(self.cfg.root)

    def abs_path(self, rel_path: str) -> Path:
        rel = Path(rel_path)
        if rel.is_absolute() or ".." in rel.parts:
            raise AssetStoreError(f"Refusing storage path outside the asset root: {rel_path}")
        return self.root / rel

    def exists(self, rel_path: str) -> bool:
        return self.abs_path(rel_path).is_file()

    def save_png(self, rel_path: str, image: np.ndarray) -> str:
        """Write `image` (H,W,3 RGB) at `rel_path`, overwriting any previous object."""
        target = self.abs_path(rel_path)
        try:
            os.makedirs(target.parent, exist_ok=True)
            Image.fromarray(np.uint8(image)).save(target, format="PNG")
        except (OSError, ValueError, TypeError) as e:
            raise AssetStoreError(f"Failed to save {rel_path}: {e}") from e
        self.logger.debug("Saved %s", rel_path)
        return rel_path
