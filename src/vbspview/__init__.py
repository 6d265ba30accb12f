from __future__ import annotations

from vbspview.assets import ChainedLoader, detect_tf2_dir
from vbspview.config import LoadConfig
from vbspview.errors import AssetNotFound, MapLoadError, VbspviewError
from vbspview.material import MaterialData, load_material_fallback
from vbspview.pipeline import MapGeometry, load_map

__all__ = [
    "AssetNotFound",
    "ChainedLoader",
    "LoadConfig",
    "MapGeometry",
    "MapLoadError",
    "MaterialData",
    "VbspviewError",
    "__version__",
    "detect_tf2_dir",
    "load_map",
    "load_material_fallback",
]

__version__ = "0.1.0"
