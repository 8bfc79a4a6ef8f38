"""Configuration Loader for the Catalog Hierarchy Engine.

Engine settings live in a YAML file validated by pydantic models.
Connection credentials stay in the environment (.env via python-dotenv).
"""

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env")


# =============================================================================
# PYDANTIC MODELS FOR CONFIGURATION VALIDATION
# =============================================================================

class GraphSettings(BaseModel):
    """Which graph backend to talk to."""
    backend: Literal["neo4j", "falkordb"] = "neo4j"
    graph_name: str = "catalog"
    max_retries: int = Field(default=2, ge=0)


class HierarchySettings(BaseModel):
    """Tuning knobs for traversal, repair and breadcrumbs."""
    level_recalculation_max_iterations: int = Field(default=20, ge=1)
    cycle_scan_max_depth: int = Field(default=20, ge=1)
    breadcrumb_tie_break: Literal["lowest_level_then_id", "lowest_id"] = "lowest_level_then_id"
    hierarchies: list[str] = Field(default_factory=lambda: ["ladies", "gents", "kids"])
    restrict_to_known_hierarchies: bool = False


class HierarchyConfig(BaseModel):
    graph: GraphSettings = Field(default_factory=GraphSettings)
    hierarchy: HierarchySettings = Field(default_factory=HierarchySettings)


# =============================================================================
# CONFIGURATION LOADER
# =============================================================================

_CATALOG_DIR = Path(__file__).parent
DEFAULT_CONFIG_PATH = _CATALOG_DIR / "hierarchy_config.yaml"


def _resolve_config_path(config_path: Optional[str] = None) -> Path:
    """Explicit path first, then CATALOG_CONFIG, then the bundled default."""
    if config_path:
        return Path(config_path)
    env_path = os.environ.get("CATALOG_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def load_hierarchy_config(config_path: Optional[str] = None) -> HierarchyConfig:
    """Load and validate configuration from YAML.

    A missing file yields the defaults; an invalid file raises pydantic's
    ValidationError.
    """
    path = _resolve_config_path(config_path)
    if not path.exists():
        return HierarchyConfig()

    with open(path, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f)

    if not raw:
        return HierarchyConfig()

    return HierarchyConfig(**raw)


# =============================================================================
# CONFIG SINGLETON
# =============================================================================

_config: Optional[HierarchyConfig] = None


def get_config() -> HierarchyConfig:
    """Get the loaded configuration (singleton)."""
    global _config
    if _config is None:
        _config = load_hierarchy_config()
    return _config


def reload_config(config_path: Optional[str] = None) -> HierarchyConfig:
    """Force reload of configuration."""
    global _config
    _config = load_hierarchy_config(config_path)
    return _config
