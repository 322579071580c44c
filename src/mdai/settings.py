# mdai: Lightweight YAML settings loader for per-project session settings.

from __future__ import annotations

import logging
import pathlib
from typing import List, Optional

import yaml
from pydantic import Field, ValidationError

from . import config
from .models import CustomBaseModel

logger = logging.getLogger(__name__)


class SessionSettings(CustomBaseModel):
    editor: str = Field(default_factory=lambda: config.MDAI_EDITOR, description="Editor command")
    compression: bool = Field(default_factory=lambda: config.MDAI_COMPRESSION, description="Compress tool fences")
    tools: List[str] = Field(default_factory=lambda: list(config.MDAI_TOOLS), description="Enabled tools (empty = all)")
    model: str = Field(default_factory=lambda: config.MDAI_MODEL, description="Model id")
    system_prompt: Optional[str] = Field(default=None, description="Replaces the built-in system prompt")


def load_settings(root: pathlib.Path) -> SessionSettings:
    """
    Load session settings from <root>/.mdai/settings.yaml or settings.yml.

    Returns environment defaults when the settings file is missing, unreadable,
    not a mapping or invalid. The function never raises.
    """
    mdai_dir = pathlib.Path(root) / ".mdai"
    for p in [mdai_dir / "settings.yaml", mdai_dir / "settings.yml"]:
        if not p.is_file():
            continue
        try:
            data = yaml.safe_load(p.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
            logger.warning("Could not read settings %s: %s", p, e)
            continue
        if not isinstance(data, dict):
            # Non-mapping YAML is treated as empty settings.
            return SessionSettings()
        try:
            return SessionSettings.model_validate(data)
        except ValidationError as e:
            logger.warning("Invalid settings in %s: %s", p, e)
            return SessionSettings()
    return SessionSettings()
