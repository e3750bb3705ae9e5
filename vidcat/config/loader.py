import yaml
from pathlib import Path
from typing import Optional
from .models import AppConfig


def load_config(config_path: Optional[Path], required: bool = True) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model.

    With ``required=False`` a missing file yields the built-in defaults, which is
    what the CLI does for its default config location.
    """
    if config_path is None or not config_path.exists():
        if required:
            raise FileNotFoundError(f"Config file not found: {config_path}")
        return AppConfig()

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")

    # Flat list shorthand: `scanner: [mp4, mkv]`
    scanner = data.get("scanner")
    if isinstance(scanner, list):
        data["scanner"] = {"extensions": scanner}

    return AppConfig(**data)
