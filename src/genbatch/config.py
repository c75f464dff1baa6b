import os
from pathlib import Path
from typing import Any, Dict

import yaml

from .models import GenBatchConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")
DATA_FILE_ENV = "GENBATCH_DATA_FILE"


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(cli_args: Dict[str, Any] = None) -> GenBatchConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic GenBatchConfig model.

    Raises:
        pydantic.ValidationError: if the merged YAML does not validate
    """
    cli_args = cli_args or {}

    # 1. Load default YAML
    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides
    local_data = load_yaml(LOCAL_CONFIG_PATH)
    config_data = merge_dicts(config_data, local_data)

    # 3. Environment
    data_file = os.environ.get(DATA_FILE_ENV)
    if data_file:
        config_data = merge_dicts(config_data, {"storage": {"data_file": data_file}})

    config = GenBatchConfig.from_dict(config_data)

    # 4. Apply CLI overrides
    return config.merge_cli_overrides(cli_args)
