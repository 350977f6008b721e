import yaml
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from pydantic import BaseModel

from .models import OrchestratorConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")


def get_config_value(config: Union[OrchestratorConfig, Dict], path: str, default=None):
    """
    Read a dotted path such as "sweeper.stale_timeout_s".

    Works on the pydantic config (nested models are walked by attribute)
    and on the raw dicts produced by load_yaml.
    """
    value: Any = config
    for key in path.split("."):
        if isinstance(value, BaseModel):
            if key not in type(value).model_fields:
                return default
            value = getattr(value, key)
        elif isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def config_layers(extra_path: Optional[str] = None) -> Iterable[Path]:
    """YAML files in increasing precedence."""
    yield DEFAULT_CONFIG_PATH
    yield LOCAL_CONFIG_PATH
    if extra_path:
        path = Path(extra_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        yield path


def resolve_config(cli_args: Dict[str, Any] = None) -> OrchestratorConfig:
    """
    Resolve config: default.yaml < local.yaml < --config FILE < CLI flags.

    Raises pydantic.ValidationError at startup if the merged config is
    invalid (e.g. progress weights that do not sum to 1).
    """
    cli_args = cli_args or {}

    config_data: Dict[str, Any] = {}
    for path in config_layers(cli_args.get("config")):
        config_data = merge_dicts(config_data, load_yaml(path))

    config = OrchestratorConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
