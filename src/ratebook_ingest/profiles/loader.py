from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import yaml

from ..config.settings import get_settings
from ..exceptions import ValidationError
from .dsl import ProviderProfile

logger = structlog.get_logger()

BUILTIN_PROFILES_PATH = Path(__file__).parent / "providers"
DEFAULT_PROFILE = "default"


def _profiles_path() -> Path:
    override = get_settings().provider_profiles_path
    return Path(override) if override else BUILTIN_PROFILES_PATH


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValidationError(f"Provider profile {path.name} must be a mapping")
    return data


def load_profile(provider_code: str, profiles_path: Optional[Path] = None) -> ProviderProfile:
    """Load a provider profile layered over the default profile.

    Keys present in the provider file replace the default's value for that key.
    Providers without a file get the default profile under their own code.
    """
    base_dir = profiles_path or _profiles_path()
    code = provider_code.strip().lower()

    default_path = base_dir / f"{DEFAULT_PROFILE}.yaml"
    data = _read_yaml(default_path) if default_path.exists() else {}

    provider_path = base_dir / f"{code}.yaml"
    if code != DEFAULT_PROFILE and provider_path.exists():
        data.update(_read_yaml(provider_path))
    elif code != DEFAULT_PROFILE:
        logger.debug("No provider profile found, using default", provider_code=code)

    data["provider_code"] = code
    try:
        return ProviderProfile(**data)
    except ValueError as e:
        raise ValidationError(f"Invalid provider profile for {code}", [str(e)]) from e


def list_profiles(profiles_path: Optional[Path] = None) -> List[str]:
    base_dir = profiles_path or _profiles_path()
    return sorted(p.stem for p in base_dir.glob("*.yaml") if p.stem != DEFAULT_PROFILE)
