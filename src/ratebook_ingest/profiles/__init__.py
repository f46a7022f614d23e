from .dsl import ProviderProfile, DEFAULT_REQUIRED_FIELDS
from .loader import load_profile, list_profiles

__all__ = ["ProviderProfile", "DEFAULT_REQUIRED_FIELDS", "load_profile", "list_profiles"]
