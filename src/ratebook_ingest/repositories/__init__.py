from .rates import RateRepository

__all__ = ["RateRepository"]
