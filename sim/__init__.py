"""Synthetic data generators."""
from .dgp import planted_direction_data

__all__ = ["planted_direction_data"]
