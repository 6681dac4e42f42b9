"""
Data containers and synthetic data generators.
"""

from dmlkit.data.causaldata import CausalData
from dmlkit.data.generators import CausalDatasetGenerator, generate_irm_data, generate_plr_data
from dmlkit.data.penn import load_penn_bonus, prepare_penn_sample

__all__ = [
    "CausalData",
    "CausalDatasetGenerator",
    "generate_plr_data",
    "generate_irm_data",
    "load_penn_bonus",
    "prepare_penn_sample",
]
