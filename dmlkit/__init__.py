"""
dmlkit: double/debiased machine learning with repeated cross-fitting.
"""

import warnings

from tqdm import TqdmWarning

# tqdm.auto complains in notebooks without ipywidgets
warnings.filterwarnings("ignore", message=".*IProgress not found.*", category=TqdmWarning)

from dmlkit import data
from dmlkit import inference
from dmlkit.data import CausalData
from dmlkit.inference import DMLConfig, DoubleML, double_ml

__version__ = "0.1.0"
__all__ = ["data", "inference", "CausalData", "DMLConfig", "DoubleML", "double_ml"]
