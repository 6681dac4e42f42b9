"""
Estimators built on the cross-fitting engine.
"""

from dmlkit.inference.estimators.doubleml import DMLResults, DoubleML, Failure, double_ml, run_split

__all__ = ["DoubleML", "DMLResults", "Failure", "double_ml", "run_split"]
