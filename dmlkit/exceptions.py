"""
Exceptions raised by the dmlkit estimation engine.

All of them carry their constructor arguments through ``__reduce__`` so they
survive the trip back from process-based joblib workers.
"""

from typing import Optional


class InvalidFoldCount(ValueError):
    """Raised when the number of cross-fitting folds cannot partition the data."""

    def __init__(self, n_folds: int, n_records: Optional[int] = None):
        self.n_folds = n_folds
        self.n_records = n_records
        if n_records is None:
            msg = f"n_folds must be at least 2, got {n_folds}."
        else:
            msg = f"n_folds must be between 2 and the number of records ({n_records}), got {n_folds}."
        super().__init__(msg)

    def __reduce__(self):
        return type(self), (self.n_folds, self.n_records)


class LearnerFitError(RuntimeError):
    """
    A nuisance learner failed to fit or predict.

    Parameters
    ----------
    method : str
        Name of the learner family (e.g. ``"Forest"``).
    fold : int or None
        Fold id (1-based) whose complement was used for training.
    reason : str
        Human readable cause.
    split : int or None
        Repetition id, filled in by the caller once known.
    """

    def __init__(self, method: str, fold: Optional[int], reason: str, split: Optional[int] = None):
        self.method = method
        self.fold = fold
        self.reason = reason
        self.split = split
        super().__init__(f"{method} failed on fold {fold}: {reason}")

    def __reduce__(self):
        return type(self), (self.method, self.fold, self.reason, self.split)


class DegenerateMomentError(ArithmeticError):
    """The moment condition cannot be solved (e.g. all records trimmed, zero treatment variance)."""

    def __init__(self, reason: str, method: Optional[str] = None):
        self.reason = reason
        self.method = method
        prefix = f"{method}: " if method else ""
        super().__init__(f"{prefix}{reason}")

    def __reduce__(self):
        return type(self), (self.reason, self.method)


class LeakageError(RuntimeError):
    """Training indices of a fold overlap the records it predicts."""
