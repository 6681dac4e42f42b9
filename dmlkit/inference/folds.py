"""
Random partition of records into cross-fitting folds.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

import numpy as np

from dmlkit.exceptions import InvalidFoldCount


@dataclass(frozen=True)
class FoldAssignment:
    """
    Fold id in ``{1..k}`` for every record of one split.

    Attributes
    ----------
    fold_ids : np.ndarray of shape (n,)
        ``fold_ids[i]`` is the fold of record ``i``.
    n_folds : int
    """
    fold_ids: np.ndarray
    n_folds: int

    @property
    def n_records(self) -> int:
        return int(self.fold_ids.shape[0])

    @property
    def sizes(self) -> np.ndarray:
        return np.bincount(self.fold_ids, minlength=self.n_folds + 1)[1:]

    def test_index(self, fold: int) -> np.ndarray:
        return np.flatnonzero(self.fold_ids == fold)

    def train_index(self, fold: int) -> np.ndarray:
        return np.flatnonzero(self.fold_ids != fold)

    def __iter__(self) -> Iterator[Tuple[int, np.ndarray, np.ndarray]]:
        """Yield ``(fold, train_index, test_index)`` for folds 1..k."""
        for fold in range(1, self.n_folds + 1):
            yield fold, self.train_index(fold), self.test_index(fold)


def split(n_records: int, k: int, seed: Optional[int | np.random.SeedSequence] = None) -> FoldAssignment:
    """
    Partition ``range(n_records)`` into `k` near-equal random folds.

    A uniformly random permutation is cut into `k` contiguous blocks whose
    sizes differ by at most one. The same seed gives the same assignment.

    Parameters
    ----------
    n_records : int
    k : int
        Number of folds, ``2 <= k <= n_records``.
    seed : int or numpy.random.SeedSequence, optional

    Raises
    ------
    InvalidFoldCount
        If ``k < 2`` or ``k > n_records``.
    """
    if k < 2:
        raise InvalidFoldCount(k)
    if k > n_records:
        raise InvalidFoldCount(k, n_records)
    rng = np.random.default_rng(seed)
    perm = rng.permutation(n_records)
    fold_ids = np.empty(n_records, dtype=int)
    for fold, block in enumerate(np.array_split(perm, k), start=1):
        fold_ids[block] = fold
    return FoldAssignment(fold_ids=fold_ids, n_folds=k)
