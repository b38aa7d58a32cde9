"""
blob.py
~~~~~~~

N-dimensional float32 storage with a value buffer (data) and a gradient
buffer (diff). Axes are row-major: the last axis varies fastest.
"""

from typing import Sequence, Tuple

import numpy as np


class Blob:
    """A pair of equally shaped float32 arrays."""

    def __init__(self, shape: Sequence[int] = ()):
        self.data = np.zeros((), dtype=np.float32)
        self.diff = np.zeros((), dtype=np.float32)
        self.reshape(shape)

    def reshape(self, shape: Sequence[int]) -> None:
        """
        Change the shape of the blob.

        Memory is reallocated (and zeroed) only when the element count
        changes; otherwise the existing values are kept.

        Raises:
            ValueError: If any dimension is negative
        """
        shape = tuple(int(dim) for dim in shape)
        if any(dim < 0 for dim in shape):
            raise ValueError(f"Blob dimensions must be non-negative, got {list(shape)}")

        count = int(np.prod(shape, dtype=np.int64))
        if count != self.data.size:
            self.data = np.zeros(shape, dtype=np.float32)
            self.diff = np.zeros(shape, dtype=np.float32)
        else:
            self.data = self.data.reshape(shape)
            self.diff = self.diff.reshape(shape)

    def reshape_like(self, other: 'Blob') -> None:
        self.reshape(other.shape)

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.data.shape

    @property
    def num_axes(self) -> int:
        return self.data.ndim

    @property
    def count(self) -> int:
        return int(self.data.size)

    def __repr__(self) -> str:
        return f"Blob(shape={list(self.shape)})"
