"""
convert.py
~~~~~~~~~~

Copies between host arrays and framework blobs.

Blobs are row-major: for axes (num, channels, height, width), width varies
fastest. Host arrays are column-major with the axis order reversed, so the
same blob appears on the host as (width, height, channels, num) with width
still varying fastest. Copies therefore reverse the axes rather than the
bytes.
"""

from typing import List, Sequence

import numpy as np

from caffeshim.errors import UsageError
from caffeshim.framework.blob import Blob

DATA = 'data'
DIFF = 'diff'


def _memory(blob: Blob, which: str) -> np.ndarray:
    if which == DATA:
        return blob.data
    if which == DIFF:
        return blob.diff
    raise ValueError(f"Unknown blob memory '{which}'")


def blob_to_host(blob: Blob, which: str = DATA) -> np.ndarray:
    """
    Copy blob data or diff into a new host array.

    Returns:
        float32 Fortran-ordered array with the blob's axes reversed. A blob
        with no axes becomes a 1-element vector.
    """
    source = _memory(blob, which)
    if source.ndim == 0:
        return np.array([source.item()], dtype=np.float32)
    return np.array(source.T, dtype=np.float32, order='F')


def host_to_blob(array: np.ndarray, blob: Blob, which: str = DATA) -> None:
    """
    Copy a host array into blob data or diff.

    Only the element counts must agree; the host's column-major element
    order is laid into the blob's row-major order.

    Raises:
        UsageError: If the element counts differ
    """
    if array.size != blob.count:
        raise UsageError(
            "number of elements in target blob doesn't match that in input array"
        )
    target = _memory(blob, which)
    target[...] = np.ravel(array, order='F').reshape(blob.shape)


def shape_to_host(shape: Sequence[int]) -> np.ndarray:
    """Blob shape as a host row vector (reversed, float64)."""
    return np.array(list(shape)[::-1], dtype=np.float64)


def host_to_shape(values: np.ndarray) -> List[int]:
    """
    Host shape vector to blob shape (reversed, int).

    Raises:
        UsageError: If an entry is negative or not a whole number
    """
    flat = np.asarray(values, dtype=np.float64).reshape(-1)
    if np.any(flat < 0) or np.any(flat != np.floor(flat)):
        raise UsageError("shape entries must be non-negative integers")
    return [int(dim) for dim in flat[::-1]]


def int_vec_to_host(values: Sequence[int]) -> np.ndarray:
    return np.array(values, dtype=np.int64)


def str_vec_to_host(values: Sequence[str]) -> List[str]:
    return [str(value) for value in values]
