"""
persistence.py
~~~~~~~~~~~~~~

numpy ``.npz`` storage for trained weights, solver state and mean files.

Weights archives hold one array per learnable blob, keyed
``<layer name>/<blob index>``. Solver state archives hold the iteration,
the path of the weights written alongside, and the momentum history.
Mean archives hold a single ``data`` array shaped (1, channels, height,
width).

Archives are written through an open file object so that numpy does not
append its own ``.npz`` suffix to names such as ``model.caffemodel``.
"""

import os
import logging
import zipfile
from collections import OrderedDict
from typing import Any, Dict, List

import numpy as np

from caffeshim.errors import CaffeShimError

# Configure module logger
logger = logging.getLogger(__name__)


def _ensure_directory(path: str) -> None:
    """Create the parent directory of path if it doesn't exist."""
    directory = os.path.dirname(path)
    if directory and not os.path.exists(directory):
        os.makedirs(directory)


def _write_archive(path: str, arrays: Dict[str, np.ndarray]) -> None:
    _ensure_directory(path)
    with open(path, 'wb') as f:
        np.savez(f, **arrays)


# ============================================================================
# WEIGHTS
# ============================================================================

def save_weights(path: str, params: Dict[str, List[np.ndarray]]) -> None:
    """
    Write learnable parameters to a weights file.

    Args:
        path: Destination file
        params: {layer name: [blob data, ...]} in net order
    """
    arrays = OrderedDict()
    for layer_name, blobs in params.items():
        for index, data in enumerate(blobs):
            arrays[f'{layer_name}/{index}'] = np.asarray(data, dtype=np.float32)

    _write_archive(path, arrays)
    logger.info(f"Saved {len(arrays)} parameter blob(s) from {len(params)} layer(s) to {path}")


def load_weights(path: str) -> Dict[str, List[np.ndarray]]:
    """
    Read a weights file.

    Returns:
        {layer name: [blob data, ...]} ordered as written

    Raises:
        OSError: If the file cannot be read
        ValueError: If the file is not a weights archive
    """
    grouped: Dict[str, Dict[int, np.ndarray]] = OrderedDict()
    try:
        with np.load(path, allow_pickle=False) as archive:
            for key in archive.files:
                layer_name, _, index = key.rpartition('/')
                if not layer_name or not index.isdigit():
                    raise ValueError(f"Unexpected entry '{key}' in weights file {path}")
                grouped.setdefault(layer_name, {})[int(index)] = archive[key]
    except zipfile.BadZipFile as e:
        raise ValueError(f"{path} is not a weights file") from e

    params = OrderedDict(
        (name, [blobs[i] for i in sorted(blobs)]) for name, blobs in grouped.items()
    )
    logger.debug(f"Loaded weights for {len(params)} layer(s) from {path}")
    return params


# ============================================================================
# SOLVER STATE
# ============================================================================

def save_solver_state(
    path: str,
    iteration: int,
    learned_net: str,
    history: List[np.ndarray]
) -> None:
    """Write the solver's iteration, weights path and update history."""
    arrays: Dict[str, Any] = OrderedDict()
    arrays['iter'] = np.asarray(iteration, dtype=np.int64)
    arrays['learned_net'] = np.asarray(learned_net)
    for index, values in enumerate(history):
        arrays[f'history/{index}'] = np.asarray(values, dtype=np.float32)

    _write_archive(path, arrays)
    logger.info(f"Saved solver state at iteration {iteration} to {path}")


def load_solver_state(path: str) -> Dict[str, Any]:
    """
    Read a solver state file.

    Returns:
        {'iter': int, 'learned_net': str, 'history': [np.ndarray, ...]}

    Raises:
        ValueError: If the file is not a solver state archive
    """
    try:
        with np.load(path, allow_pickle=False) as archive:
            if 'iter' not in archive.files:
                raise ValueError(f"{path} is not a solver state file")
            history = {
                int(key.split('/', 1)[1]): archive[key]
                for key in archive.files if key.startswith('history/')
            }
            state = {
                'iter': int(archive['iter']),
                'learned_net': str(archive['learned_net']) if 'learned_net' in archive.files else '',
                'history': [history[i] for i in sorted(history)]
            }
    except zipfile.BadZipFile as e:
        raise ValueError(f"{path} is not a solver state file") from e

    logger.debug(f"Loaded solver state at iteration {state['iter']} from {path}")
    return state


# ============================================================================
# MEAN FILES
# ============================================================================

def save_mean(path: str, data: np.ndarray) -> None:
    """Write a (1, channels, height, width) mean array."""
    _write_archive(path, {'data': np.asarray(data, dtype=np.float32)})
    logger.info(f"Saved mean of shape {list(data.shape)} to {path}")


def load_mean(path: str) -> np.ndarray:
    """
    Read a mean file.

    Raises:
        CaffeShimError: If the file does not hold a mean array
    """
    try:
        with np.load(path, allow_pickle=False) as archive:
            data = archive['data']
    except (OSError, ValueError, KeyError, TypeError,
            AttributeError, zipfile.BadZipFile) as e:
        logger.error(f"Could not read mean file {path}: {e}")
        raise CaffeShimError("Could not read your mean file") from e
    return data.astype(np.float32)
