"""
mode.py
~~~~~~~

Process-wide compute mode and device selection.

All arithmetic runs on numpy; GPU mode and the device id are recorded so
that callers can query what was requested.
"""

import logging

logger = logging.getLogger(__name__)

CPU = 'cpu'
GPU = 'gpu'

_mode = CPU
_device_id = 0


def set_mode(mode: str) -> None:
    global _mode

    if mode not in (CPU, GPU):
        raise ValueError(f"Unknown mode '{mode}'")
    if mode == GPU:
        logger.warning("GPU mode requested; computation stays on the host")
    _mode = mode
    logger.info(f"Mode set to {mode}")


def get_mode() -> str:
    return _mode


def set_device(device_id: int) -> None:
    global _device_id

    if device_id < 0:
        raise ValueError(f"device_id must be non-negative, got {device_id}")
    _device_id = device_id
    logger.info(f"Device set to {device_id}")


def get_device() -> int:
    return _device_id
