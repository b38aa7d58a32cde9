#!/usr/bin/env python3
"""
Compute a per-pixel mean file from a stack of images.

The input is an .npz archive holding an 'images' array shaped
(count, height, width) or (count, height, width, channels). The mean is
written with write_mean, which expects host layout (width, height,
channels), and then read back to check it.

Usage:
    python scripts/compute_mean.py images.npz mean.binaryproto
"""

import os
import sys
from typing import Tuple

import numpy as np

import caffeshim


def load_images(filepath: str) -> np.ndarray:
    """
    Load the image stack.

    Parameters:
    -----------
    filepath : str
        Path to an .npz archive with an 'images' entry

    Returns:
    --------
    np.ndarray
        Images shaped (count, height, width[, channels])
    """
    print(f"📂 Loading images from: {filepath}")

    with np.load(filepath) as data:
        images = data['images']

    if images.ndim not in (3, 4):
        raise ValueError(
            f"images must be (count, height, width[, channels]), got shape {images.shape}"
        )

    print(f"✅ Loaded {images.shape[0]} images of size {images.shape[1:]}")
    return images


def compute_mean(images: np.ndarray) -> np.ndarray:
    """
    Average over the image axis and reorder to host layout.

    Returns:
    --------
    np.ndarray
        float32 mean shaped (width, height[, channels])
    """
    mean = images.astype(np.float64).mean(axis=0)
    axes = (1, 0, 2) if mean.ndim == 3 else (1, 0)
    return np.transpose(mean, axes).astype(np.float32)


def verify_mean(mean_path: str, expected: np.ndarray) -> Tuple[int, ...]:
    """
    Read the mean file back and compare it with what was written.

    Returns:
    --------
    tuple
        Shape of the array read back
    """
    print(f"\n🔍 Verifying {mean_path}...")

    restored = caffeshim.read_mean(mean_path)
    channels = expected.shape[2] if expected.ndim == 3 else 1
    assert np.allclose(
        restored.reshape(expected.shape[0], expected.shape[1], channels),
        expected.reshape(expected.shape[0], expected.shape[1], channels)
    ), "Mean file doesn't match the computed mean!"

    print("✅ Verification passed!")
    return restored.shape


def main():
    """Main conversion function."""
    print("=" * 60)
    print("Mean File Builder")
    print("=" * 60)

    if len(sys.argv) != 3:
        print("Usage: python scripts/compute_mean.py images.npz mean.binaryproto")
        sys.exit(1)

    images_path, mean_path = sys.argv[1], sys.argv[2]

    if not os.path.exists(images_path):
        print(f"❌ Error: Image file not found: {images_path}")
        sys.exit(1)

    if os.path.exists(mean_path):
        response = input(f"\n⚠️  {mean_path} already exists. Overwrite? (y/N): ")
        if response.lower() != 'y':
            print("❌ Cancelled.")
            sys.exit(0)

    try:
        images = load_images(images_path)
        mean = compute_mean(images)

        print(f"\n💾 Writing mean of shape {mean.shape} to: {mean_path}")
        caffeshim.write_mean(mean, mean_path)

        shape = verify_mean(mean_path, mean)

        print("\n" + "=" * 60)
        print("✅ MEAN FILE COMPLETE!")
        print("=" * 60)
        print(f"\n📁 Mean file: {mean_path}")
        print(f"   read_mean returns an array of shape {shape}")

    except Exception as e:
        print(f"\n❌ Error building mean file: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
