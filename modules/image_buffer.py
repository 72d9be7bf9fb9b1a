import numpy as np
import torch
import cv2
from typing import Tuple
from PIL import Image

from .projection_errors import InvalidDimensions, InvalidReference


SUPPORTED_CHANNELS = (1, 3, 4)
MIN_IMAGE_SIZE = 2


def to_numpy(image, name: str) -> np.ndarray:
    """Return an (H, W, C) view of a panorama or patch.

    Accepts numpy arrays, PIL images and torch tensors laid out as (H, W) or
    (H, W, C). Numpy inputs are not copied so callers can write through the
    returned array.
    """
    if image is None:
        raise InvalidReference(f"{name} is missing")

    if isinstance(image, Image.Image):
        if image.mode not in ('L', 'RGB', 'RGBA'):
            image = image.convert('RGBA')
        arr = np.asarray(image)
    elif isinstance(image, torch.Tensor):
        arr = image.detach().cpu().numpy()
    else:
        arr = np.asarray(image)

    if arr.ndim == 2:
        arr = arr[:, :, None]
    if arr.ndim != 3 or arr.shape[2] not in SUPPORTED_CHANNELS:
        raise InvalidDimensions(
            f"{name} must be (H,W) or (H,W,C) with C in {SUPPORTED_CHANNELS}, got shape {tuple(arr.shape)}"
        )
    if arr.dtype == np.bool_ or not (np.issubdtype(arr.dtype, np.floating) or np.issubdtype(arr.dtype, np.integer)):
        raise InvalidDimensions(f"{name} has unsupported dtype {arr.dtype}")
    return arr


def check_min_size(arr: np.ndarray, name: str, minimum: int = MIN_IMAGE_SIZE) -> Tuple[int, int]:
    """Return (height, width), rejecting images with fewer than `minimum` samples per axis."""
    height, width = arr.shape[:2]
    if width < minimum or height < minimum:
        raise InvalidDimensions(
            f"{name} must be at least {minimum}x{minimum} pixels, got {width}x{height}"
        )
    return height, width


def _integer_scale(dtype: np.dtype) -> float:
    return float(np.iinfo(dtype).max)


def to_float(arr: np.ndarray) -> np.ndarray:
    """Normalise channel values to floats in [0, 1].

    8/16-bit inputs are divided by their type maximum. float64 is kept as is,
    every other float type becomes float32.
    """
    if np.issubdtype(arr.dtype, np.integer):
        return arr.astype(np.float32) / _integer_scale(arr.dtype)
    if arr.dtype == np.float64:
        return arr
    return arr.astype(np.float32)


def restore_dtype(arr: np.ndarray, dtype: np.dtype) -> np.ndarray:
    """Convert a [0, 1] float buffer back to the caller's channel type."""
    dtype = np.dtype(dtype)
    if np.issubdtype(dtype, np.integer):
        scale = _integer_scale(dtype)
        return np.clip(np.rint(arr * scale), 0, scale).astype(dtype)
    return arr.astype(dtype, copy=False)


def split_colour_alpha(arr: np.ndarray, colour_channels: int) -> Tuple[np.ndarray, np.ndarray]:
    """Split a patch into colour and alpha planes.

    The patch is expanded to RGBA first (opaque when it carries no alpha) and
    reduced to grey when the destination has a single colour channel. Values
    keep the precision of to_float: float64 patches stay float64.
    """
    rgba = to_float(arr)
    if rgba.dtype == np.float64:
        return _split_colour_alpha_float64(rgba, colour_channels)

    channels = rgba.shape[2]
    if channels == 1:
        rgba = cv2.cvtColor(np.ascontiguousarray(rgba[:, :, 0]), cv2.COLOR_GRAY2RGBA)
    elif channels == 3:
        rgba = cv2.cvtColor(np.ascontiguousarray(rgba), cv2.COLOR_RGB2RGBA)

    alpha = rgba[:, :, 3]
    if colour_channels == 1:
        colour = cv2.cvtColor(np.ascontiguousarray(rgba), cv2.COLOR_RGBA2GRAY)[:, :, None]
    else:
        colour = rgba[:, :, :3]
    return colour, alpha


# cv2.COLOR_RGB2GRAY weights
_LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114])


def _split_colour_alpha_float64(rgba: np.ndarray, colour_channels: int) -> Tuple[np.ndarray, np.ndarray]:
    # cvtColor only handles 8U/16U/32F, so float64 patches are expanded with numpy
    channels = rgba.shape[2]
    if channels == 4:
        alpha = rgba[:, :, 3]
    else:
        alpha = np.ones(rgba.shape[:2], dtype=np.float64)

    if channels == 1:
        colour = rgba[:, :, :1]
        if colour_channels != 1:
            colour = np.repeat(colour, 3, axis=2)
    else:
        colour = rgba[:, :, :3]
        if colour_channels == 1:
            colour = (colour @ _LUMA_WEIGHTS)[:, :, None]
    return colour, alpha


def colour_channel_count(arr: np.ndarray) -> int:
    """Number of leading channels that carry colour (alpha is never blended)."""
    return 1 if arr.shape[2] == 1 else 3
