import numpy as np
import pytest
import torch
from PIL import Image

from skybox_patch.modules.image_buffer import (
    check_min_size,
    colour_channel_count,
    restore_dtype,
    split_colour_alpha,
    to_float,
    to_numpy,
)
from skybox_patch.modules.projection_errors import InvalidDimensions, InvalidReference


def test_to_numpy_rejects_missing_and_bad_shapes():
    with pytest.raises(InvalidReference):
        to_numpy(None, 'panorama')
    with pytest.raises(InvalidDimensions):
        to_numpy(np.zeros((4, 4, 2)), 'panorama')
    with pytest.raises(InvalidDimensions):
        to_numpy(np.zeros((2, 4, 4, 3)), 'panorama')
    with pytest.raises(InvalidDimensions):
        to_numpy(np.zeros((4, 4), dtype=bool), 'panorama')


def test_to_numpy_adds_channel_axis_without_copying():
    grey = np.zeros((4, 6), dtype=np.float32)
    arr = to_numpy(grey, 'panorama')
    assert arr.shape == (4, 6, 1)
    arr[0, 0, 0] = 0.5
    assert grey[0, 0] == 0.5


def test_to_numpy_accepts_pil_and_torch():
    palette = Image.new('P', (5, 3))
    assert to_numpy(palette, 'patch').shape == (3, 5, 4)
    assert to_numpy(Image.new('L', (5, 3)), 'patch').shape == (3, 5, 1)
    assert to_numpy(torch.zeros((3, 5, 3)), 'patch').shape == (3, 5, 3)


def test_check_min_size():
    assert check_min_size(np.zeros((2, 3, 3)), 'patch') == (2, 3)
    with pytest.raises(InvalidDimensions):
        check_min_size(np.zeros((1, 3, 3)), 'patch')


def test_to_float_and_restore_dtype():
    arr = np.array([[[0, 128, 255]]], dtype=np.uint8)
    as_float = to_float(arr)
    assert as_float.dtype == np.float32
    np.testing.assert_allclose(as_float, arr / 255.0, atol=1e-7)
    assert np.array_equal(restore_dtype(as_float, np.uint8), arr)
    assert to_float(np.zeros((1, 1, 3), dtype=np.float64)).dtype == np.float64
    assert to_float(np.zeros((1, 1, 3), dtype=np.float16)).dtype == np.float32
    assert np.array_equal(restore_dtype(np.array([[[1.2, -0.1, 0.5]]]), np.uint8), [[[255, 0, 128]]])


def test_split_colour_alpha_defaults_to_opaque():
    rgb = np.full((2, 2, 3), 0.25, dtype=np.float32)
    colour, alpha = split_colour_alpha(rgb, 3)
    assert colour.shape == (2, 2, 3)
    assert np.all(alpha == 1.0)

    grey = np.full((2, 2, 1), 0.25, dtype=np.float32)
    colour, alpha = split_colour_alpha(grey, 3)
    np.testing.assert_allclose(colour, 0.25)
    assert np.all(alpha == 1.0)


def test_split_colour_alpha_uint8_and_grey_target():
    rgba = np.zeros((2, 2, 4), dtype=np.uint8)
    rgba[..., 0] = 255
    rgba[..., 3] = 51
    colour, alpha = split_colour_alpha(rgba, 1)
    assert colour.shape == (2, 2, 1)
    np.testing.assert_allclose(colour, 0.299, atol=1e-3)
    np.testing.assert_allclose(alpha, 0.2, atol=1e-6)


def test_colour_channel_count():
    assert colour_channel_count(np.zeros((2, 2, 1))) == 1
    assert colour_channel_count(np.zeros((2, 2, 3))) == 3
    assert colour_channel_count(np.zeros((2, 2, 4))) == 3


@pytest.mark.parametrize("channels", [1, 3, 4])
def test_split_colour_alpha_keeps_float64_values(channels):
    patch = np.full((2, 2, channels), 0.1, dtype=np.float64)
    if channels == 4:
        patch[..., 3] = 0.0010000001

    colour, alpha = split_colour_alpha(patch, 3)

    assert colour.dtype == np.float64 and alpha.dtype == np.float64
    assert colour.shape == (2, 2, 3)
    assert np.all(colour == 0.1)
    assert np.all(alpha == (0.0010000001 if channels == 4 else 1.0))


def test_split_colour_alpha_float64_grey_target():
    rgba = np.zeros((2, 2, 4), dtype=np.float64)
    rgba[..., 0] = 1.0
    rgba[..., 3] = 0.5
    colour, alpha = split_colour_alpha(rgba, 1)
    assert colour.shape == (2, 2, 1)
    assert colour.dtype == np.float64
    np.testing.assert_allclose(colour, 0.299, atol=1e-12)
    assert np.all(alpha == 0.5)

    grey = np.full((2, 2, 1), 0.1, dtype=np.float64)
    colour, _ = split_colour_alpha(grey, 1)
    assert colour.shape == (2, 2, 1)
    assert np.all(colour == 0.1)
