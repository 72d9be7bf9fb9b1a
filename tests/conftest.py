import os

import numpy as np
import pytest

from run_node_smoke_tests import load_skybox_patch_package, make_test_panorama, stub_comfy_modules


REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
stub_comfy_modules()
load_skybox_patch_package(REPO_ROOT)


@pytest.fixture
def panorama():
    return make_test_panorama(64, 128, 4)


@pytest.fixture
def red_patch():
    patch = np.zeros((8, 8, 4), dtype=np.float32)
    patch[..., 0] = 1.0
    patch[..., 3] = 1.0
    return patch
