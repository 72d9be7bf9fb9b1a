import sys

import numpy as np
import pytest
import torch

from skybox_patch import NODE_CLASS_MAPPINGS, NODE_DISPLAY_NAME_MAPPINGS
from skybox_patch.modules.patch_projector import PatchProjector
from skybox_patch.nodes import SkyboxPatchCapture, SkyboxPatchProject

from run_node_smoke_tests import make_test_panorama, run_tests, to_batch_tensor


def red_patch(batch=1, h=32, w=48, channels=3):
    patch = torch.zeros((batch, h, w, channels))
    patch[..., 0] = 1.0
    if channels == 4:
        patch[..., 3] = 1.0
    return patch


def test_node_smoke_script():
    run_tests()


def test_mappings_are_consistent():
    assert set(NODE_CLASS_MAPPINGS) == set(NODE_DISPLAY_NAME_MAPPINGS)
    for cls in NODE_CLASS_MAPPINGS.values():
        types = cls.INPUT_TYPES()
        assert "required" in types
        assert hasattr(cls, cls.FUNCTION)
        assert len(cls.RETURN_TYPES) == len(cls.RETURN_NAMES)


def test_project_broadcasts_single_patch_over_batch():
    batch = to_batch_tensor(make_test_panorama(64, 128, 3), batch=3)
    out, mask = SkyboxPatchProject().project_patch(batch, red_patch(), yaw=90.0, vertical_fov_degrees=50.0, backend='cpu')

    assert out.shape == batch.shape
    assert out.dtype == torch.float32
    assert mask.shape == (3, 64, 128)
    assert float(mask[0].sum()) > 0
    assert torch.equal(mask[0], mask[2])
    painted = mask[0].bool()
    assert torch.all(out[0][painted] == torch.tensor([1.0, 0.0, 0.0]))
    assert torch.equal(out[1][~painted], batch[1][~painted])


def test_project_rejects_mismatched_batches():
    batch = to_batch_tensor(make_test_panorama(32, 64, 3), batch=3)
    with pytest.raises(ValueError):
        SkyboxPatchProject().project_patch(batch, red_patch(batch=2), backend='cpu')
    with pytest.raises(ValueError):
        SkyboxPatchProject().project_patch(batch[0], red_patch(), backend='cpu')


def test_project_mask_controls_patch_alpha():
    batch = to_batch_tensor(make_test_panorama(64, 128, 3), batch=1)
    node = SkyboxPatchProject()

    opaque = torch.ones((1, 32, 48))
    out, mask = node.project_patch(batch, red_patch(), patch_mask=opaque, invert_mask=True, yaw=90.0, backend='cpu')
    assert torch.equal(out, batch)
    assert float(mask.sum()) == 0

    half = torch.zeros((1, 32, 48))
    half[:, :, 24:] = 1.0
    _, full_mask = node.project_patch(batch, red_patch(), yaw=90.0, backend='cpu')
    _, half_mask = node.project_patch(batch, red_patch(channels=4), patch_mask=half, yaw=90.0, backend='cpu')
    assert 0 < float(half_mask.sum()) < float(full_mask.sum())

    with pytest.raises(ValueError):
        node.project_patch(batch, red_patch(), patch_mask=torch.ones((1, 8, 8)), backend='cpu')


def test_project_aspect_defaults_to_patch_shape():
    batch = to_batch_tensor(make_test_panorama(64, 128, 3), batch=1)
    node = SkyboxPatchProject()

    _, auto = node.project_patch(batch, red_patch(h=32, w=64), yaw=90.0, vertical_fov_degrees=40.0, backend='cpu')
    _, explicit = node.project_patch(batch, red_patch(h=32, w=64), yaw=90.0, vertical_fov_degrees=40.0, aspect_ratio=2.0, backend='cpu')
    assert torch.equal(auto, explicit)


def test_project_opacity_zero_keeps_panorama():
    batch = to_batch_tensor(make_test_panorama(64, 128, 3), batch=2)
    out, _ = SkyboxPatchProject().project_patch(batch, red_patch(), yaw=90.0, opacity=0.0, backend='cpu')
    assert torch.equal(out, batch)


def test_capture_shape_and_aspect():
    batch = to_batch_tensor(make_test_panorama(64, 128, 3), batch=2)
    out, = SkyboxPatchCapture().capture_view(batch, yaw=45.0, pitch=10.0, output_width=40, output_height=20)
    assert out.shape == (2, 20, 40, 3)
    assert out.dtype == torch.float32
    assert torch.equal(out[0], out[1])


def test_capture_rejects_non_batched_input():
    with pytest.raises(ValueError):
        SkyboxPatchCapture().capture_view(torch.zeros((16, 32, 3)))


@pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA not available")
def test_gpu_backend_matches_cpu():
    batch = to_batch_tensor(make_test_panorama(64, 128, 3), batch=1)
    node = SkyboxPatchProject()
    _, cpu_mask = node.project_patch(batch, red_patch(), yaw=90.0, backend='cpu')
    _, gpu_mask = node.project_patch(batch, red_patch(), yaw=90.0, backend='gpu')
    assert (cpu_mask == gpu_mask).float().mean() > 0.99


def test_nodes_report_batch_progress():
    progress_bar = sys.modules['comfy.utils'].ProgressBar
    batch = to_batch_tensor(make_test_panorama(32, 64, 3), batch=3)

    progress_bar.created.clear()
    SkyboxPatchProject().project_patch(batch, red_patch(h=8, w=8), yaw=90.0, backend='cpu')
    SkyboxPatchCapture().capture_view(batch, yaw=90.0, output_width=8, output_height=8)

    assert [(bar.total, bar.current) for bar in progress_bar.created] == [(3, 3), (3, 3)]


def test_project_aspect_comes_from_the_patch_helper():
    batch = to_batch_tensor(make_test_panorama(64, 128, 3), batch=1)
    patch = red_patch(h=24, w=60)
    assert PatchProjector.patch_aspect(patch[0]) == pytest.approx(2.5)

    _, auto = SkyboxPatchProject().project_patch(batch, patch, yaw=90.0, vertical_fov_degrees=30.0, backend='cpu')
    _, explicit = SkyboxPatchProject().project_patch(batch, patch, yaw=90.0, vertical_fov_degrees=30.0, aspect_ratio=2.5, backend='cpu')
    assert torch.equal(auto, explicit)
