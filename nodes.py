import torch
import numpy as np
from typing import Optional, Tuple
from comfy.utils import ProgressBar

from .modules.camera_parameters import CameraParameters
from .modules.patch_projector import PatchProjector


_ORIGIN_CHOICES = ["upper", "lower"]


def _camera_from_inputs(yaw: float, pitch: float, roll: float,
                        vertical_fov_degrees: float, aspect_ratio: float) -> CameraParameters:
    return CameraParameters.from_euler(
        pitch=pitch, yaw=yaw, roll=roll,
        vertical_fov_degrees=vertical_fov_degrees, aspect=aspect_ratio,
    )


def _attach_mask_alpha(patch: torch.Tensor, mask: Optional[torch.Tensor], invert_mask: bool) -> torch.Tensor:
    """Replace/append the patch alpha channel with a MASK batch (B,H,W)."""
    if mask is None:
        return patch
    if mask.dim() == 2:
        mask = mask.unsqueeze(0)
    if mask.dim() != 3:
        raise ValueError(f"Expected MASK (B,H,W), got shape {tuple(mask.shape)}")
    if tuple(mask.shape[1:]) != tuple(patch.shape[1:3]):
        raise ValueError(
            f"patch_mask size {tuple(mask.shape[1:])} does not match patch size {tuple(patch.shape[1:3])}"
        )
    if mask.shape[0] not in (1, patch.shape[0]):
        raise ValueError(f"patch_mask batch {mask.shape[0]} does not match patch batch {patch.shape[0]}")

    alpha = mask.to(patch.dtype)
    if invert_mask:
        alpha = 1.0 - alpha
    alpha = alpha.expand(patch.shape[0], -1, -1).unsqueeze(-1)
    rgb = patch[..., :3] if patch.shape[-1] >= 3 else patch[..., :1].expand(-1, -1, -1, 3)
    return torch.cat([rgb, alpha], dim=-1)


class SkyboxPatchProject:
    """ComfyUI node that paints an edited camera view back into an equirectangular skybox"""
    DESCRIPTION = "Project an edited perspective capture back onto an equirectangular panorama using the capture camera's FOV, aspect and yaw/pitch/roll."

    @classmethod
    def INPUT_TYPES(s):
        return {
            "required": {
                "panorama": ("IMAGE", {"tooltip": "Equirectangular panorama batch (B,H,W,C) in [0,1] to paint into."}),
                "patch": ("IMAGE", {"tooltip": "Edited capture (B,H,W,C). A batch of 1 is applied to every panorama."}),
            },
            "optional": {
                "patch_mask": ("MASK", {"tooltip": "Optional patch alpha (B,H,W). Overrides the patch's own alpha channel."}),
                "invert_mask": ("BOOLEAN", {"default": False, "tooltip": "Invert patch_mask (LoadImage masks are 1 where the image is transparent)."}),
                "yaw": ("FLOAT", {"default": 0.0, "min": -360.0, "max": 360.0, "step": 0.1, "tooltip": "Capture camera yaw around the vertical axis (degrees)."}),
                "pitch": ("FLOAT", {"default": 0.0, "min": -90.0, "max": 90.0, "step": 0.1, "tooltip": "Capture camera pitch around its horizontal axis (degrees)."}),
                "roll": ("FLOAT", {"default": 0.0, "min": -180.0, "max": 180.0, "step": 0.1, "tooltip": "Capture camera roll around its view axis (degrees)."}),
                "vertical_fov_degrees": ("FLOAT", {"default": 60.0, "min": 1.0, "max": 179.0, "step": 0.5, "tooltip": "Vertical field of view of the capture camera (degrees)."}),
                "aspect_ratio": ("FLOAT", {"default": 0.0, "min": 0.0, "max": 16.0, "step": 0.001, "tooltip": "Capture width/height. 0 uses the patch's pixel aspect."}),
                "opacity": ("FLOAT", {"default": 1.0, "min": 0.0, "max": 1.0, "step": 0.01, "tooltip": "Maximum blend strength applied on top of the patch alpha."}),
                "image_origin": (_ORIGIN_CHOICES, {"default": "upper", "tooltip": "Row order of both images: 'upper' = row 0 is the top (ComfyUI), 'lower' = row 0 is the bottom (engine textures)."}),
                "backend": (["auto", "cpu", "gpu"], {"default": "auto", "tooltip": "Processing backend. Auto uses GPU if available."}),
            }
        }

    RETURN_TYPES = ("IMAGE", "MASK")
    RETURN_NAMES = ("panorama", "painted_mask")
    FUNCTION = "project_patch"
    CATEGORY = "SkyboxPatch"

    def project_patch(self,
                      panorama: torch.Tensor,
                      patch: torch.Tensor,
                      patch_mask: Optional[torch.Tensor] = None,
                      invert_mask: bool = False,
                      yaw: float = 0.0,
                      pitch: float = 0.0,
                      roll: float = 0.0,
                      vertical_fov_degrees: float = 60.0,
                      aspect_ratio: float = 0.0,
                      opacity: float = 1.0,
                      image_origin: str = "upper",
                      backend: str = "auto") -> Tuple[torch.Tensor, torch.Tensor]:
        if panorama.dim() != 4:
            raise ValueError(f"Expected IMAGE (B,H,W,C), got shape {tuple(panorama.shape)}")
        if patch.dim() != 4:
            raise ValueError(f"Expected patch IMAGE (B,H,W,C), got shape {tuple(patch.shape)}")

        batch_size = panorama.shape[0]
        if patch.shape[0] not in (1, batch_size):
            raise ValueError(f"patch batch {patch.shape[0]} must be 1 or match panorama batch {batch_size}")

        patch = _attach_mask_alpha(patch, patch_mask, invert_mask)

        if aspect_ratio <= 0.0:
            aspect_ratio = PatchProjector.patch_aspect(patch[0])
        camera = _camera_from_inputs(yaw, pitch, roll, vertical_fov_degrees, aspect_ratio)

        use_gpu = (backend == 'gpu') or (backend == 'auto' and torch.cuda.is_available())

        processed_images = []
        processed_masks = []
        total_written = 0
        pbar = ProgressBar(batch_size)
        for i in range(batch_size):
            patch_i = patch[i] if patch.shape[0] == batch_size else patch[0]

            if use_gpu:
                result = PatchProjector.torch_project_patch(
                    panorama[i].to('cuda').float(),
                    patch_i.to('cuda').float(),
                    camera,
                    opacity=opacity,
                    origin=image_origin,
                )
                painted = result.image.to('cpu').numpy()
                mask = result.mask.to('cpu').numpy()
            else:
                pano_numpy = panorama[i].cpu().numpy()
                if pano_numpy.dtype != np.float32:
                    pano_numpy = pano_numpy.astype(np.float32)
                result = PatchProjector.project_patch(
                    pano_numpy,
                    patch_i.cpu().numpy(),
                    camera,
                    opacity=opacity,
                    origin=image_origin,
                )
                painted = result.image
                mask = result.mask

            total_written += result.pixels_written

            # Ensure output is float32 in [0,1] range
            painted = np.clip(painted, 0.0, 1.0).astype(np.float32)
            processed_images.append(torch.from_numpy(painted))
            processed_masks.append(torch.from_numpy(mask.astype(np.float32)))
            pbar.update(1)

        if total_written == 0:
            print("⚠️ Patch did not land on the panorama - check yaw/pitch/roll, FOV and patch alpha")
        else:
            print(f"✅ Painted {total_written} panorama pixels "
                  f"(HFOV {camera.horizontal_fov_degrees:.1f}°, VFOV {camera.vertical_fov_degrees:.1f}°)")

        return (torch.stack(processed_images, dim=0), torch.stack(processed_masks, dim=0))


class SkyboxPatchCapture:
    """ComfyUI node that renders the camera view a patch should be painted on"""
    DESCRIPTION = "Capture the perspective view a camera sees of an equirectangular panorama, ready to edit and project back with Skybox Patch Project."

    @classmethod
    def INPUT_TYPES(s):
        return {
            "required": {
                "panorama": ("IMAGE", {"tooltip": "Equirectangular panorama batch (B,H,W,C) in [0,1]."}),
            },
            "optional": {
                "yaw": ("FLOAT", {"default": 0.0, "min": -360.0, "max": 360.0, "step": 0.1, "tooltip": "Camera yaw around the vertical axis (degrees)."}),
                "pitch": ("FLOAT", {"default": 0.0, "min": -90.0, "max": 90.0, "step": 0.1, "tooltip": "Camera pitch around its horizontal axis (degrees)."}),
                "roll": ("FLOAT", {"default": 0.0, "min": -180.0, "max": 180.0, "step": 0.1, "tooltip": "Camera roll around its view axis (degrees)."}),
                "vertical_fov_degrees": ("FLOAT", {"default": 60.0, "min": 1.0, "max": 179.0, "step": 0.5, "tooltip": "Vertical field of view (degrees)."}),
                "output_width": ("INT", {"default": 1920, "min": 2, "max": 8192, "step": 1, "tooltip": "Capture width in pixels."}),
                "output_height": ("INT", {"default": 1080, "min": 2, "max": 8192, "step": 1, "tooltip": "Capture height in pixels. Aspect is output_width/output_height."}),
                "image_origin": (_ORIGIN_CHOICES, {"default": "upper", "tooltip": "Row order of the images, must match the one used when projecting back."}),
            }
        }

    RETURN_TYPES = ("IMAGE",)
    RETURN_NAMES = ("capture",)
    FUNCTION = "capture_view"
    CATEGORY = "SkyboxPatch"

    def capture_view(self,
                     panorama: torch.Tensor,
                     yaw: float = 0.0,
                     pitch: float = 0.0,
                     roll: float = 0.0,
                     vertical_fov_degrees: float = 60.0,
                     output_width: int = 1920,
                     output_height: int = 1080,
                     image_origin: str = "upper") -> Tuple[torch.Tensor]:
        if panorama.dim() != 4:
            raise ValueError(f"Expected IMAGE (B,H,W,C), got shape {tuple(panorama.shape)}")

        camera = _camera_from_inputs(yaw, pitch, roll, vertical_fov_degrees, output_width / output_height)

        batch_size = panorama.shape[0]
        captures = []
        pbar = ProgressBar(batch_size)
        for i in range(batch_size):
            pano_numpy = panorama[i].cpu().numpy()
            if pano_numpy.dtype != np.float32:
                pano_numpy = pano_numpy.astype(np.float32)

            view = PatchProjector.capture_view(
                pano_numpy,
                camera,
                out_width=output_width,
                out_height=output_height,
                origin=image_origin,
            )
            view = np.clip(view, 0.0, 1.0).astype(np.float32)
            captures.append(torch.from_numpy(view))
            pbar.update(1)

        return (torch.stack(captures, dim=0),)
