import math
import numpy as np
import torch
from concurrent.futures import ThreadPoolExecutor
from typing import NamedTuple, Optional, Tuple, Union

from .camera_parameters import CameraParameters, world_to_camera
from .image_buffer import (
    MIN_IMAGE_SIZE,
    check_min_size,
    colour_channel_count,
    restore_dtype,
    split_colour_alpha,
    to_float,
    to_numpy,
)
from .projection_errors import InvalidDimensions, InvalidParameter, InvalidReference


# Patch texels at or below this alpha never touch the panorama.
ALPHA_EPSILON = 0.001

# 'lower': row 0 is the bottom of the picture (texture order of the capture side).
# 'upper': row 0 is the top of the picture (numpy / ComfyUI display order).
IMAGE_ORIGINS = ('lower', 'upper')

ImageLike = Union[np.ndarray, torch.Tensor]


class ProjectionResult(NamedTuple):
    image: ImageLike
    mask: ImageLike
    pixels_written: int


class PatchProjector:
    """Re-projects a flat perspective patch onto an equirectangular panorama."""

    @staticmethod
    def panorama_directions(width: int, height: int, y_start: int = 0,
                            y_end: Optional[int] = None) -> np.ndarray:
        """Unit world directions for panorama rows [y_start, y_end).

        Returns an array of shape (rows, width, 3). Longitude runs -pi..pi left
        to right and latitude -pi/2..pi/2 from row 0 down the buffer.
        """
        if y_end is None:
            y_end = height
        u = np.arange(width, dtype=np.float64) / (width - 1)
        v = np.arange(y_start, y_end, dtype=np.float64) / (height - 1)
        lon, lat = np.meshgrid((u - 0.5) * 2.0 * np.pi, (v - 0.5) * np.pi)
        cos_lat = np.cos(lat)
        return np.stack([np.sin(lon) * cos_lat, np.sin(lat), np.cos(lon) * cos_lat], axis=-1)

    @staticmethod
    def patch_coordinates(cam_dirs: np.ndarray,
                          camera: CameraParameters) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Perspective-divide camera-space directions into patch UV.

        Returns (u, v, visible). u and v are only meaningful where visible is
        True: in front of the camera, inside the frustum and inside [0, 1].
        """
        z = cam_dirs[..., 2]
        visible = z > 0.0
        safe_z = np.where(visible, z, 1.0)
        px = cam_dirs[..., 0] / safe_z
        py = cam_dirs[..., 1] / safe_z

        half_w, half_h = camera.half_extents
        visible &= (np.abs(px) <= half_w) & (np.abs(py) <= half_h)

        u = (px / half_w) * 0.5 + 0.5
        v = (py / half_h) * 0.5 + 0.5
        visible &= (u >= 0.0) & (u <= 1.0) & (v >= 0.0) & (v <= 1.0)
        return u, v, visible

    @staticmethod
    def patch_aspect(patch) -> float:
        """Width / height of a patch, for captures whose aspect follows the frame."""
        arr = to_numpy(patch, 'patch')
        height, width = check_min_size(arr, 'patch')
        return width / height

    @staticmethod
    def _validate_common(camera, opacity, origin) -> float:
        if camera is None:
            raise InvalidReference("camera is missing")
        if not isinstance(camera, CameraParameters):
            raise InvalidParameter(f"camera must be CameraParameters, got {type(camera).__name__}")
        if origin not in IMAGE_ORIGINS:
            raise InvalidParameter(f"origin must be one of {IMAGE_ORIGINS}, got {origin!r}")
        try:
            opacity = float(opacity)
        except (TypeError, ValueError):
            raise InvalidParameter(f"opacity must be a number, got {opacity!r}")
        if not math.isfinite(opacity) or not (0.0 <= opacity <= 1.0):
            raise InvalidParameter(f"opacity must be in [0, 1], got {opacity}")
        return opacity

    @classmethod
    def project_patch(cls,
                      panorama,
                      patch,
                      camera: CameraParameters,
                      opacity: float = 1.0,
                      origin: str = 'lower',
                      in_place: bool = False,
                      rows_per_band: Optional[int] = None,
                      workers: int = 1) -> ProjectionResult:
        """Composite a captured patch into an equirectangular panorama.

        Args:
            panorama: Equirectangular image (H, W[, C]), float in [0,1] or uint8.
            patch: Edited capture (PH, PW[, C]); missing alpha means opaque.
            camera: Camera parameters active when the patch was captured.
            opacity: Maximum blend strength in [0, 1].
            origin: Row order of both images, see IMAGE_ORIGINS.
            in_place: Write into `panorama` (must be a writable float ndarray).
            rows_per_band: Rows processed per band. None processes the whole image at once.
            workers: Threads used to process bands.

        Returns:
            ProjectionResult with the composited panorama (same shape and dtype
            as the input), a bool mask of blended pixels and their count.

        Raises:
            InvalidReference: panorama, patch or camera is None.
            InvalidDimensions: an image is smaller than 2x2 or badly shaped.
            InvalidParameter: opacity, origin, banding or in_place request is invalid.
        """
        if panorama is None:
            raise InvalidReference("panorama is missing")
        if patch is None:
            raise InvalidReference("patch is missing")
        opacity = cls._validate_common(camera, opacity, origin)

        pano_arr = to_numpy(panorama, 'panorama')
        patch_arr = to_numpy(patch, 'patch')
        height, width = check_min_size(pano_arr, 'panorama')
        check_min_size(patch_arr, 'patch')

        if rows_per_band is None:
            rows_per_band = height
        if int(rows_per_band) < 1:
            raise InvalidParameter(f"rows_per_band must be >= 1, got {rows_per_band}")
        if int(workers) < 1:
            raise InvalidParameter(f"workers must be >= 1, got {workers}")
        rows_per_band = int(rows_per_band)

        if in_place:
            if not isinstance(panorama, np.ndarray) or not np.issubdtype(panorama.dtype, np.floating):
                raise InvalidParameter("in_place requires the panorama to be a float numpy array")
            if not panorama.flags.writeable:
                raise InvalidParameter("in_place requires a writable panorama array")
            target = pano_arr
        else:
            target = to_float(pano_arr).copy()

        n_colour = colour_channel_count(target)
        patch_colour, patch_alpha = split_colour_alpha(patch_arr, n_colour)
        mask = np.zeros((height, width), dtype=bool)

        if origin == 'upper':
            target_view, mask_view = target[::-1], mask[::-1]
            patch_colour, patch_alpha = patch_colour[::-1], patch_alpha[::-1]
        else:
            target_view, mask_view = target, mask

        matrix = world_to_camera(camera).as_matrix()
        bands = [(y0, min(y0 + rows_per_band, height)) for y0 in range(0, height, rows_per_band)]

        def run_band(band):
            cls._project_band(target_view, mask_view, patch_colour, patch_alpha,
                              matrix, camera, opacity, band[0], band[1], n_colour)

        if workers > 1 and len(bands) > 1:
            with ThreadPoolExecutor(max_workers=int(workers)) as executor:
                list(executor.map(run_band, bands))
        else:
            for band in bands:
                run_band(band)

        if in_place:
            image = panorama
        else:
            image = restore_dtype(target, pano_arr.dtype)
            if np.ndim(panorama) == 2:
                image = image[:, :, 0]
        return ProjectionResult(image, mask, int(mask.sum()))

    @classmethod
    def _project_band(cls, target: np.ndarray, mask: np.ndarray,
                      patch_colour: np.ndarray, patch_alpha: np.ndarray,
                      matrix: np.ndarray, camera: CameraParameters, opacity: float,
                      y_start: int, y_end: int, n_colour: int) -> None:
        """Project and blend one horizontal band of the panorama in place."""
        height, width = target.shape[:2]
        patch_h, patch_w = patch_alpha.shape

        dirs = cls.panorama_directions(width, height, y_start, y_end)
        # elementwise so every pixel gets the same arithmetic whatever the band size
        cam_dirs = (dirs[..., 0, None] * matrix[:, 0]
                    + dirs[..., 1, None] * matrix[:, 1]
                    + dirs[..., 2, None] * matrix[:, 2])
        u, v, visible = cls.patch_coordinates(cam_dirs, camera)

        rows, cols = np.nonzero(visible)
        if rows.size == 0:
            return
        ix = np.clip(np.floor(u[rows, cols] * (patch_w - 1)).astype(np.int64), 0, patch_w - 1)
        iy = np.clip(np.floor(v[rows, cols] * (patch_h - 1)).astype(np.int64), 0, patch_h - 1)

        alpha = patch_alpha[iy, ix]
        # compared in the patch's own precision so float32 and float64 share the boundary
        keep = alpha > alpha.dtype.type(ALPHA_EPSILON)
        if not np.any(keep):
            return
        rows, cols, ix, iy = rows[keep], cols[keep], ix[keep], iy[keep]
        k = (alpha[keep].astype(np.float64) * opacity)[:, None]

        band = target[y_start:y_end]
        dst = band[rows, cols, :n_colour]
        src = patch_colour[iy, ix]
        # written as dst*(1-k) + src*k so that k == 0 and k == 1 are exact
        band[rows, cols, :n_colour] = dst * (1.0 - k) + src * k
        mask[y_start:y_end][rows, cols] = True

    # =============================
    # Torch (GPU) implementation
    # =============================
    @staticmethod
    def _torch_image(image: torch.Tensor, name: str) -> torch.Tensor:
        if not isinstance(image, torch.Tensor):
            raise InvalidParameter(f"{name} must be a torch.Tensor, got {type(image).__name__}")
        if image.dim() == 2:
            image = image.unsqueeze(-1)
        if image.dim() != 3 or image.shape[2] not in (1, 3, 4):
            raise InvalidDimensions(
                f"{name} must be (H,W) or (H,W,C) with C in (1, 3, 4), got shape {tuple(image.shape)}"
            )
        h, w = int(image.shape[0]), int(image.shape[1])
        if w < MIN_IMAGE_SIZE or h < MIN_IMAGE_SIZE:
            raise InvalidDimensions(
                f"{name} must be at least {MIN_IMAGE_SIZE}x{MIN_IMAGE_SIZE} pixels, got {w}x{h}"
            )
        if image.dtype == torch.bool or image.is_complex():
            raise InvalidDimensions(f"{name} has unsupported dtype {image.dtype}")
        return image

    @staticmethod
    def _torch_to_float(image: torch.Tensor, dtype: torch.dtype) -> torch.Tensor:
        """Integer tensors are divided by their type maximum, like to_float."""
        if image.is_floating_point():
            return image.to(dtype)
        return image.to(dtype) / float(torch.iinfo(image.dtype).max)

    @classmethod
    def torch_project_patch(cls,
                            panorama: torch.Tensor,
                            patch: torch.Tensor,
                            camera: CameraParameters,
                            opacity: float = 1.0,
                            origin: str = 'lower') -> ProjectionResult:
        """Tensor version of project_patch, on the panorama's device.

        Args:
            panorama: (H, W[, C]) float in [0,1] or an integer type scaled to its maximum.
            patch: (PH, PW[, C]) float in [0,1] or integer; moved to the panorama's device.
        Returns:
            ProjectionResult whose image and mask are tensors on the same device.
        """
        if panorama is None:
            raise InvalidReference("panorama is missing")
        if patch is None:
            raise InvalidReference("patch is missing")
        opacity = cls._validate_common(camera, opacity, origin)
        pano_in = cls._torch_image(panorama, 'panorama')
        patch_in = cls._torch_image(patch, 'patch')

        device = pano_in.device
        if pano_in.is_floating_point():
            dtype = pano_in.dtype
        else:
            dtype = torch.float64 if pano_in.element_size() > 2 else torch.float32
        pano = cls._torch_to_float(pano_in, dtype).clone()
        src = cls._torch_to_float(patch_in.to(device), dtype)

        if origin == 'upper':
            pano = torch.flip(pano, dims=[0])
            src = torch.flip(src, dims=[0])

        H, W, C = pano.shape
        PH, PW, PC = src.shape
        n_colour = 1 if C == 1 else 3

        alpha = src[..., 3] if PC == 4 else torch.ones((PH, PW), device=device, dtype=dtype)
        if n_colour == 1:
            if PC >= 3:
                # same luma weights as cv2.COLOR_RGBA2GRAY
                colour = (0.299 * src[..., 0] + 0.587 * src[..., 1] + 0.114 * src[..., 2]).unsqueeze(-1)
            else:
                colour = src[..., :1]
        else:
            colour = src[..., :3] if PC >= 3 else src[..., :1].expand(PH, PW, 3)

        # Panorama directions
        u = torch.arange(W, device=device, dtype=dtype) / (W - 1)
        v = torch.arange(H, device=device, dtype=dtype) / (H - 1)
        lat, lon = torch.meshgrid((v - 0.5) * np.pi, (u - 0.5) * (2 * np.pi), indexing='ij')
        cos_lat = torch.cos(lat)
        dirs = torch.stack([torch.sin(lon) * cos_lat, torch.sin(lat), torch.cos(lon) * cos_lat], dim=-1)

        R = torch.tensor(world_to_camera(camera).as_matrix(), device=device, dtype=dtype)
        cam = torch.tensordot(dirs, R.T, dims=1)

        z = cam[..., 2]
        visible = z > 0
        safe_z = torch.where(visible, z, torch.ones_like(z))
        px = cam[..., 0] / safe_z
        py = cam[..., 1] / safe_z
        half_w, half_h = camera.half_extents
        visible = visible & (px.abs() <= half_w) & (py.abs() <= half_h)
        u_patch = (px / half_w) * 0.5 + 0.5
        v_patch = (py / half_h) * 0.5 + 0.5
        visible = visible & (u_patch >= 0) & (u_patch <= 1) & (v_patch >= 0) & (v_patch <= 1)

        ix = torch.clamp(torch.floor(u_patch * (PW - 1)), 0, PW - 1).long()
        iy = torch.clamp(torch.floor(v_patch * (PH - 1)), 0, PH - 1).long()
        sampled_alpha = alpha[iy, ix]
        write = visible & (sampled_alpha > ALPHA_EPSILON)

        k = torch.where(write, sampled_alpha * opacity, torch.zeros_like(sampled_alpha)).unsqueeze(-1)
        dst = pano[..., :n_colour]
        blended = dst * (1.0 - k) + colour[iy, ix] * k
        pano[..., :n_colour] = torch.where(write.unsqueeze(-1), blended, dst)

        if origin == 'upper':
            pano = torch.flip(pano, dims=[0])
            write = torch.flip(write, dims=[0])

        if not pano_in.is_floating_point():
            scale = float(torch.iinfo(pano_in.dtype).max)
            pano = torch.clamp(torch.round(pano * scale), 0, scale).to(pano_in.dtype)
        pano = pano.reshape(panorama.shape)
        return ProjectionResult(pano, write, int(write.sum().item()))

    # =============================
    # Capture (inverse mapping)
    # =============================
    @classmethod
    def capture_view(cls,
                     panorama,
                     camera: CameraParameters,
                     out_width: int,
                     out_height: int,
                     origin: str = 'lower') -> np.ndarray:
        """Render the perspective view `camera` sees of the panorama.

        Uses the inverse of the project_patch mapping with nearest sampling, so
        a view captured here and projected back lands where it came from.
        Returns an (out_height, out_width[, C]) array with the panorama's dtype.
        """
        if panorama is None:
            raise InvalidReference("panorama is missing")
        cls._validate_common(camera, 1.0, origin)
        pano_arr = to_numpy(panorama, 'panorama')
        height, width = check_min_size(pano_arr, 'panorama')
        out_width, out_height = int(out_width), int(out_height)
        if out_width < MIN_IMAGE_SIZE or out_height < MIN_IMAGE_SIZE:
            raise InvalidDimensions(
                f"capture must be at least {MIN_IMAGE_SIZE}x{MIN_IMAGE_SIZE} pixels, got {out_width}x{out_height}"
            )

        half_w, half_h = camera.half_extents
        xs = np.linspace(-half_w, half_w, out_width)
        ys = np.linspace(-half_h, half_h, out_height)
        x_cam, y_cam = np.meshgrid(xs, ys)
        cam = np.stack([x_cam, y_cam, np.ones_like(x_cam)], axis=-1)

        # row vectors: cam @ M is M^T applied to each, the inverse rotation
        world = cam @ world_to_camera(camera).as_matrix()
        norm = np.linalg.norm(world, axis=-1)
        lon = np.arctan2(world[..., 0], world[..., 2])
        lat = np.arcsin(np.clip(world[..., 1] / norm, -1.0, 1.0))

        pu = lon / (2.0 * np.pi) + 0.5
        pv = lat / np.pi + 0.5
        src_x = np.clip(np.rint(pu * (width - 1)), 0, width - 1).astype(np.int64)
        src_y = np.clip(np.rint(pv * (height - 1)), 0, height - 1).astype(np.int64)

        source = pano_arr[::-1] if origin == 'upper' else pano_arr
        view = source[src_y, src_x]
        if origin == 'upper':
            view = view[::-1]
        view = np.ascontiguousarray(view)
        if np.ndim(panorama) == 2:
            view = view[:, :, 0]
        return view
