import math
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.spatial.transform import Rotation

from .projection_errors import InvalidParameter


# Panorama longitude 0 sits 90 degrees away from the capture camera's forward
# axis. Every direction taken from the panorama is turned by this yaw before it
# is expressed in camera space, and capture applies the inverse.
PANORAMA_YAW_ALIGNMENT_DEGREES = 90.0
PANORAMA_YAW_ALIGNMENT = Rotation.from_euler('y', PANORAMA_YAW_ALIGNMENT_DEGREES, degrees=True)


@dataclass(frozen=True)
class CameraParameters:
    """Camera state at the moment a patch was captured.

    Attributes:
        vertical_fov: Vertical field of view in radians, in (0, pi).
        aspect: Width / height of the captured frame.
        orientation: Rotation taking camera-local vectors to world vectors
            (the camera transform's rotation). Identity when omitted.
    """
    vertical_fov: float
    aspect: float
    orientation: Optional[Rotation] = field(default=None)

    def __post_init__(self):
        fov = float(self.vertical_fov)
        aspect = float(self.aspect)
        if not math.isfinite(fov) or not (0.0 < fov < math.pi):
            raise InvalidParameter(f"vertical_fov must be in (0, pi) radians, got {self.vertical_fov}")
        if not math.isfinite(aspect) or aspect <= 0.0:
            raise InvalidParameter(f"aspect must be a positive number, got {self.aspect}")
        orientation = self.orientation if self.orientation is not None else Rotation.identity()
        if not isinstance(orientation, Rotation):
            raise InvalidParameter(f"orientation must be a scipy Rotation, got {type(orientation).__name__}")
        if not orientation.single:
            raise InvalidParameter("orientation must be a single rotation, not a stack")
        # frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, 'vertical_fov', fov)
        object.__setattr__(self, 'aspect', aspect)
        object.__setattr__(self, 'orientation', orientation)

    @classmethod
    def from_euler(cls, pitch: float = 0.0, yaw: float = 0.0, roll: float = 0.0,
                   vertical_fov_degrees: float = 60.0, aspect: float = 16.0 / 9.0) -> 'CameraParameters':
        """Build camera parameters from Euler angles in degrees.

        Roll is applied about Z first, then pitch about X, then yaw about Y,
        which is how the capture side reports its camera angles.
        """
        orientation = Rotation.from_euler('YXZ', [yaw, pitch, roll], degrees=True)
        return cls(math.radians(vertical_fov_degrees), aspect, orientation)

    @classmethod
    def from_quaternion(cls, quaternion: Sequence[float], vertical_fov_degrees: float = 60.0,
                        aspect: float = 16.0 / 9.0) -> 'CameraParameters':
        """Build camera parameters from an (x, y, z, w) quaternion."""
        q = np.asarray(quaternion, dtype=np.float64)
        if q.shape != (4,) or not np.all(np.isfinite(q)) or np.linalg.norm(q) == 0.0:
            raise InvalidParameter(f"quaternion must be 4 finite values with non-zero norm, got {quaternion}")
        return cls(math.radians(vertical_fov_degrees), aspect, Rotation.from_quat(q))

    @classmethod
    def from_horizontal_fov(cls, horizontal_fov_degrees: float, aspect: float,
                            pitch: float = 0.0, yaw: float = 0.0, roll: float = 0.0) -> 'CameraParameters':
        """Build camera parameters when only the horizontal field of view is known."""
        if not (0.0 < horizontal_fov_degrees < 180.0):
            raise InvalidParameter(f"horizontal_fov_degrees must be in (0, 180), got {horizontal_fov_degrees}")
        if aspect <= 0.0:
            raise InvalidParameter(f"aspect must be a positive number, got {aspect}")
        tan_half_h = math.tan(math.radians(horizontal_fov_degrees) / 2.0)
        vertical_fov_degrees = math.degrees(2.0 * math.atan(tan_half_h / aspect))
        return cls.from_euler(pitch, yaw, roll, vertical_fov_degrees, aspect)

    @property
    def tan_half_vertical_fov(self) -> float:
        return math.tan(self.vertical_fov / 2.0)

    @property
    def half_extents(self) -> Tuple[float, float]:
        """Image-plane half width and half height at unit depth."""
        t = self.tan_half_vertical_fov
        return self.aspect * t, t

    @property
    def horizontal_fov(self) -> float:
        return 2.0 * math.atan(self.tan_half_vertical_fov * self.aspect)

    @property
    def vertical_fov_degrees(self) -> float:
        return math.degrees(self.vertical_fov)

    @property
    def horizontal_fov_degrees(self) -> float:
        return math.degrees(self.horizontal_fov)

    @property
    def euler_degrees(self) -> Tuple[float, float, float]:
        """(pitch, yaw, roll) in degrees, the inverse of from_euler."""
        yaw, pitch, roll = self.orientation.as_euler('YXZ', degrees=True)
        return float(pitch), float(yaw), float(roll)


def world_to_camera(camera: CameraParameters) -> Rotation:
    """Rotation taking a panorama direction into camera-local space."""
    return camera.orientation.inv() * PANORAMA_YAW_ALIGNMENT


def camera_forward(camera: CameraParameters) -> np.ndarray:
    """Panorama-frame unit direction the camera looks along."""
    return world_to_camera(camera).inv().apply([0.0, 0.0, 1.0])
