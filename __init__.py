from .nodes import (
    SkyboxPatchProject,
    SkyboxPatchCapture,
)


NODE_CLASS_MAPPINGS = {
    "Skybox Patch Project": SkyboxPatchProject,
    "Skybox Patch Capture": SkyboxPatchCapture,
}

NODE_DISPLAY_NAME_MAPPINGS = {
    "Skybox Patch Project": "Skybox Patch → Panorama",
    "Skybox Patch Capture": "Panorama → Skybox Patch Capture",
}

__all__ = ['NODE_CLASS_MAPPINGS', 'NODE_DISPLAY_NAME_MAPPINGS']
