class ProjectionError(ValueError):
    """Base class for inputs the patch projector refuses to process."""
    pass


class InvalidReference(ProjectionError):
    """A required input (panorama, patch or camera) is missing."""
    pass


class InvalidDimensions(ProjectionError):
    """An image is too small or has an unsupported shape."""
    pass


class InvalidParameter(ProjectionError):
    """A scalar parameter is outside its legal range."""
    pass
