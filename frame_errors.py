"""Error types shared by the album, render and pregeneration layers."""


class FrameError(Exception):
    """Base class for every inkframe failure."""


class ConfigError(FrameError):
    """A required setting is missing or a value cannot be parsed."""


class DiscoveryError(FrameError):
    """No album resolution strategy produced any candidate URLs."""


class DecodeError(FrameError):
    """Source bytes could not be decoded as an image."""


class DitherMismatchError(FrameError):
    """Dither output does not cover exactly width x height pixels."""

    def __init__(self, expected, actual, width, height):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Dither mismatch: expected {expected} indices ({width}x{height}), "
            f"got {actual}. Check crop/resize logic."
        )


class ExhaustedAttemptsError(FrameError):
    """No eligible candidate was found within the attempt budget."""

    def __init__(self, attempts):
        self.attempts = attempts
        super().__init__(f"No usable image found after {attempts} attempts")


class OrientationRejected(FrameError):
    """Decoded image is portrait or square while landscape is required."""

    def __init__(self, width, height):
        self.width = width
        self.height = height
        super().__init__(f"Image is {width}x{height}, landscape required")
