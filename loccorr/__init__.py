"""Image statistics, binary morphology, camera capture and stepper control for target position correction."""

__version__ = "0.0.1"

__all__ = ["binmorph", "capture", "cmdlnopts", "median", "pusiproto", "pusirobo", "server"]