"""UKFpy: multi-tensor Unscented Kalman Filter tractography."""

from ukfpy._version import __version__

__all__ = ["__version__"]
