"""Utility functions and classes for VidSolve."""

from .config import Config
from .logging import log_error

__all__ = ["Config", "log_error"]
