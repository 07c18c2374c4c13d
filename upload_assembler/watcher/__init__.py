"""
Poll-based completion detection for the staging directory.
"""

from .monitor import SidecarWatcher, UploadSnapshot

__all__ = ["SidecarWatcher", "UploadSnapshot"]
