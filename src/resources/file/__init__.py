"""
File resource kind.

Manages the existence of a single file on a remote host.
"""

from resources.file.client import FileClient, FileConnector
from resources.file.models import KIND, File, FileObservation, FileParameters

__all__ = [
    "KIND",
    "File",
    "FileClient",
    "FileConnector",
    "FileObservation",
    "FileParameters",
]
