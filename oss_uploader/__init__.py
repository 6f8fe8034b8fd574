"""OSS Uploader.

A command-line client for S3-compatible object stores: uploads, downloads
and deletes objects with hand-computed SigV4 request signatures, switching
to concurrent multipart transfers for large objects.
"""

__version__ = "0.2.0"

from oss_uploader.cli import main

__all__ = ["main", "__version__"]
