from .filename import build_download_filename, content_disposition, mime_type_for, sanitize_filename
from .hash import hash_stable

__all__ = [
    "build_download_filename",
    "content_disposition",
    "hash_stable",
    "mime_type_for",
    "sanitize_filename",
]
