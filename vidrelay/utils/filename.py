import os
import re
from urllib.parse import quote

MAX_TITLE_LENGTH = 200

MIME_TYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mkv": "video/x-matroska",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "mp3": "audio/mpeg",
    "m4a": "audio/mp4",
    "ogg": "audio/ogg",
    "wav": "audio/wav",
    "flac": "audio/flac",
}

DEFAULT_MIME_TYPE = "application/octet-stream"

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_NON_PRINTABLE_ASCII = re.compile(r'[^\x20-\x7e]|["\\]')


def sanitize_filename(name: str, max_length: int = MAX_TITLE_LENGTH) -> str:
    """Replace filesystem-unsafe characters and bound the length"""
    name = _UNSAFE_CHARS.sub("_", name)

    windows_reserved = {
        'CON', 'PRN', 'AUX', 'NUL',
        'COM1', 'COM2', 'COM3', 'COM4', 'COM5', 'COM6', 'COM7', 'COM8', 'COM9',
        'LPT1', 'LPT2', 'LPT3', 'LPT4', 'LPT5', 'LPT6', 'LPT7', 'LPT8', 'LPT9'
    }
    if name.upper() in windows_reserved:
        name = f"_{name}"

    return name[:max_length]


def build_download_filename(title: str, audio_only: bool) -> str:
    """Filename offered to the browser for a probed title"""
    safe_title = sanitize_filename(title)
    if not safe_title.strip():
        safe_title = "video"
    ext = "mp3" if audio_only else "mp4"
    return f"{safe_title}.{ext}"


def mime_type_for(filename: str) -> str:
    ext = os.path.splitext(filename)[1].lstrip(".").lower()
    return MIME_TYPES.get(ext, DEFAULT_MIME_TYPE)


def content_disposition(filename: str) -> str:
    """
    Attachment header with both an ASCII fallback and an RFC 5987
    UTF-8 filename, for browsers that only understand one of them.
    """
    ascii_name = _NON_PRINTABLE_ASCII.sub("_", filename)
    encoded_name = quote(filename, safe="")
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{encoded_name}"
