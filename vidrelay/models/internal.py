from dataclasses import dataclass
from pathlib import Path
from typing import Union

from pydantic import BaseModel


class DownloadRequest(BaseModel):
    """Internal download request (separated from HTTP concerns)"""
    source_url: str
    audio_only: bool = False


class VideoInfo(BaseModel):
    """Metadata reported by an extractor probe"""
    title: str
    container_ext: str
    duration_seconds: float


@dataclass(frozen=True)
class RemoteTunnel:
    """Bytes fetched from a directly fetchable media URL"""
    url: str


@dataclass(frozen=True)
class LocalTempFile:
    """Bytes read from a file the extractor wrote"""
    path: Path
    size_bytes: int


StreamTarget = Union[RemoteTunnel, LocalTempFile]
