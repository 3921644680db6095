from .internal import DownloadRequest, LocalTempFile, RemoteTunnel, StreamTarget, VideoInfo
from .request import ResolveRequest
from .response import ResolveResponse, ServiceInfo

__all__ = [
    "DownloadRequest",
    "LocalTempFile",
    "RemoteTunnel",
    "ResolveRequest",
    "ResolveResponse",
    "ServiceInfo",
    "StreamTarget",
    "VideoInfo",
]
