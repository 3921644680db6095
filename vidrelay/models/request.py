from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from vidrelay.models.internal import DownloadRequest


class ResolveRequest(BaseModel):
    """Body of POST /resolve. URL checks happen in the endpoint so they map to 400."""
    model_config = ConfigDict(populate_by_name=True)

    url: Optional[str] = Field(None, description="Video page URL")
    audio_only: bool = Field(False, alias="audioOnly", description="Extract audio only")

    def to_download_request(self, source_url: str) -> DownloadRequest:
        return DownloadRequest(source_url=source_url, audio_only=self.audio_only)
