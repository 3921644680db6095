from pydantic import BaseModel, ConfigDict, Field


class ResolveResponse(BaseModel):
    """Metadata the browser needs before requesting the stream"""
    model_config = ConfigDict(populate_by_name=True)

    status: str = "ready"
    filename: str
    title: str
    duration: float
    cleaned_url: str = Field(alias="cleanedUrl")
    original_url: str = Field(alias="originalUrl")
    audio_only: bool = Field(alias="audioOnly")


class ServiceInfo(BaseModel):
    status: str
    service: str
    version: str
    extractor_version: str
    redis_enabled: bool
