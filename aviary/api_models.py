from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Thumbnail(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str = ""


class BirdRecord(BaseModel):
    """One entry of a bundled dataset (Wikipedia page summary shape)."""

    model_config = ConfigDict(frozen=True)

    title: str
    thumbnail: Thumbnail = Field(default_factory=Thumbnail)
    extract_html: str = ""

    @property
    def image_source(self) -> str:
        return self.thumbnail.source

    def to_response(self) -> BirdResponse:
        return BirdResponse(name=self.title, imageURL=self.image_source, extract=self.extract_html)


class BirdResponse(BaseModel):
    name: str = ""
    imageURL: str = ""
    extract: str = ""


class BackendMetadata(BaseModel):
    hostname: str = ""
    version: str = ""


class BackendEnvelope(BaseModel):
    """Body of every backend /bird response."""

    metadata: BackendMetadata = Field(default_factory=BackendMetadata)
    response: BirdResponse | None = None
    error: str | None = None


class ShuffleMetadata(BaseModel):
    backendDuration: str | None = None
    backendStatusCode: int | None = None
    backendHostname: str | None = None
    backendVersion: str | None = None


class ShuffleResponse(BaseModel):
    metadata: ShuffleMetadata = Field(default_factory=ShuffleMetadata)
    error: str | None = None
    response: BirdResponse | None = None
