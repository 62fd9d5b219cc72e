from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Image bytes travel as a JSON array of integers
ByteValue = Annotated[int, Field(ge=0, le=255)]


class CamelModel(BaseModel):
    """
    Wire models use camelCase JSON keys and snake_case attributes.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BoundingBox(CamelModel):
    """
    Face rectangle in pixel space of the image it was detected in.
    """
    x: int = Field(..., ge=0)
    y: int = Field(..., ge=0)
    width: int = Field(..., ge=1)
    height: int = Field(..., ge=1)

    @property
    def area(self) -> int:
        return self.width * self.height


class FaceDetection(CamelModel):
    """
    One detected face with its ArcFace feature vector.
    """
    bounding_box: BoundingBox
    embedding: List[float]
    confidence: float = Field(..., ge=0.0, le=1.0)


class VideoCandidate(CamelModel):
    """
    A video seen on a source site, before its thumbnail has been scored.
    """
    id: str
    title: str
    thumbnail_url: str
    video_url: str
    source_site: str
    local_thumbnail_path: Optional[str] = None


class VideoMatch(CamelModel):
    """
    A candidate whose thumbnail contains at least one face, with its best score.
    """
    id: str
    title: str
    thumbnail_url: str
    video_url: str
    source_site: str
    similarity_score: float = Field(..., ge=0.0, le=1.0)
    detected_faces: List[FaceDetection] = Field(default_factory=list)

    def client_view(self) -> dict:
        """Serialized match with every face embedding elided."""
        return self.model_dump(
            by_alias=True,
            exclude={"detected_faces": {"__all__": {"embedding"}}},
        )


# --- RPC request bodies ---

class RpcRequest(CamelModel):
    """Every RPC body rejects unknown fields."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class EmptyRequest(RpcRequest):
    pass


class ProcessImageRequest(RpcRequest):
    image_data: List[ByteValue] = Field(..., min_length=1)

    def to_bytes(self) -> bytes:
        return bytes(self.image_data)


class SessionRequest(RpcRequest):
    session_id: str = Field(..., min_length=1, max_length=128)


class UpdateThresholdRequest(SessionRequest):
    threshold: float


class FetchFromSitesRequest(RpcRequest):
    embedding: List[float]
    threshold: Optional[float] = None
    search_id: Optional[str] = Field(default=None, max_length=128)


class SearchRequest(RpcRequest):
    search_id: str = Field(..., min_length=1, max_length=128)


class ConfigureSearchRequest(SearchRequest):
    threshold: float
