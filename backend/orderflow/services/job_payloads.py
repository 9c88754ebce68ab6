from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from orderflow.services.conversation_flow import CarouselBrief, ImageBrief


RENDER_IMAGE = "render_image"
RENDER_CAROUSEL = "render_carousel"


class _JobPayloadBase(BaseModel):
    user_id: str
    brand_id: str | None
    order_id: str
    order_item_id: str
    unit_index: int
    campaign_name: str
    woofs_cost: int = 0


class RenderImagePayload(_JobPayloadBase):
    kind: Literal["render_image"] = RENDER_IMAGE
    brief: ImageBrief


class RenderCarouselPayload(_JobPayloadBase):
    kind: Literal["render_carousel"] = RENDER_CAROUSEL
    brief: CarouselBrief
    brand_kit: dict[str, Any] = Field(default_factory=dict)


JobPayload = Annotated[Union[RenderImagePayload, RenderCarouselPayload], Field(discriminator="kind")]

_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(JobPayload)


def parse_job_payload(data: dict[str, Any]) -> RenderImagePayload | RenderCarouselPayload:
    return _PAYLOAD_ADAPTER.validate_python(data)
