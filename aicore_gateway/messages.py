from __future__ import annotations

from typing import Annotated, Any, Iterable, List, Literal, Union

from pydantic import BaseModel, Field, field_validator


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrl(BaseModel):
    url: str


class ImagePart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl

    @field_validator("image_url", mode="before")
    @classmethod
    def _accept_bare_url(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"url": value}
        return value


ContentPart = Annotated[Union[TextPart, ImagePart], Field(discriminator="type")]


def _tag_part(item: Any) -> Any:
    if isinstance(item, str):
        return {"type": "text", "text": item}
    if isinstance(item, dict) and "type" not in item:
        if "image" in item:
            return {"type": "image_url", "image_url": item["image"]}
        if "image_url" in item:
            return {"type": "image_url", "image_url": item["image_url"]}
        if "text" in item:
            return {"type": "text", "text": item["text"]}
    return item


class CanonicalMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: Union[str, List[ContentPart]]

    @field_validator("content", mode="before")
    @classmethod
    def _normalize_parts(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [_tag_part(item) for item in value]
        return value

    def text(self) -> str:
        """Text content only; image parts are skipped."""
        if isinstance(self.content, str):
            return self.content
        return " ".join(part.text for part in self.content if isinstance(part, TextPart))

    def to_openai(self) -> dict:
        return self.model_dump(mode="json")


def coerce_messages(messages: Iterable[Any]) -> List[CanonicalMessage]:
    result: List[CanonicalMessage] = []
    for message in messages:
        if isinstance(message, CanonicalMessage):
            result.append(message)
        else:
            result.append(CanonicalMessage.model_validate(message))
    return result


def has_image_content(messages: Iterable[CanonicalMessage]) -> bool:
    for message in messages:
        if isinstance(message.content, list):
            if any(isinstance(part, ImagePart) for part in message.content):
                return True
    return False


def extract_prompt(messages: Iterable[CanonicalMessage], limit: int = 500) -> str:
    """Last user message text, truncated for logging."""
    last_user = None
    for message in messages:
        if message.role == "user":
            last_user = message
    if last_user is None:
        return ""
    text = last_user.text()
    if len(text) > limit:
        return text[:limit] + "...[truncated]"
    return text
