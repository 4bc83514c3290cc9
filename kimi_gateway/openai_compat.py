from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class UrlRef(BaseModel):
    url: str

    model_config = ConfigDict(extra="allow")


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class FilePart(BaseModel):
    type: Literal["file"] = "file"
    file_url: UrlRef


class ImageUrlPart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: UrlRef


ContentPart = Annotated[Union[TextPart, FilePart, ImageUrlPart], Field(discriminator="type")]


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant", "tool", "developer"] = "user"
    content: str | list[ContentPart] = ""

    def attachment_urls(self) -> list[str]:
        if not isinstance(self.content, list):
            return []
        urls: list[str] = []
        for part in self.content:
            if isinstance(part, FilePart):
                urls.append(part.file_url.url)
            elif isinstance(part, ImageUrlPart):
                urls.append(part.image_url.url)
        return urls

    def has_attachment(self) -> bool:
        return bool(self.attachment_urls())


class ChatCompletionRequest(BaseModel):
    model: str | None = None
    messages: list[ChatMessage]
    stream: bool = False
    use_search: bool = True

    # Accept extra fields from clients (temperature, max_tokens, etc.).
    model_config = ConfigDict(extra="allow")


class ErrorResponse(BaseModel):
    error: dict[str, Any] = Field(default_factory=dict)


def normalize_message_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, TextPart):
                parts.append(part.text)
        return "".join(parts)
    return str(content)
