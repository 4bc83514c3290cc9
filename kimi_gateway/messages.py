from __future__ import annotations

import logging
import re

from .openai_compat import ChatMessage, FilePart, ImageUrlPart, TextPart

logger = logging.getLogger("uvicorn.error")

FILE_ATTENTION_PROMPT = "Focus on the latest files and message sent by the user"
TEXT_ATTENTION_PROMPT = "Focus on the user's latest message"

_URL_RE = re.compile(
    r"https?://(www\.)?[-a-zA-Z0-9@:%._+~#=]{2,256}\.[a-z]{2,6}\b([-a-zA-Z0-9@:%_+.~#?&/=]*)",
    re.IGNORECASE,
)


def is_base64_data_url(url: str) -> bool:
    return url.startswith("data:") and ";base64," in url


def wrap_urls_to_tags(content: str) -> str:
    # The web client tags URLs before sending; untagged URLs are parsed differently.
    return _URL_RE.sub(lambda m: f'<url id="" type="url" status="" title="" wc="">{m.group(0)}</url>', content)


def extract_ref_file_urls(messages: list[ChatMessage]) -> list[str]:
    """Attachment URLs of the newest message only."""
    if not messages:
        return []
    urls = messages[-1].attachment_urls()
    logger.info("Uploading %d file(s) for this request", len(urls))
    return urls


def _strip_inline_attachments(message: ChatMessage) -> ChatMessage:
    if not isinstance(message.content, list):
        return message
    kept = []
    for part in message.content:
        if isinstance(part, FilePart) and is_base64_data_url(part.file_url.url):
            continue
        if isinstance(part, ImageUrlPart) and is_base64_data_url(part.image_url.url):
            continue
        kept.append(part)
    return message.model_copy(update={"content": kept})


def prepare_messages(messages: list[ChatMessage]) -> list[dict[str, str]]:
    """
    Collapse a multi-turn conversation into one user message.

    The upstream only treats the newest message as the prompt, so history is
    flattened into `role:text` lines with an attention hint inserted just
    before the last message.
    """
    if not messages:
        return [{"role": "user", "content": ""}]

    # Decide on the hint before stripping: a base64 attachment still counts.
    has_attachment = messages[-1].has_attachment()
    valid = [_strip_inline_attachments(m) for m in messages]
    hint = ChatMessage(role="system", content=FILE_ATTENTION_PROMPT if has_attachment else TEXT_ATTENTION_PROMPT)
    valid.insert(len(valid) - 1, hint)

    lines: list[str] = []
    for message in valid:
        role = message.role or "user"
        if isinstance(message.content, list):
            for part in message.content:
                if isinstance(part, TextPart):
                    lines.append(f"{role}:{wrap_urls_to_tags(part.text)}\n")
        else:
            lines.append(f"{role}:{wrap_urls_to_tags(message.content)}\n")

    content = "".join(lines)
    logger.debug("Merged conversation:\n%s", content)
    return [{"role": "user", "content": content}]
