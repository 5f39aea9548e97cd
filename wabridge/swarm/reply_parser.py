"""wabridge – Reply actions and AI reply post-processing.

An AI reply may carry an ``[IMAGE: url]`` tag; it is turned into a typed
``SendImage`` action with the remaining text as caption. Google Drive
"view" links are rewritten to their direct-download form.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

IMAGE_TAG = re.compile(r"\[IMAGE:\s*(.*?)\]")
DRIVE_FILE_ID = re.compile(r"/d/(.*?)/|id=(.*?)(&|$)")
DRIVE_DIRECT_URL = "https://drive.google.com/uc?export=view&id={file_id}"


class ReplyOrigin(str, Enum):
    AUTO = "AUTO"
    AI = "AI"


@dataclass(frozen=True)
class NoReply:
    pass


@dataclass(frozen=True)
class SendText:
    body: str
    origin: ReplyOrigin = ReplyOrigin.AI
    keyword: str | None = None


@dataclass(frozen=True)
class SendImage:
    url: str
    caption: str = ""
    origin: ReplyOrigin = ReplyOrigin.AI


ReplyAction = NoReply | SendText | SendImage


def direct_image_url(url: str) -> str:
    if "drive.google.com" not in url:
        return url
    match = DRIVE_FILE_ID.search(url)
    if not match:
        return url
    file_id = match.group(1) or match.group(2)
    return DRIVE_DIRECT_URL.format(file_id=file_id)


def parse_reply(text: str | None) -> ReplyAction:
    """Turn raw model output into a reply action."""
    if not text or not text.strip():
        return NoReply()
    match = IMAGE_TAG.search(text)
    if not match:
        return SendText(body=text.strip())
    url = direct_image_url(match.group(1).strip())
    caption = text.replace(match.group(0), "").strip()
    if not url:
        return SendText(body=caption) if caption else NoReply()
    return SendImage(url=url, caption=caption)


def image_failure_fallback(action: SendImage) -> SendText:
    return SendText(
        body=f"{action.caption}\n(failed to load image: {action.url})".strip(),
        origin=action.origin,
    )
