"""CQ code parsing: inline markup in OneBot message strings.

A CQ code looks like ``[CQ:image,file=abc.jpg,url=https://...]``. Only
image, at and reply codes produce structured fields; every code matching
the generic grammar is stripped from the text regardless of its type.
"""

from __future__ import annotations

import html
import re

from ..types import ParsedMessage

_CQ_RE = re.compile(r"\[CQ:[^\]]+\]")
_IMAGE_RE = re.compile(r"\[CQ:image,[^\]]*url=([^,\]]+)\]")
_AT_RE = re.compile(r"\[CQ:at,qq=(\d+)\]")
_REPLY_RE = re.compile(r"\[CQ:reply,id=(-?\d+)\]")


def unescape_cq(message: str) -> str:
    """Decode HTML entities (``&#91;`` ``&#93;`` ``&#44;`` ``&amp;``)."""
    return html.unescape(message)


def strip_markup(message: str) -> str:
    """Remove every CQ code and trim surrounding whitespace."""
    return _CQ_RE.sub("", message).strip()


def parse_message(raw: str) -> ParsedMessage:
    """Parse a raw gateway message into text, images, mentions and reply id.

    Best effort: malformed codes stay in the text as literals.
    """
    message = unescape_cq(raw or "")
    reply = _REPLY_RE.search(message)
    return ParsedMessage(
        text=strip_markup(message),
        image_urls=tuple(_IMAGE_RE.findall(message)),
        mentioned_users=tuple(_AT_RE.findall(message)),
        reply_to_id=reply.group(1) if reply else None,
    )
