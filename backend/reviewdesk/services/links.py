"""
Link extraction for free-text feedback.

URLs are pulled out of the text into a side list and replaced with
positional placeholders `[LINK:<index>]`. Repeated URLs share one entry.

A URL is `http://` or `https://` followed by anything except whitespace,
`<`, `>` and `"`. The only exclusion is a URL written directly after the
placeholder prefix `[LINK:`; a preceding quote or `>` does not exclude it.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

from ..schemas import Link

PLACEHOLDER_PREFIX = "[LINK:"
URL_RE = re.compile(r"(?<!\[LINK:)https?://[^\s<>\"]+")
PLACEHOLDER_RE = re.compile(r"\[LINK:(\d+)\]")


@dataclass
class EncodedText:
    processed_text: str
    links: list[Link] = field(default_factory=list)


def placeholder(index: int) -> str:
    return f"{PLACEHOLDER_PREFIX}{index}]"


def encode_links(text: str, links: Iterable[Link] | None = None) -> EncodedText:
    """Replace every URL in `text` with its placeholder.

    `links` seeds the side list, so text that already carries placeholders
    keeps its indices valid and new URLs are appended after them.
    """
    collected: list[Link] = [Link(url=link.url, text=link.text) for link in (links or [])]
    index_by_url = {link.url: i for i, link in enumerate(collected)}

    def _replace(match: re.Match[str]) -> str:
        url = match.group(0)
        index = index_by_url.get(url)
        if index is None:
            collected.append(Link(url=url, text=url))
            index = len(collected) - 1
            index_by_url[url] = index
        return placeholder(index)

    processed = URL_RE.sub(_replace, text or "")
    return EncodedText(processed_text=processed, links=collected)


def decode_links(processed_text: str, links: Iterable[Link | dict]) -> str:
    """Substitute each placeholder with its URL; unknown indices stay as written."""
    urls = [link["url"] if isinstance(link, dict) else link.url for link in links]

    def _replace(match: re.Match[str]) -> str:
        index = int(match.group(1))
        if 0 <= index < len(urls):
            return urls[index]
        return match.group(0)

    return PLACEHOLDER_RE.sub(_replace, processed_text or "")
