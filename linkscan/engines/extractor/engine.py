"""
Extractor - turns page HTML (static or rendered) into resource references.
"""

from __future__ import annotations

from typing import Iterator

import structlog
from bs4 import BeautifulSoup, Tag

from linkscan.engines.base import ReferenceKind, ResourceReference
from linkscan.engines.crawler.frontier import URLNormalizer

logger = structlog.get_logger(__name__)


class Extractor:
    """
    Collects anchor and image references in document order.

    The Extractor does not know or care which fetch strategy produced the HTML.
    """

    SKIPPED_PREFIXES = ("mailto:", "javascript:", "tel:", "data:", "sms:", "ftp:", "about:", "blob:")
    CONTEXT_CHARS = 120

    def extract(self, content: str, page_url: str) -> Iterator[ResourceReference]:
        """
        Yield each unique (target, kind) reference in content, resolved against page_url.

        Lazy and restartable: calling again on the same content yields the same sequence.
        """
        if not content:
            return
        soup = BeautifulSoup(content, "lxml")
        base_url = self._base_url(soup, page_url)
        seen: set[tuple[str, ReferenceKind]] = set()

        for tag in soup.find_all(["a", "area", "img", "source"]):
            for raw, kind in self._candidates(tag):
                target = self._resolve(raw, base_url, page_url)
                if target is None or (target, kind) in seen:
                    continue
                seen.add((target, kind))
                yield ResourceReference(
                    source_url=page_url,
                    target_url=target,
                    kind=kind,
                    context=self._context(tag),
                )

    def _candidates(self, tag: Tag) -> Iterator[tuple[str, ReferenceKind]]:
        if tag.name in ("a", "area"):
            href = tag.get("href")
            if href:
                yield href, ReferenceKind.LINK
            return

        if tag.name == "img":
            src = tag.get("src")
            if src:
                yield src, ReferenceKind.IMAGE
        elif tag.name == "source":
            # <source> inside <video>/<audio> is media, not an image
            if tag.parent is None or tag.parent.name != "picture":
                return

        srcset = tag.get("srcset")
        if srcset:
            for candidate in self.parse_srcset(srcset):
                yield candidate, ReferenceKind.IMAGE

    @staticmethod
    def parse_srcset(srcset: str) -> list[str]:
        """
        URLs from a srcset attribute ("a.png 1x, b.png 2x").

        Candidates are split the HTML way: a URL runs to the next whitespace, so
        commas inside it (CDN transforms like w_400,c_fill) are kept; descriptors
        run to the next comma outside parentheses.
        """
        urls = []
        pos, end = 0, len(srcset)
        while pos < end:
            while pos < end and (srcset[pos].isspace() or srcset[pos] == ","):
                pos += 1
            start = pos
            while pos < end and not srcset[pos].isspace():
                pos += 1
            url = srcset[start:pos]

            if url.endswith(","):
                # Trailing commas end a candidate without descriptors
                url = url.rstrip(",")
            else:
                depth = 0
                while pos < end:
                    char = srcset[pos]
                    if char == "(":
                        depth += 1
                    elif char == ")":
                        depth = max(depth - 1, 0)
                    elif char == "," and depth == 0:
                        break
                    pos += 1
            if url:
                urls.append(url)
        return urls

    def _resolve(self, raw: str, base_url: str, page_url: str) -> str | None:
        raw = raw.strip()
        if not raw or raw.startswith("#"):
            return None  # same-page fragment
        if raw.lower().startswith(self.SKIPPED_PREFIXES):
            return None
        target = URLNormalizer.try_normalize(raw, base_url)
        if target is None:
            logger.debug("Skipping unresolvable reference", raw=raw[:200], page=page_url)
        return target

    @staticmethod
    def _base_url(soup: BeautifulSoup, page_url: str) -> str:
        base = soup.find("base", href=True)
        if base is not None:
            resolved = URLNormalizer.try_normalize(base["href"], page_url)
            if resolved:
                return resolved
        return page_url

    def _context(self, tag: Tag) -> str:
        attrs = " ".join(f'{k}="{v}"' for k, v in tag.attrs.items() if k in ("href", "src", "srcset", "alt"))
        text = tag.get_text(" ", strip=True) if tag.name in ("a", "area") else ""
        snippet = f"<{tag.name} {attrs}>{text}".strip()
        return snippet[: self.CONTEXT_CHARS]
