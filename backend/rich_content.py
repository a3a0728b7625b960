"""Move inline base64 images in rich-text HTML into the payload store and back."""

import logging
import re
from typing import Callable, Dict, List, Optional

from models import now_ms
from payload_store import PayloadStore


logger = logging.getLogger(__name__)

# <img ... src="data:image/...;base64,..." ...>
INLINE_IMAGE_RE = re.compile(
    r"""<img([^>]+)src=["'](data:image/[^;]+;base64,[^"']+)["']([^>]*)>"""
)
# A key runs up to the closing quote of the src attribute.
KEY_CHARS = r"""[^"'\s<>]+"""


def ref_marker(field_tag: str) -> str:
    return f"__{field_tag.upper()}_REF__"


def ref_pattern(field_tag: str) -> "re.Pattern":
    return re.compile(re.escape(ref_marker(field_tag)) + f"({KEY_CHARS})")


def referenced_keys(html: Optional[str], field_tag: str) -> List[str]:
    """Payload keys referenced by ``field_tag`` sentinels, in first-seen order."""
    if not html:
        return []
    return list(dict.fromkeys(ref_pattern(field_tag).findall(html)))


class RichContentExternalizer:
    def __init__(
        self,
        store: PayloadStore,
        threshold: int,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.clock = clock

    def externalize(self, html: Optional[str], owner_id: str, field_tag: str) -> str:
        """Replace embedded image payloads with ``__{TAG}_REF__{key}`` sentinels.

        Images are numbered in document order starting at 0; payloads shorter
        than the threshold stay inline. Already-externalized HTML has no
        data URIs left, so running this twice is a no-op.
        """
        if not html:
            return ""

        timestamp = self.clock()
        marker = ref_marker(field_tag)
        counter = {"index": 0}

        def replace(match: "re.Match") -> str:
            index = counter["index"]
            counter["index"] += 1
            before_src, src_data, after_src = match.group(1), match.group(2), match.group(3)
            if len(src_data) < self.threshold:
                return match.group(0)
            key = f"{owner_id}_{field_tag}_{timestamp}_{index}"
            self.store.put(key, src_data)
            return f'<img{before_src}src="{marker}{key}"{after_src}>'

        return INLINE_IMAGE_RE.sub(replace, html)

    def inline(self, html: Optional[str], field_tag: str) -> str:
        """Swap sentinels back for their payloads.

        Each distinct key is fetched once. A key with no stored payload keeps
        its sentinel in place.
        """
        if not html or ref_marker(field_tag) not in html:
            return html or ""

        images: Dict[str, str] = {}
        for key in referenced_keys(html, field_tag):
            data = self.store.get(key)
            if data:
                images[key] = data
            else:
                logger.warning("Missing %s payload for key %s", field_tag, key)

        def replace(match: "re.Match") -> str:
            return images.get(match.group(1), match.group(0))

        return ref_pattern(field_tag).sub(replace, html)
