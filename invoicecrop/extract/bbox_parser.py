"""
Bounding-box extraction from free-form vision model responses.

The model is asked for a tagged line per invoice, but in practice it
answers in one of several shapes. Strategies are tried in order and the
first one that yields at least one region wins; results are never merged
across strategies:

1. JSON object with an ``invoices`` array
2. ``<label> 发票 ... <bbox>x1 y1 x2 y2</bbox>`` labeled tags
3. ``<bbox>x1 y1 x2 y2</bbox>`` generic tags
4. ``[x1, y1, x2, y2]`` bracketed arrays anywhere in the text
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from invoicecrop.types import ParseOutcome, ParseStrategy, RawRegion


_NUM = r"(-?[\d.]+)"
_SEP = r"[,\s]+"

_JSON_PATTERN = re.compile(r"\{.*\}", re.DOTALL)
_BBOX_TAG = rf"<bbox>\s*{_NUM}{_SEP}{_NUM}{_SEP}{_NUM}{_SEP}{_NUM}\s*</bbox>"
_GENERIC_TAG_PATTERN = re.compile(_BBOX_TAG, re.IGNORECASE)
_BRACKETED_PATTERN = re.compile(rf"\[\s*{_NUM},\s*{_NUM},\s*{_NUM},\s*{_NUM}\s*\]")


def _labeled_tag_pattern(keywords: Sequence[str]) -> re.Pattern:
    alternation = "|".join(re.escape(k) for k in keywords if k)
    return re.compile(
        rf"(?P<label>.+?)\s*(?:{alternation}).*?(?P<tag>{_BBOX_TAG})",
        re.IGNORECASE,
    )


def _is_number(value: Any) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    # json.loads accepts NaN, Infinity, 1e999 and integers too large for a float
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


class BboxExtractor:
    """
    Parse model text into an ordered list of ``RawRegion``.

    ``extract`` is best-effort and never raises: malformed input yields an
    empty list, and a single malformed candidate is skipped without
    affecting its siblings.
    """

    def __init__(
        self,
        label_keywords: Sequence[str] = ("发票", "invoice"),
        default_confidence: float = 0.9,
    ):
        self.default_confidence = default_confidence
        self._labeled_pattern = _labeled_tag_pattern(label_keywords)
        self._strategies: List[Tuple[ParseStrategy, Callable[[str, int], List[RawRegion]]]] = [
            (ParseStrategy.JSON, self._parse_json),
            (ParseStrategy.LABELED_TAG, self._parse_labeled_tags),
            (ParseStrategy.GENERIC_TAG, self._parse_generic_tags),
            (ParseStrategy.BRACKETED, self._parse_bracketed),
        ]

    @classmethod
    def from_config(cls, extraction_config) -> "BboxExtractor":
        return cls(
            label_keywords=extraction_config.label_keywords,
            default_confidence=extraction_config.default_confidence,
        )

    # ── public API ───────────────────────────────────────────────────────────

    def parse(self, text: Optional[str], page: int = 1) -> ParseOutcome:
        """
        Run the strategies in precedence order and return the first hit.

        Args:
            text: Raw model response
            page: 1-based page number the response was generated for

        Returns:
            ParseOutcome naming the winning strategy (``EMPTY`` on a miss)
        """
        if not text or not text.strip():
            logger.warning(f"Empty model response for page {page}")
            return ParseOutcome()

        for strategy, parse_fn in self._strategies:
            try:
                regions = parse_fn(text, page)
            except Exception as e:
                logger.warning(f"{strategy.value} strategy failed on page {page}: {e}")
                continue
            if regions:
                logger.info(f"Parsed {len(regions)} region(s) on page {page} via {strategy.value}")
                return ParseOutcome(strategy=strategy, regions=regions)

        logger.info(f"No regions found in model response for page {page}")
        logger.debug(f"Raw response: {text[:500]}")
        return ParseOutcome()

    def extract(self, text: Optional[str], page: int = 1) -> List[RawRegion]:
        """Convenience wrapper returning only the regions."""
        return list(self.parse(text, page).regions)

    # ── strategies ───────────────────────────────────────────────────────────

    def _parse_json(self, text: str, page: int) -> List[RawRegion]:
        match = _JSON_PATTERN.search(text)
        if not match:
            return []

        try:
            data = json.loads(match.group())
        except json.JSONDecodeError as e:
            logger.debug(f"JSON decode failed, falling back to tag parsing: {e}")
            return []

        if not isinstance(data, dict) or not isinstance(data.get("invoices"), list):
            return []

        regions: List[RawRegion] = []
        for position, item in enumerate(data["invoices"]):
            if not isinstance(item, dict):
                logger.debug(f"Skipping non-object invoice entry #{position}")
                continue

            bbox = item.get("bbox")
            if not isinstance(bbox, list) or len(bbox) != 4 or not all(_is_number(v) for v in bbox):
                logger.debug(f"Skipping invoice entry #{position} with bad bbox: {bbox!r}")
                continue

            label = item.get("merchantName", item.get("label"))
            regions.append(RawRegion(
                bbox=[float(v) for v in bbox],
                label=str(label).strip() if label is not None else None,
                confidence=self._confidence(item.get("confidence")),
                source_page=self._reported_page(item.get("page"), page),
                index=len(regions),
                strategy=ParseStrategy.JSON,
                raw_text=json.dumps(bbox),
            ))

        return regions

    def _parse_labeled_tags(self, text: str, page: int) -> List[RawRegion]:
        regions: List[RawRegion] = []
        for match in self._labeled_pattern.finditer(text):
            coords = self._to_floats(match.groups()[2:6])
            if coords is None:
                continue
            regions.append(self._tag_region(
                coords, page, len(regions), ParseStrategy.LABELED_TAG,
                match.group("tag"), label=match.group("label").strip(),
            ))
        return regions

    def _parse_generic_tags(self, text: str, page: int) -> List[RawRegion]:
        regions: List[RawRegion] = []
        for match in _GENERIC_TAG_PATTERN.finditer(text):
            coords = self._to_floats(match.groups())
            if coords is None:
                continue
            regions.append(self._tag_region(
                coords, page, len(regions), ParseStrategy.GENERIC_TAG, match.group(0),
            ))
        return regions

    def _parse_bracketed(self, text: str, page: int) -> List[RawRegion]:
        regions: List[RawRegion] = []
        for match in _BRACKETED_PATTERN.finditer(text):
            coords = self._to_floats(match.groups())
            if coords is None:
                continue
            regions.append(self._tag_region(
                coords, page, len(regions), ParseStrategy.BRACKETED, match.group(0),
            ))
        return regions

    # ── helpers ──────────────────────────────────────────────────────────────

    def _tag_region(
        self,
        coords: List[float],
        page: int,
        index: int,
        strategy: ParseStrategy,
        raw_text: str,
        label: Optional[str] = None,
    ) -> RawRegion:
        return RawRegion(
            bbox=coords,
            label=label or None,
            confidence=self.default_confidence,
            source_page=page,
            index=index,
            strategy=strategy,
            raw_text=raw_text,
        )

    @staticmethod
    def _to_floats(groups: Sequence[str]) -> Optional[List[float]]:
        try:
            return [float(g) for g in groups]
        except (TypeError, ValueError):
            logger.debug(f"Skipping candidate with non-numeric coordinates: {groups}")
            return None

    def _confidence(self, value: Any) -> float:
        if not _is_number(value):
            return self.default_confidence
        return min(1.0, max(0.0, float(value)))

    @staticmethod
    def _reported_page(value: Any, page: int) -> int:
        # The model tends to report page 1 for every page it sees.
        if not _is_number(value):
            return page
        reported = int(value)
        if reported < 1 or (reported == 1 and page > 1):
            return page
        return reported


def extract_regions(text: Optional[str], page: int = 1) -> List[RawRegion]:
    """
    Convenience function to extract regions with default settings.

    Args:
        text: Raw model response
        page: 1-based page number

    Returns:
        Ordered list of raw regions (possibly empty)
    """
    return BboxExtractor().extract(text, page)


def summarize_outcome(outcome: ParseOutcome) -> Dict[str, Any]:
    """Small diagnostic dict for logs and status messages."""
    return {
        "strategy": outcome.strategy.value,
        "regions": len(outcome.regions),
        "labels": [r.label for r in outcome.regions if r.label],
    }
