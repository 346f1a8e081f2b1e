# services/moderation/normalizer.py
from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from apps.common.log import get_logger
from services.moderation.models import ModerationLabel, NormalizedModerationResult
from services.moderation.taxonomy import TaxonomyClassifier

logger = get_logger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 80.0

LINE_DELIMITED_SUFFIXES = (".jsonl", ".ndjson")

# Per-image envelope written by batch analysis jobs.
ENVELOPE_LABELS_KEY = "detect-moderation-labels"
ENVELOPE_SOURCE_KEY = "source-ref"

# Safety classification list. Kept separate from the display taxonomy on
# purpose: this decides is_flagged, the taxonomy only names albums.
NSFW_CATEGORIES: Tuple[str, ...] = (
    "Explicit Nudity",
    "Nudity",
    "Sexual Activity",
    "Partial Nudity",
    "Sexual Situations",
    "Adult Toys",
    "Female Swimwear Or Underwear",
    "Male Swimwear Or Underwear",
    "Revealing Clothes",
    "Graphic Violence Or Gore",
    "Physical Violence",
    "Weapon Violence",
    "Weapons",
    "Self Injury",
    "Emaciated Bodies",
    "Corpses",
    "Hanging",
    "Air Crash",
    "Explosions And Blasts",
    "Drug Products",
    "Drug Use",
    "Pills",
    "Drug Paraphernalia",
    "Tobacco Products",
    "Smoking",
    "Drinking",
    "Alcoholic Beverages",
    "Gambling",
    "Hate Symbols",
    "Nazi Party",
    "White Supremacy",
    "Extremist",
)

_IMAGE_EXT_RE = re.compile(r"\.(jpg|jpeg|png|gif|webp|heic)$", re.IGNORECASE)

RawFile = Tuple[str, bytes]


def is_nsfw_label(label: ModerationLabel, categories: Sequence[str] = NSFW_CATEGORIES) -> bool:
    name = (label.name or "").lower()
    parent = (label.parent_name or "").lower()
    for category in categories:
        c = category.lower()
        if name and (c in name or name in c):
            return True
        if parent and c in parent:
            return True
    return False


def extract_image_id(source_path: str, index: int) -> str:
    if "/" not in (source_path or ""):
        return f"image-{index}"
    filename = source_path.rsplit("/", 1)[-1]
    return _IMAGE_EXT_RE.sub("", filename) or f"image-{index}"


def _parse_line_delimited(key: str, text: str) -> Tuple[List[Any], int]:
    records: List[Any] = []
    bad = 0
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as e:
            bad += 1
            logger.warning("Skipping malformed line %d in %s: %s (%.100s)", lineno, key, e.msg, line)
    return records, bad


def _parse_document(key: str, text: str) -> List[Any]:
    data = json.loads(text)
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        if isinstance(data.get("Results"), list):
            return data["Results"]
        if "ModerationLabels" in data or ENVELOPE_LABELS_KEY in data:
            return [data]
    logger.warning("Unrecognized result structure in %s (top-level %s)", key, type(data).__name__)
    return []


def parse_result_file(key: str, blob: bytes) -> List[Dict[str, Any]]:
    """
    Decode one result artifact into raw per-image records.
    Never raises: a file that can't be decoded yields [] and a warning.
    """
    try:
        text = blob.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        logger.warning("Result file %s is not valid UTF-8: %s", key, e)
        return []

    if key.lower().endswith(LINE_DELIMITED_SUFFIXES):
        records, bad = _parse_line_delimited(key, text)
        logger.info("Parsed %s: %d records, %d malformed lines", key, len(records), bad)
    else:
        try:
            records = _parse_document(key, text)
        except json.JSONDecodeError as e:
            logger.warning("Result file %s is not valid JSON: %s", key, e)
            return []

    out = []
    for r in records:
        if isinstance(r, dict):
            out.append(r)
        else:
            logger.warning("Skipping non-object record in %s: %.100r", key, r)
    return out


def _unwrap(record: Dict[str, Any], index: int) -> Tuple[str, List[Dict[str, Any]]]:
    envelope = record.get(ENVELOPE_LABELS_KEY)
    if isinstance(envelope, dict):
        labels = envelope.get("ModerationLabels") or []
        source = record.get(ENVELOPE_SOURCE_KEY) or f"image-{index}"
    else:
        labels = record.get("ModerationLabels") or []
        source = record.get("ImagePath") or record.get(ENVELOPE_SOURCE_KEY) or f"image-{index}"
    if not isinstance(labels, list):
        labels = []
    return str(source), [l for l in labels if isinstance(l, dict)]


class ResultNormalizer:
    def __init__(
        self,
        *,
        classifier: Optional[TaxonomyClassifier] = None,
        nsfw_categories: Sequence[str] = NSFW_CATEGORIES,
    ) -> None:
        self.classifier = classifier or TaxonomyClassifier()
        self.nsfw_categories = tuple(nsfw_categories)

    def normalize_record(
        self, record: Dict[str, Any], index: int, threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    ) -> NormalizedModerationResult:
        source, raw_labels = _unwrap(record, index)
        labels = [ModerationLabel.from_raw(l) for l in raw_labels]

        counted = [l for l in labels if l.confidence >= threshold]
        flagged = any(is_nsfw_label(l, self.nsfw_categories) for l in counted)
        max_conf = max((l.confidence for l in labels), default=0.0)

        return NormalizedModerationResult(
            image_id=extract_image_id(source, index),
            source_path=source,
            is_flagged=flagged,
            confidence_score=max_conf / 100.0,
            matched_labels=counted,
            assigned_category=self.classifier.classify(counted) if flagged else None,
            raw=record,
        )

    def normalize_files(
        self, files: Iterable[RawFile], threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    ) -> List[NormalizedModerationResult]:
        """
        files: (object key, raw bytes) pairs pulled from ephemeral storage.
        Positional image ids restart per file, matching the provider's output.
        """
        results: List[NormalizedModerationResult] = []
        for key, blob in files:
            records = parse_result_file(key, blob)
            for i, rec in enumerate(records):
                results.append(self.normalize_record(rec, i, threshold))

        logger.info(
            "Normalized %d results (%d flagged) at threshold %.1f",
            len(results),
            sum(1 for r in results if r.is_flagged),
            threshold,
        )
        return results


def summarize(results: Sequence[NormalizedModerationResult]) -> Dict[str, int]:
    return {
        "total": len(results),
        "flagged": sum(1 for r in results if r.is_flagged),
    }
