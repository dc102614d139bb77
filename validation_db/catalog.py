"""
Catalog loading: read slice files in their various historical formats and
normalize them into records for ``SliceStore.bulk_replace``.

Accepted inputs:
- ``{"slices": [...]}`` or a bare list of slices
- a content file plus an assessments file (``{"assessments": [...]}``)
  merged by id, the assessment supplying ``hybrid_predictions``
"""

import json
import random
from pathlib import Path
from typing import Optional

DEFAULT_ID_PREFIX = "validation_"
NO_CONTEXT_MARKER = "None (start of recorded conversation)"


def parse_text_into_turns(text: str) -> list[dict]:
    """Split ``Speaker: utterance`` blocks separated by blank lines into turns."""
    turns = []
    for block in text.split("\n\n"):
        speaker, sep, utterance = block.partition(":")
        if sep and speaker.strip():
            turns.append({"speaker": speaker.strip(), "text": utterance.strip()})
    return turns


def normalize_slice(raw: dict, index: int, id_prefix: str = DEFAULT_ID_PREFIX) -> dict:
    """Turn one raw slice (0-based position ``index`` in its file) into a catalog record."""
    raw_id = raw.get("id")
    if raw_id is None or raw_id == "":
        raw_id = str(index + 1).zfill(2)

    context = raw.get("context")
    if not context and raw.get("text"):
        context = raw["text"]
    if context == NO_CONTEXT_MARKER:
        context = None

    if raw.get("focus_turn"):
        focus_turns = [raw["focus_turn"]]
    elif isinstance(raw.get("focus_turns"), list):
        focus_turns = raw["focus_turns"]
    elif isinstance(raw.get("turns"), list):
        focus_turns = raw["turns"]
    else:
        focus_turns = parse_text_into_turns(raw.get("text") or "")

    hybrid_predictions = raw.get("hybrid_predictions") or {}
    if raw.get("model_predictions"):
        hybrid_predictions = raw["model_predictions"]

    return {
        "id": f"{id_prefix}{raw_id}",
        "conversation_id": raw.get("conversation_id") or f"conv_{index // 3 + 1}",
        "context": context,
        "focus_turns": focus_turns,
        "hybrid_predictions": hybrid_predictions,
    }


def normalize_slices(raw_slices: list[dict], id_prefix: str = DEFAULT_ID_PREFIX) -> list[dict]:
    """Normalize a list of raw slices, rejecting duplicate ids."""
    records = [normalize_slice(raw, i, id_prefix) for i, raw in enumerate(raw_slices)]
    seen = set()
    for record in records:
        if record["id"] in seen:
            raise ValueError(f"Duplicate slice id: {record['id']}")
        seen.add(record["id"])
    return records


def load_slices_from_file(filepath: Path) -> list[dict]:
    """Load raw slices from a JSON file holding ``{"slices": [...]}`` or a list."""
    with open(filepath) as f:
        data = json.load(f)
    if isinstance(data, dict) and isinstance(data.get("slices"), list):
        return data["slices"]
    if isinstance(data, list):
        return data
    raise ValueError(f"{filepath}: expected a list of slices or an object with 'slices'")


def merge_assessments(content: list[dict], assessments_path: Path) -> list[dict]:
    """Attach ``hybrid_predictions`` from an assessments file to content slices by id."""
    with open(assessments_path) as f:
        data = json.load(f)
    by_id = {a.get("id"): a for a in data.get("assessments", [])}
    merged = []
    for slice_ in content:
        assessment = by_id.get(slice_.get("id"))
        merged.append({
            **slice_,
            "hybrid_predictions": assessment.get("hybrid_predictions", {}) if assessment else {},
        })
    return merged


def create_sample_slices(count: int = 40, rng: Optional[random.Random] = None) -> list[dict]:
    """Generate placeholder slices for trying the platform without real data."""
    rng = rng or random.Random()
    kinds = {0: "agreeing", 1: "disagreeing", 2: "explaining"}
    samples = []
    for i in range(1, count + 1):
        first, second = ("A", "B") if i % 2 == 0 else ("B", "A")
        kind = kinds[i % 3]
        samples.append({
            "id": i,
            "conversation_id": f"sample_conversation_{(i + 2) // 3}",
            "context": f"Context for slice {i}...",
            "focus_turns": [
                {"speaker": first, "text": f"Sample turn from speaker {first} in slice {i}", "turn": i},
                {"speaker": second, "text": f"Sample response from speaker {second} in slice {i}", "turn": i + 1},
            ],
            "hybrid_predictions": {
                "interaction_types": [
                    {"type": kind, "confidence": round(0.7 + rng.random() * 0.3, 3), "source": "pattern"}
                ],
                "curiosity_types": [
                    {"type": "questioning", "confidence": round(0.7 + rng.random() * 0.3, 3), "source": "pattern"}
                ],
                "routing_reason": "ambiguous_patterns" if i % 5 == 0 else "high_confidence_pattern",
            },
        })
    return samples
