# core/prompts.py
from typing import List, Optional, Sequence, Tuple
from config.settings import settings
from core.entities import DocumentMetadata, SearchHit
from model.pipeline import NormalizedQuery
from util.constants import SourceType
from util.functions import clip_chars

_DISEASE_PREFIX = "Disease:"
_ORPHA_MARK = "(Orpha:"


def parse_condition_from_text(text: str) -> Optional[Tuple[str, Optional[str]]]:
    """
    Read "Disease: <name> (Orpha: <code>)" from the first line of a corpus
    document. Returns (name, code) or None when the line is not in that shape.
    """
    lines = text.splitlines()
    if not lines:
        return None
    first = lines[0].strip()
    if not first.startswith(_DISEASE_PREFIX):
        return None
    rest = first[len(_DISEASE_PREFIX) :].strip()
    if not rest:
        return None
    idx = rest.find(_ORPHA_MARK)
    if idx < 0:
        return rest, None
    name = rest[:idx].strip()
    if not name:
        return None
    code = rest[idx + len(_ORPHA_MARK) :].split(")")[0].strip()
    return name, code or None


def source_label(meta: DocumentMetadata) -> str:
    if meta.source_type in (SourceType.REFERENCE_CORPUS, "orphanet"):
        return f"Orphanet: {meta.source_id}"
    if meta.source_type == "pdf":
        return f"PDF: {meta.source_id}"
    if meta.source_type == "image":
        return f"Image: {meta.source_id}"
    if meta.source_type == SourceType.USER_FILE and meta.file_name:
        return f"File: {meta.file_name}"
    return meta.source_id


def _condition_label(hit: SearchHit) -> str:
    parsed = parse_condition_from_text(hit.text)
    if parsed:
        return parsed[0]
    if hit.metadata.orpha_code:
        return f"Orpha {hit.metadata.orpha_code}"
    return "Unknown"


def build_rag_context(hits: Sequence[SearchHit], snippet_chars: int) -> str:
    """Numbered, source-labelled excerpts of every hit; "" when there are none."""
    blocks: List[str] = []
    for i, h in enumerate(hits, start=1):
        blocks.append(
            f"[{i}] Source: {source_label(h.metadata)} (Relevance: {h.similarity:.2f})\n"
            f"{clip_chars(h.text, snippet_chars)}"
        )
    return "\n\n".join(blocks)


def build_normalize_prompt(message: str) -> str:
    return f"{settings.NORMALIZE_PROMPT}{message}"


def build_select_prompt(message: str, hits: Sequence[SearchHit], snippet_chars: int) -> str:
    candidates = "\n\n".join(
        f"[{i}] {_condition_label(h)} (Orpha: {h.metadata.orpha_code or '?'}) "
        f"- similarity {h.similarity:.2f}\n{clip_chars(h.text, snippet_chars)}"
        for i, h in enumerate(hits)
    )
    return settings.SELECT_PROMPT.format(
        count=len(hits),
        message=message,
        candidates=candidates,
        last=max(0, len(hits) - 1),
    )


def build_enhanced_prompt(
    message: str,
    normalized: NormalizedQuery,
    hits: Sequence[SearchHit],
    selected: Optional[SearchHit],
    snippet_chars: int,
) -> str:
    """
    Context block shared by narration and answer calls: the selected best
    match (if any) first, then every candidate, the raw query and the
    normalized clinical terms.
    """
    terms = ", ".join(normalized.key_symptoms)
    if selected is None:
        return (
            f"PATIENT QUERY:\n{message}\n\n"
            "No matching conditions found in the knowledge base.\n"
            f"KEY CLINICAL TERMS:\n{terms}"
        )
    parsed = parse_condition_from_text(selected.text)
    label = parsed[0] if parsed else "unknown condition"
    code = selected.metadata.orpha_code or (parsed[1] if parsed else None) or "unknown"
    return (
        f"SELECTED BEST MATCH (chosen from top {len(hits)} vector results):\n"
        f"Condition: {label} (Orpha: {code})\n"
        f"Similarity: {selected.similarity:.2f}\n"
        f"Context:\n{selected.text}\n\n"
        f"ALL CANDIDATES CONTEXT:\n{build_rag_context(hits, snippet_chars)}\n\n"
        f"PATIENT QUERY:\n{message}\n\n"
        f"KEY CLINICAL TERMS:\n{terms}"
    )


def build_narration_prompt(context_prompt: str, message: str) -> str:
    return f"{settings.NARRATION_PROMPT}Context:\n{context_prompt}\n\nUser message:\n{message}"


def build_answer_prompt(context_prompt: str, message: str) -> str:
    return f"{settings.ANSWER_PROMPT}{context_prompt}\n\nUser message:\n{message}"
