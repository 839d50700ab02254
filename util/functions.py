# util/functions.py
from typing import Optional


def clip_chars(text: str, max_chars: int = 400) -> str:
    """
    - Trim 'text' to at most `max_chars` characters.
    - No ellipsis; snippets are fed back to the model verbatim.
    """
    if max_chars <= 0:
        return ""
    return text[:max_chars]


def extract_json_object(text: str) -> Optional[str]:
    """
    Return the substring spanning the first '{' through the last '}', or None.
    Tolerates code fences and chatter around a single JSON object.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    return text[start : end + 1]


def preview(text: str, max_chars: int = 50) -> str:
    # Single-line preview for log lines; never logs the full patient message.
    return " ".join(text.split())[:max_chars]
