# util/constants.py
from typing import Final


class InternalURIs:
    CHAT = "/chat"
    HEALTH = "/healthz"
    API = "/api"
    V1 = API + "/v1"
    INSPECT_VECTORS = V1 + "/inspect"
    STATS = V1 + "/stats"


class SourceType:
    REFERENCE_CORPUS: Final[str] = "orphadata"
    USER_FILE: Final[str] = "user_file"


class ThinkingSteps:
    ACKNOWLEDGE: Final[str] = "Analyzing symptoms..."
    NORMALIZE: Final[str] = "Normalizing to clinical terminology..."
    EMBED: Final[str] = "Generating semantic embedding..."
    EMBED_FAILED: Final[str] = "Embedding failed, proceeding without vector context..."
    SEARCH: Final[str] = "Searching medical knowledge base..."


FALLBACK_ANSWER: Final[str] = (
    "I couldn't generate a response right now. Please try again."
)
