# config/settings.py
import os
import sys
from typing import Optional
from dotenv import load_dotenv
from pydantic import ValidationError, Field, field_validator
from pydantic_settings import BaseSettings
from util.enums import Environment
import logging


if os.getenv("APP_ENV", Environment.DEV) == Environment.DEV:
    load_dotenv()

_log = logging.getLogger("config.settings")


class Settings(BaseSettings):
    # App
    APP_ENV: str = Field(..., validation_alias="APP_ENV")
    REDIS_URL: str = Field(..., validation_alias="REDIS_URL")

    # CORS & Limits
    ALLOWED_ORIGIN: str = Field(..., validation_alias="ALLOWED_ORIGIN")
    RATE_LIMIT_TIMES: int = Field(..., validation_alias="RATE_LIMIT_TIMES")
    RATE_LIMIT_SECONDS: int = Field(..., validation_alias="RATE_LIMIT_SECONDS")
    TRUST_PROXY: bool = Field(default=False, validation_alias="TRUST_PROXY")

    # Identity provider (bearer token -> account lookup)
    IDENTITY_ENDPOINT: str = Field(
        default="https://cloud.appwrite.io/v1", validation_alias="IDENTITY_ENDPOINT"
    )
    IDENTITY_PROJECT_ID: str = Field(..., validation_alias="IDENTITY_PROJECT_ID")

    # Anthropic Settings
    ANTHROPIC_API_URL: str = Field(..., validation_alias="ANTHROPIC_API_URL")
    ANTHROPIC_API_KEY: str = Field(..., validation_alias="ANTHROPIC_API_KEY")
    ANTHROPIC_MODEL: str = Field(..., validation_alias="ANTHROPIC_MODEL")
    ANTHROPIC_VERSION: str = Field(
        default="2023-06-01", validation_alias="ANTHROPIC_VERSION"
    )
    COMPLETION_TIMEOUT_SECONDS: float = Field(
        default=45.0, validation_alias="COMPLETION_TIMEOUT_SECONDS"
    )

    # Embedding Engine
    ENABLE_EMBEDDINGS: bool = Field(default=True, validation_alias="ENABLE_EMBEDDINGS")
    EMBEDDING_MODEL_NAME: str = "sentence-transformers/all-MiniLM-L6-v2"
    EMBEDDING_DIMENSION: int = Field(default=384, validation_alias="EMBEDDING_DIMENSION")

    # Retrieval
    RAG_TOP_K: int = Field(default=10, validation_alias="RAG_TOP_K")
    SELECT_SNIPPET_CHARS: int = 300
    CONTEXT_SNIPPET_CHARS: int = 400
    MAX_SOURCES: int = 3
    MAX_NARRATION_STEPS: int = 6

    # Narration retry
    NARRATION_MAX_ATTEMPTS: int = Field(
        default=3, validation_alias="NARRATION_MAX_ATTEMPTS"
    )
    NARRATION_BASE_DELAY_MS: int = Field(
        default=1200, validation_alias="NARRATION_BASE_DELAY_MS"
    )
    NARRATION_MAX_JITTER_MS: int = Field(
        default=500, validation_alias="NARRATION_MAX_JITTER_MS"
    )

    # Reference corpus
    CORPUS_DATASET_PATH: str = Field(
        default="dataset/en_product4.xml", validation_alias="CORPUS_DATASET_PATH"
    )
    CORPUS_LIMIT: Optional[int] = Field(default=None, validation_alias="CORPUS_LIMIT")
    CORPUS_LOAD_ON_STARTUP: bool = Field(
        default=True, validation_alias="CORPUS_LOAD_ON_STARTUP"
    )
    CORPUS_BATCH_SIZE: int = 50
    PERSIST_DOCUMENTS: bool = Field(default=True, validation_alias="PERSIST_DOCUMENTS")

    # Logging knobs
    LOGGER_NAME: str = "symptom-rag"
    LOG_LEVEL: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    LOG_TO_FILE: bool = Field(default=False, validation_alias="LOG_TO_FILE")
    LOG_DIR: str = Field(default="logs", validation_alias="LOG_DIR")
    LOG_FILE_NAME: str = Field(default="app.log", validation_alias="LOG_FILE_NAME")
    LOG_MAX_BYTES: int = Field(
        default=50 * 1024 * 1024, validation_alias="LOG_MAX_BYTES"
    )
    LOG_BACKUP_COUNT: int = Field(default=5, validation_alias="LOG_BACKUP_COUNT")

    # Prompts
    NORMALIZE_PROMPT: str = (
        "You are a clinical terminology assistant. "
        "Extract and normalize the patient's described symptoms into precise clinical terms "
        "that are optimal for embedding-based similarity search against a rare disease database.\n\n"
        "Return ONLY strict JSON with this exact schema:\n"
        '{"clinical_query": "concise clinical description for embedding", "key_symptoms": ["symptom1", "symptom2"]}\n\n'
        "Rules:\n"
        "- clinical_query: 1-3 sentences using medical terminology (e.g. 'proximal muscle weakness' not 'arms are weak')\n"
        "- key_symptoms: 3-7 individual normalized symptoms as strings\n"
        "- No markdown, no explanation, output JSON only.\n\n"
        "Patient description:\n"
    )

    SELECT_PROMPT: str = (
        "You are a rare disease diagnostic assistant. "
        "A patient described their symptoms and we retrieved {count} candidate conditions from a vector database.\n\n"
        "Patient description:\n{message}\n\n"
        "Candidates (0-indexed):\n{candidates}\n\n"
        "Pick the single best matching condition for this patient.\n"
        "Return ONLY strict JSON:\n"
        '{{"selected_index": <integer 0 to {last}>, "reasoning": "one sentence why"}}\n'
        "No markdown, no explanation. JSON only."
    )

    NARRATION_PROMPT: str = (
        "You are a medical assistant. Return ONLY strict JSON with this schema:\n"
        '{"thinking_steps": ["short step", "short step"]}\n'
        "Use 3-6 concise UI-friendly steps, no hidden chain-of-thought.\n\n"
    )

    ANSWER_PROMPT: str = (
        "You are a medical assistant. The pipeline has already selected the best matching "
        "rare disease from a vector database. Use the SELECTED BEST MATCH to formulate your answer.\n\n"
        "If no match was found, say you cannot identify a likely condition and provide general next steps.\n\n"
        "Output format (use these exact headers):\n"
        "Most likely condition: <single condition name> (Orpha code if available)\n"
        "Reasons:\n- <reason>\n- <reason>\n"
        "Next steps:\n- <action>\n- <action>\n"
        "Disclaimer: This is not a medical diagnosis. Please consult a qualified physician.\n\n"
        "Do not list multiple conditions. Be concise.\n\n"
    )

    @field_validator("RAG_TOP_K")
    @classmethod
    def _clamp_top_k(cls, v: int) -> int:
        return max(5, min(10, int(v)))


try:
    settings = Settings()
except ValidationError as e:
    print("❌ Missing/invalid environment variables:", file=sys.stderr)
    for err in e.errors():
        loc = ".".join(str(x) for x in err.get("loc", []))
        msg = err.get("msg", "")
        print(f" - {loc}: {msg}", file=sys.stderr)
    sys.exit(1)
except Exception as e:
    print(f"❌ Settings initialization failed: {e}", file=sys.stderr)
    sys.exit(1)
