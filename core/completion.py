# core/completion.py
from typing import AsyncGenerator, Protocol, Type, TypeVar, runtime_checkable
from pydantic import BaseModel, ValidationError
from util.errors import MalformedProviderOutput
from util.functions import extract_json_object
import json
import logging

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


@runtime_checkable
class CompletionProvider(Protocol):
    """
    Any text-generation backend. Implementations raise ProviderError (or a
    subclass) for every failure; callers never see transport exceptions.
    `stream` is an async generator so callers can aclose() it early.
    """

    async def complete(
        self, prompt: str, *, temperature: float = 0.2, max_tokens: int = 800
    ) -> str: ...

    def stream(
        self, prompt: str, *, temperature: float = 0.2, max_tokens: int = 800
    ) -> AsyncGenerator[str, None]: ...


def parse_structured(raw: str, model_cls: Type[M]) -> M:
    """
    Parse model text into `model_cls`. Accepts a bare object or one wrapped in
    prose/code fences. Raises MalformedProviderOutput on any failure.
    """
    payload = extract_json_object(raw or "")
    if payload is None:
        raise MalformedProviderOutput(
            f"no JSON object in {model_cls.__name__} output"
        )
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise MalformedProviderOutput(f"invalid JSON for {model_cls.__name__}: {e}") from e
    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        raise MalformedProviderOutput(
            f"schema mismatch for {model_cls.__name__}: {e.error_count()} error(s)"
        ) from e


async def complete_json(
    provider: CompletionProvider,
    prompt: str,
    model_cls: Type[M],
    *,
    temperature: float = 0.1,
    max_tokens: int = 600,
) -> M:
    raw = await provider.complete(prompt, temperature=temperature, max_tokens=max_tokens)
    return parse_structured(raw, model_cls)
