"""Completion providers: turn a message history into a reply or a title."""

import base64
import binascii
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import google.generativeai as genai
import structlog
from google.api_core import exceptions

from ..domain.errors import ProviderError
from ..domain.models import Message, Role

logger = structlog.get_logger()

TITLE_INSTRUCTION = (
    "Generate a short, descriptive title (5 words or fewer, no quotation marks) "
    "for the following conversation snippet:\n\n"
)

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)


class CompletionProvider(ABC):
    """Opaque generate/summarize capability used by the conversation core."""

    @abstractmethod
    async def generate(self, history: Sequence[Message]) -> str:
        """Generate the assistant reply to an ordered history."""
        pass

    @abstractmethod
    async def summarize_title(self, text: str) -> str:
        """Produce a short title for a conversation snippet."""
        pass


def image_part(image_url: str) -> Dict[str, Any]:
    """Convert an attached image reference into a Gemini content part."""
    match = _DATA_URL.match(image_url)
    if match is None:
        return {"text": f"Attached image: {image_url}"}
    try:
        data = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError):
        logger.warning("image_decode_failed", mime_type=match.group("mime"))
        return {"text": "Attached image could not be decoded."}
    return {"inline_data": {"mime_type": match.group("mime"), "data": data}}


def format_history(history: Sequence[Message]) -> List[Dict[str, Any]]:
    """Convert internal messages into Gemini `contents`.

    Gemini calls the assistant side "model". Loading placeholders are never
    sent. Images travel as extra parts before the text of their message.
    """
    contents = []
    for message in history:
        if message.is_loading:
            continue
        parts: List[Dict[str, Any]] = []
        if message.image_url and message.role == Role.USER:
            parts.append(image_part(message.image_url))
        if message.content or not parts:
            parts.append({"text": message.content})
        role = "model" if message.role == Role.ASSISTANT else "user"
        contents.append({"role": role, "parts": parts})
    return contents


class GeminiCompletionProvider(CompletionProvider):
    """Completion provider backed by Google's Gemini models."""

    def __init__(
        self,
        api_key: str,
        model_name: str = "gemini-1.5-flash",
        system_prompt: Optional[str] = None,
        temperature: float = 0.5,
    ) -> None:
        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(model_name, system_instruction=system_prompt)
        self.title_model = genai.GenerativeModel(model_name)
        self.generation_config = genai.GenerationConfig(temperature=temperature)
        logger.info("llm_service_init", model=model_name, has_key=bool(api_key))

    async def _call(self, model: Any, contents: Any) -> str:
        try:
            response = await model.generate_content_async(
                contents, generation_config=self.generation_config
            )
            text = response.text
        except exceptions.ResourceExhausted as e:
            logger.warning("gemini_quota_exhausted", error=str(e))
            raise ProviderError("The model is rate limited, try again shortly.", ProviderError.RATE_LIMIT) from e
        except (exceptions.PermissionDenied, exceptions.Unauthenticated) as e:
            logger.error("gemini_auth_error", error=str(e))
            raise ProviderError("The model rejected the API key.", ProviderError.AUTH) from e
        except exceptions.GoogleAPIError as e:
            logger.error("gemini_request_error", error=str(e))
            raise ProviderError(f"The model request failed: {e}", ProviderError.NETWORK) from e
        except ValueError as e:
            # Raised by `response.text` when the candidate was blocked.
            logger.warning("gemini_response_blocked", error=str(e))
            raise ProviderError("The response was blocked by the content filter.", ProviderError.CONTENT_FILTER) from e
        if not text or not text.strip():
            raise ProviderError("The model returned an empty response.", ProviderError.CONTENT_FILTER)
        return text

    async def generate(self, history: Sequence[Message]) -> str:
        contents = format_history(history)
        if not contents:
            raise ProviderError("Nothing to respond to.")
        return await self._call(self.model, contents)

    async def summarize_title(self, text: str) -> str:
        return (await self._call(self.title_model, TITLE_INSTRUCTION + text)).strip()
