from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Any, Dict, Iterator, List, Optional, Tuple

import google.generativeai as genai

from .config import API_KEY_ENV, Settings
from .conversation import decode_inline_data
from .errors import ConfigurationError, ConversationError, NumidChatError, UpstreamError

logger = logging.getLogger("numid.gemini")

MODEL_CACHE_SIZE = 16


class ChatStream:
    """Incremental reply: iterate for text fragments, then read `final_text()`."""

    def __init__(self, response: Any) -> None:
        self._response = response

    def __iter__(self) -> Iterator[str]:
        try:
            for chunk in self._response:
                text = _response_text(chunk)
                if text:
                    yield text
        except NumidChatError:
            raise
        except Exception as exc:
            raise _upstream_error(exc) from exc

    def final_text(self) -> str:
        """Full text as reported by the provider once the stream is exhausted."""
        try:
            return _response_text(self._response)
        except Exception as exc:
            raise _upstream_error(exc) from exc


class GeminiClient:
    """Thin wrapper around the Gemini SDK with per-model/system-prompt caching."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK and initialize the model cache.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures the SDK's global API key.
        Failure Modes: Raises ConfigurationError if the API key is missing.
        Testing Notes: Validate a missing key raises and models are cached per name/prompt.
        """
        if not settings.gemini_api_key:
            raise ConfigurationError(f"Missing {API_KEY_ENV}")
        genai.configure(api_key=settings.gemini_api_key)
        self._settings = settings
        self._default_model = _normalize_model_name(settings.default_model)
        self._models: "OrderedDict[Tuple[str, Optional[str]], genai.GenerativeModel]" = OrderedDict()
        self._lock = threading.Lock()

    def _model(self, model: Optional[str], system_instruction: Optional[str]) -> genai.GenerativeModel:
        # Reuse a cached instance for the same name and prompt; least recently used goes first.
        model_name = _normalize_model_name(model) if model else self._default_model
        if not model_name:
            raise ConversationError("Gemini model name is required")
        key = (model_name, system_instruction)
        with self._lock:
            if key in self._models:
                self._models.move_to_end(key)
                return self._models[key]
            genmodel = genai.GenerativeModel(model_name, system_instruction=system_instruction)
            self._models[key] = genmodel
            while len(self._models) > MODEL_CACHE_SIZE:
                self._models.popitem(last=False)
            return genmodel

    def generate_text(
        self,
        prompt: str,
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
    ) -> str:
        """Single-shot generation from a plain prompt; returns stripped text."""
        return self.generate_content([prompt], model=model, system_instruction=system_instruction).strip()

    def generate_content(
        self,
        contents: List[Any],
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
    ) -> str:
        """Purpose: Generate a response from a list of parts (text and inline data).
        Inputs/Outputs: Input is a list of strings or part dicts; returns the reply text.
        Failure Modes: Provider failures raise UpstreamError.
        """
        genmodel = self._model(model, system_instruction)
        logger.debug("generate_content model=%s parts=%d", genmodel.model_name, len(contents))
        try:
            response = genmodel.generate_content(_to_sdk_parts(contents))
            return _response_text(response)
        except NumidChatError:
            raise
        except Exception as exc:
            raise _upstream_error(exc) from exc

    def send_chat(
        self,
        history: List[Dict[str, Any]],
        user_parts: List[Dict[str, Any]],
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
    ) -> str:
        """Purpose: Send the final user turn on top of history and wait for the full reply.
        Inputs/Outputs: Gemini-shaped history and parts; returns the reply text.
        Failure Modes: Provider failures raise UpstreamError; nothing is retried.
        """
        genmodel = self._model(model, system_instruction)
        logger.debug("send_chat model=%s history=%d", genmodel.model_name, len(history))
        try:
            chat = genmodel.start_chat(history=_to_sdk_history(history))
            response = chat.send_message(_to_sdk_parts(user_parts))
            return _response_text(response)
        except NumidChatError:
            raise
        except Exception as exc:
            raise _upstream_error(exc) from exc

    def stream_chat(
        self,
        history: List[Dict[str, Any]],
        user_parts: List[Dict[str, Any]],
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
    ) -> ChatStream:
        """Like send_chat, but returns a ChatStream yielding fragments as they arrive."""
        genmodel = self._model(model, system_instruction)
        logger.debug("stream_chat model=%s history=%d", genmodel.model_name, len(history))
        try:
            chat = genmodel.start_chat(history=_to_sdk_history(history))
            response = chat.send_message(_to_sdk_parts(user_parts), stream=True)
        except NumidChatError:
            raise
        except Exception as exc:
            raise _upstream_error(exc) from exc
        return ChatStream(response)


def _response_text(response: Any) -> str:
    # `.text` raises ValueError when a candidate carries no text parts.
    try:
        text: Optional[str] = response.text
    except ValueError:
        return ""
    return text or ""


def _upstream_error(exc: Exception) -> UpstreamError:
    message = str(exc) or exc.__class__.__name__
    logger.warning("upstream failure: %s", message)
    return UpstreamError(message)


def _to_sdk_parts(parts: List[Any]) -> List[Any]:
    """Decode base64 inline data into bytes so the SDK sends it verbatim."""
    converted: List[Any] = []
    for part in parts:
        if isinstance(part, dict) and "inline_data" in part:
            inline = part["inline_data"]
            data = inline.get("data", b"")
            if isinstance(data, str):
                data = decode_inline_data(data)
            converted.append({"inline_data": {"mime_type": inline.get("mime_type"), "data": data}})
        else:
            converted.append(part)
    return converted


def _to_sdk_history(history: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{"role": entry["role"], "parts": _to_sdk_parts(entry.get("parts", []))} for entry in history]


def _normalize_model_name(name: Optional[str]) -> str:
    """Strip a `models/` prefix and whitespace; falsy input gives an empty string."""
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
