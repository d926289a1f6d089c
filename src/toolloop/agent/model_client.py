"""
Model client interface for toolloop.

This module is the only place that *directly* calls an LLM.  Everything else (loop, codec, tools)
stays model-agnostic.

We support three back-ends out of the box:

1. **OpenRouter** (or any OpenAI-compatible endpoint) via plain ``httpx``.
2. **OpenAI** via the official SDK.
3. **Anthropic** via the official SDK.

Additional providers can be added by subclassing :class:`ModelClient` and registering via
:func:`register_model_client`.  Clients never retry: a failed call raises
:class:`ModelCallError` and the caller decides whether to run the whole request again.
"""

import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Type,
)

import httpx

from toolloop.config import settings
from toolloop.core.schema import (
    Message,
    Role,
    ToolDescriptor,
)

logger = logging.getLogger(__name__)


class ModelCallError(RuntimeError):
    """Transport, provider or timeout failure while talking to the model."""


class ModelCallTimeout(ModelCallError):
    """The model did not answer within the configured timeout."""


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_CLIENT_REGISTRY: dict[str, Type["ModelClient"]] = {}


def register_model_client(name: str) -> Callable:
    """Decorator to register a model client class under *name*."""

    def wrapper(cls: Type["ModelClient"]) -> Type["ModelClient"]:
        _CLIENT_REGISTRY[name] = cls
        return cls

    return wrapper


def load_model_client(name: str | None = None) -> "ModelClient":
    """
    Factory that returns an instantiated model client.

    Fallback order:
    1. *name* arg
    2. ``settings.MODEL_CLIENT`` env option
    """

    target = name or settings.MODEL_CLIENT
    cls = _CLIENT_REGISTRY.get(target.lower())
    if cls is None:
        raise ValueError(f"Model client '{target}' is not registered.")
    return cls()


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class ModelClient(ABC):
    """Abstract client that turns a conversation into one text reply."""

    @abstractmethod
    def complete(
        self, messages: Sequence[Message], tool_descriptions: Sequence[ToolDescriptor]
    ) -> str:
        """
        Send *messages* to the model and return its reply.

        *tool_descriptions* are passed through for providers that want them; the prompt built by
        :class:`~toolloop.agent.prompts.PromptBuilder` already lists every tool, so the bundled
        clients only log them.

        Raises
        ------
        ModelCallError
            On any transport or provider failure, or an empty reply.
        """


def _to_chat_messages(messages: Sequence[Message]) -> List[Dict[str, str]]:
    return [{"role": m.role.value, "content": m.content} for m in messages]


# ---------------------------------------------------------------------------
# Concrete clients
# ---------------------------------------------------------------------------
@register_model_client("openrouter")
class OpenRouterClient(ModelClient):
    """OpenRouter chat-completions client built on httpx."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key or settings.OPENROUTER_API_KEY
        self.model = model or settings.OPENROUTER_MODEL
        self.base_url = base_url or settings.OPENROUTER_BASE_URL
        self.temperature = settings.TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or settings.MAX_TOKENS
        self.timeout = timeout or settings.MODEL_TIMEOUT
        self._transport = transport

    def complete(
        self, messages: Sequence[Message], tool_descriptions: Sequence[ToolDescriptor]
    ) -> str:
        """Call the chat-completions endpoint and return the first choice's content."""
        logger.debug(
            "OpenRouter request: %d messages, %d tools", len(messages), len(tool_descriptions)
        )
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": _to_chat_messages(messages),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            with httpx.Client(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                resp = client.post("/chat/completions", json=payload, headers=headers)
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException as e:
            logger.error("OpenRouter request timed out: %s", str(e))
            raise ModelCallTimeout(f"OpenRouter request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            logger.error("OpenRouter returned HTTP %d", e.response.status_code)
            raise ModelCallError(
                f"OpenRouter returned HTTP {e.response.status_code}: {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            logger.error("OpenRouter request error: %s", str(e))
            raise ModelCallError(f"Error calling OpenRouter: {e}") from e
        except ValueError as e:
            raise ModelCallError(f"OpenRouter returned invalid JSON: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ModelCallError(f"Unexpected OpenRouter response shape: {data!r}") from e
        if not content:
            logger.error("OpenRouter returned empty response")
            raise ModelCallError("Empty response from OpenRouter")

        logger.debug("OpenRouter response: %s", content)
        return str(content)


@register_model_client("openai")
class OpenAIClient(ModelClient):
    """OpenAI chat-completions client."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
        json_mode: bool = True,
    ) -> None:
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_MODEL
        self.temperature = settings.TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or settings.MAX_TOKENS
        self.timeout = timeout or settings.MODEL_TIMEOUT
        self.json_mode = json_mode

    def complete(
        self, messages: Sequence[Message], tool_descriptions: Sequence[ToolDescriptor]
    ) -> str:
        import openai  # pylint: disable=import-outside-toplevel

        logger.debug("OpenAI request: %d messages, %d tools", len(messages), len(tool_descriptions))
        client = openai.OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        extra: Dict[str, Any] = {}
        if self.json_mode:
            extra["response_format"] = {"type": "json_object"}

        try:
            resp = client.chat.completions.create(
                model=self.model,
                messages=_to_chat_messages(messages),  # type: ignore[arg-type]
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                **extra,
            )
        except openai.APITimeoutError as e:
            logger.error("OpenAI request timed out: %s", str(e))
            raise ModelCallTimeout(f"OpenAI request timed out: {e}") from e
        except openai.OpenAIError as e:
            logger.error("OpenAI client error: %s", str(e))
            raise ModelCallError(f"Error calling OpenAI: {e}") from e

        content = resp.choices[0].message.content if resp.choices else None
        if not content:
            logger.error("OpenAI returned empty response")
            raise ModelCallError("Empty response from OpenAI")

        logger.debug("OpenAI response: %s", content)
        return content


@register_model_client("anthropic")
class AnthropicClient(ModelClient):
    """Anthropic Claude client.  System messages become the ``system`` parameter."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self.api_key = api_key or settings.ANTHROPIC_API_KEY
        self.model = model or settings.ANTHROPIC_MODEL
        self.temperature = settings.TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or settings.MAX_TOKENS
        self.timeout = timeout or settings.MODEL_TIMEOUT

    def complete(
        self, messages: Sequence[Message], tool_descriptions: Sequence[ToolDescriptor]
    ) -> str:
        import anthropic  # pylint: disable=import-outside-toplevel

        logger.debug(
            "Anthropic request: %d messages, %d tools", len(messages), len(tool_descriptions)
        )
        system_prompt = "\n\n".join(m.content for m in messages if m.role is Role.SYSTEM)
        chat = [m for m in _to_chat_messages(messages) if m["role"] != Role.SYSTEM.value]
        client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout, max_retries=0)

        extra: Dict[str, Any] = {}
        if system_prompt:
            extra["system"] = system_prompt

        try:
            response = client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=chat,  # type: ignore[arg-type]
                temperature=self.temperature,
                **extra,
            )
        except anthropic.APITimeoutError as e:
            logger.error("Anthropic request timed out: %s", str(e))
            raise ModelCallTimeout(f"Anthropic request timed out: {e}") from e
        except anthropic.AnthropicError as e:
            logger.error("Anthropic client error: %s", str(e))
            raise ModelCallError(f"Error calling Anthropic: {e}") from e

        # Handle different content block types from Anthropic API
        content = "".join(
            getattr(block, "text", "") for block in response.content if block.type == "text"
        )
        if not content:
            logger.error("Anthropic returned empty response")
            raise ModelCallError("Empty response from Anthropic")

        logger.debug("Anthropic response: %s", content)
        return content


def available_model_clients() -> List[str]:
    """Names accepted by :func:`load_model_client`."""
    return sorted(_CLIENT_REGISTRY)


def describe_client(client: Optional[ModelClient]) -> str:
    """Short label for log lines."""
    if client is None:
        return "<none>"
    model = getattr(client, "model", None)
    return f"{type(client).__name__}({model})" if model else type(client).__name__
