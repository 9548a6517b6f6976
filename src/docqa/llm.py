"""Language model capability, LangChain adapter and retry policy."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from loguru import logger

from docqa.config import RetryConfig
from docqa.errors import (
    PermanentServiceError,
    ServiceError,
    ServiceTimeoutError,
    TransientServiceError,
    classify_status,
)

T = TypeVar("T")


class LanguageModel(Protocol):
    """Opaque text-in / text-out capability."""

    async def invoke(
        self,
        system_prompt: str,
        history: list[dict[str, str]],
        user_prompt: str,
        config: dict[str, Any] | None = None,
    ) -> str:
        """Return the model's reply to `user_prompt`."""


class LangChainLanguageModel:
    """Adapts any LangChain chat model to the `LanguageModel` protocol."""

    def __init__(self, chat_model: Any) -> None:
        self.chat_model = chat_model

    async def invoke(
        self,
        system_prompt: str,
        history: list[dict[str, str]],
        user_prompt: str,
        config: dict[str, Any] | None = None,
    ) -> str:
        messages: list[BaseMessage] = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        for turn in history:
            if turn.get("role") == "assistant":
                messages.append(AIMessage(content=turn.get("content", "")))
            else:
                messages.append(HumanMessage(content=turn.get("content", "")))
        messages.append(HumanMessage(content=user_prompt))

        model = self.chat_model.bind(**config) if config else self.chat_model
        try:
            response = await model.ainvoke(messages)
        except ServiceError:
            raise
        except Exception as exc:
            raise _classify_provider_error(exc) from exc
        return _message_text(response)


class ResilientLanguageModel:
    """Wraps a language model with a per-call timeout and transient-error retries."""

    def __init__(
        self,
        inner: LanguageModel,
        *,
        timeout_seconds: float = 60.0,
        retry: RetryConfig | None = None,
    ) -> None:
        self.inner = inner
        self.timeout_seconds = timeout_seconds
        self.retry = retry or RetryConfig()

    async def invoke(
        self,
        system_prompt: str,
        history: list[dict[str, str]],
        user_prompt: str,
        config: dict[str, Any] | None = None,
    ) -> str:
        async def _call() -> str:
            return await with_timeout(
                self.inner.invoke(system_prompt, history, user_prompt, config),
                self.timeout_seconds,
                "language model call",
            )

        return await retry_async(_call, self.retry, description="language model call")


async def with_timeout(awaitable: Awaitable[T], seconds: float, what: str) -> T:
    """Await with a deadline, raising `ServiceTimeoutError` when it passes."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise ServiceTimeoutError(f"{what} timed out after {seconds:.1f}s") from exc


async def retry_async(
    func: Callable[[], Awaitable[T]],
    retry: RetryConfig,
    *,
    description: str = "call",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run `func`, retrying only transient failures with capped exponential backoff."""
    attempt = 0
    while True:
        try:
            return await func()
        except PermanentServiceError:
            raise
        except TransientServiceError as exc:
            attempt += 1
            if attempt >= retry.max_attempts:
                logger.warning(f"{description} failed after {attempt} attempts: {exc}")
                raise
            delay = min(retry.max_delay_seconds, retry.base_delay_seconds * 2 ** (attempt - 1))
            logger.warning(
                f"{description} failed ({exc}), retry {attempt}/{retry.max_attempts - 1} "
                f"in {delay:.2f}s"
            )
            await sleep(delay)


def _classify_provider_error(exc: Exception) -> ServiceError:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ServiceTimeoutError(str(exc) or "provider timeout")
    error_cls = classify_status(status if isinstance(status, int) else None)
    return error_cls(f"{type(exc).__name__}: {exc}", status_code=status)


def _message_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return " ".join(parts).strip()
    return str(content)
