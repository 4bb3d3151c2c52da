import asyncio
from typing import Optional

import httpx

from kommo_bridge.services.assistant.base import AssistantBackend, AssistantReply
from kommo_bridge.services.assistant.chat import ChatCompletionsAssistant
from kommo_bridge.services.assistant.fallback import FallbackAssistant
from kommo_bridge.services.assistant.reply_api import ReplyApiAssistant
from kommo_bridge.services.assistant.threads import ThreadsAssistant
from kommo_bridge.services.retry import RetryPolicy, SleepFunc


def _reply_api(settings, transport, sleep_func) -> Optional[AssistantBackend]:
    if not settings.assistant_base_url:
        return None
    return ReplyApiAssistant(
        settings.assistant_base_url,
        api_key=settings.assistant_api_key,
        timeout_seconds=settings.assistant_timeout_seconds,
        policy=RetryPolicy.from_settings(settings),
        transport=transport,
        sleep_func=sleep_func,
    )


def _threads(settings, transport, sleep_func) -> Optional[AssistantBackend]:
    if not (settings.openai_api_key and settings.openai_assistant_id):
        return None
    return ThreadsAssistant(
        settings.openai_api_key,
        settings.openai_assistant_id,
        base_url=settings.openai_base_url,
        poll_interval_seconds=settings.run_poll_interval_seconds,
        poll_max_attempts=settings.run_poll_max_attempts,
        timeout_seconds=settings.assistant_timeout_seconds,
        policy=RetryPolicy.from_settings(settings),
        transport=transport,
        sleep_func=sleep_func,
    )


def _chat(settings, transport, sleep_func) -> Optional[AssistantBackend]:
    if not settings.openai_api_key:
        return None
    return ChatCompletionsAssistant(
        settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.openai_base_url,
        temperature=settings.openai_temperature,
        system_prompt=settings.assistant_system_prompt,
        timeout_seconds=settings.assistant_timeout_seconds,
        policy=RetryPolicy.from_settings(settings),
        transport=transport,
        sleep_func=sleep_func,
    )


def build_assistant(
    settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep_func: SleepFunc = asyncio.sleep,
) -> AssistantBackend:
    """Backend named by ``assistant_backend``; ``auto`` chains whatever is configured."""
    choice = (settings.assistant_backend or "auto").lower()
    candidates = {
        "reply_api": lambda: _reply_api(settings, transport, sleep_func),
        "threads": lambda: _threads(settings, transport, sleep_func),
        "chat": lambda: _chat(settings, transport, sleep_func),
    }

    if choice == "auto":
        backends = [b for b in (factory() for factory in candidates.values()) if b is not None]
        return FallbackAssistant(backends)
    if choice not in candidates:
        raise ValueError(f"Unknown assistant backend: {settings.assistant_backend}")

    backend = candidates[choice]()
    return backend if backend is not None else FallbackAssistant([])


__all__ = [
    "AssistantBackend",
    "AssistantReply",
    "ChatCompletionsAssistant",
    "FallbackAssistant",
    "ReplyApiAssistant",
    "ThreadsAssistant",
    "build_assistant",
]
