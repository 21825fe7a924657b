"""
Ollama Request Manager.

Thin wrapper around ``ollama.AsyncClient.chat`` used for session summaries
and summary revisions:
- Full chat history is passed in by the caller on every request
- Configurable generation parameters
- Request statistics and logging

Failures are raised to the caller; nothing is retried here.

Usage:
    text = await ollama_manager.complete(
        [{"role": "system", "content": "..."}, {"role": "user", "content": "..."}]
    )
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

import ollama

if TYPE_CHECKING:
    from noteify.context import Context
    from noteify.services.manager import ServicesManager

from noteify.services.manager import Manager

DEFAULT_SUMMARY_MODEL = "huihui_ai/qwen3-abliterated:8b-v2"


# -------------------------------------------------------------- #
# Data Models
# -------------------------------------------------------------- #


@dataclass
class Message:
    """A single message in a conversation."""

    role: Literal["system", "user", "assistant"]
    content: str


@dataclass
class GenerationConfig:
    """Configuration for text generation parameters. ``None`` leaves the model default."""

    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    num_predict: int | None = None  # max tokens to generate
    num_ctx: int | None = None  # context window
    seed: int | None = None  # for reproducibility

    def to_options(self) -> dict[str, Any]:
        return {key: value for key, value in vars(self).items() if value is not None}


@dataclass
class OllamaQueryResult:
    """Result from Ollama query."""

    content: str
    model: str
    done: bool
    total_duration: int | None = None  # nanoseconds
    prompt_eval_count: int | None = None
    eval_count: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# -------------------------------------------------------------- #
# Ollama Request Manager
# -------------------------------------------------------------- #


class OllamaRequestManager(Manager):
    """Manager for Ollama chat requests."""

    def __init__(
        self,
        context: Context,
        host: str | None = None,
        default_model: str | None = None,
        generation_config: GenerationConfig | None = None,
        keep_alive: str | int = "5m",
        timeout_seconds: float | None = None,
    ):
        """
        Initialize the Ollama request manager.

        Args:
            context: Application context
            host: Ollama server host URL (defaults to env: OLLAMA_HOST + OLLAMA_PORT)
            default_model: Model used for queries (defaults to env: OLLAMA_MODEL)
            generation_config: Generation options sent with every request
            keep_alive: Model keep-alive duration
            timeout_seconds: Per-request timeout (None waits indefinitely)
        """
        super().__init__(context)

        # Get configuration from environment variables
        ollama_host = os.environ.get("OLLAMA_HOST", "localhost")
        ollama_port = os.environ.get("OLLAMA_PORT", "11434")
        ollama_model = os.environ.get("OLLAMA_MODEL", DEFAULT_SUMMARY_MODEL)

        # Build host URL if not provided
        if host is None:
            host = f"http://{ollama_host}:{ollama_port}"

        # Use env model if not provided
        if default_model is None:
            default_model = ollama_model

        # Ollama client
        self._client = ollama.AsyncClient(host=host)
        self._host = host

        # Default configuration
        self._default_model = default_model
        self._generation_config = generation_config or GenerationConfig()
        self._keep_alive = keep_alive
        self._timeout_seconds = timeout_seconds

        # Statistics
        self._total_requests = 0
        self._total_tokens_generated = 0
        self._total_errors = 0
        self._model_usage: dict[str, int] = {}

    # -------------------------------------------------------------- #
    # Manager Lifecycle
    # -------------------------------------------------------------- #

    async def on_start(self, services: ServicesManager) -> None:
        """Actions to perform on manager start."""
        await super().on_start(services)
        if self.services:
            await self.services.logging_service.info(
                f"Ollama Request Manager started (host: {self._host}, model: {self._default_model})"
            )

    async def on_close(self) -> None:
        """Actions to perform on manager shutdown."""
        if self.services:
            await self.services.logging_service.info("Ollama Request Manager stopped")
            await self.services.logging_service.info(
                f"Total requests: {self._total_requests}, "
                f"Total tokens: {self._total_tokens_generated}, "
                f"Total errors: {self._total_errors}"
            )

    # -------------------------------------------------------------- #
    # Main Query Interface
    # -------------------------------------------------------------- #

    async def complete(self, messages: list[Message] | list[dict[str, str]]) -> str:
        """Send the whole chat log to the default model and return the reply text."""
        result = await self.query(messages)
        return result.content

    async def query(
        self,
        messages: list[Message] | list[dict[str, str]],
        model: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> OllamaQueryResult:
        """
        Execute a single non-streaming chat request.

        Args:
            messages: Full chat history, oldest first
            model: Model name (uses default if not provided)
            metadata: Additional metadata attached to the result

        Returns:
            OllamaQueryResult

        Raises:
            ValueError: If no messages are given
            RuntimeError: If the request fails or times out
        """
        if not messages:
            raise ValueError("messages must not be empty")

        model = model or self._default_model
        request_params = self._build_request_params(model, messages)

        start_time = time.time()
        self._total_requests += 1
        self._model_usage[model] = self._model_usage.get(model, 0) + 1

        try:
            response = await asyncio.wait_for(
                self._client.chat(**request_params), timeout=self._timeout_seconds
            )
        except asyncio.TimeoutError as e:
            self._total_errors += 1
            if self.services:
                await self.services.logging_service.error(
                    f"Ollama query timed out after {self._timeout_seconds}s (model={model})"
                )
            raise RuntimeError("Ollama query timed out") from e
        except Exception as e:
            self._total_errors += 1
            if self.services:
                await self.services.logging_service.error(f"Ollama query failed (model={model}): {e}")
            raise RuntimeError(f"Ollama query failed: {e}") from e

        content = response.get("message", {}).get("content", "") or ""

        eval_count = response.get("eval_count") or 0
        self._total_tokens_generated += eval_count

        duration_ms = (time.time() - start_time) * 1000
        if self.services:
            await self.services.logging_service.debug(
                f"Ollama query completed: model={model}, "
                f"tokens={eval_count}, duration={duration_ms:.0f}ms"
            )

        return OllamaQueryResult(
            content=content,
            model=response.get("model", model),
            done=response.get("done", True),
            total_duration=response.get("total_duration"),
            prompt_eval_count=response.get("prompt_eval_count"),
            eval_count=response.get("eval_count"),
            metadata=metadata or {},
        )

    def _build_request_params(
        self, model: str, messages: list[Message] | list[dict[str, str]]
    ) -> dict[str, Any]:
        """Build Ollama API request parameters."""
        payload = []
        for msg in messages:
            if isinstance(msg, Message):
                payload.append({"role": msg.role, "content": msg.content})
            else:
                payload.append({"role": msg["role"], "content": msg["content"]})

        params: dict[str, Any] = {
            "model": model,
            "messages": payload,
            "stream": False,
            "keep_alive": self._keep_alive,
        }

        options = self._generation_config.to_options()
        if options:
            params["options"] = options

        return params

    # -------------------------------------------------------------- #
    # Utility Methods
    # -------------------------------------------------------------- #

    @property
    def default_model(self) -> str:
        return self._default_model

    def get_statistics(self) -> dict[str, Any]:
        """Get usage statistics."""
        return {
            "total_requests": self._total_requests,
            "total_tokens_generated": self._total_tokens_generated,
            "total_errors": self._total_errors,
            "model_usage": self._model_usage.copy(),
        }
