"""
LLM client abstraction supporting OpenAI and Anthropic.
AiServiceManager wraps one client per configured provider behind a fallback chain.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, List, AsyncIterator, Callable

from openai import AsyncOpenAI
from anthropic import AsyncAnthropic

from study_buddy.shared.config import LLMConfig, settings
from study_buddy.shared.exceptions import LLMError
from study_buddy.shared.logging import get_logger
from study_buddy.shared.models import TokenUsage

logger = get_logger(__name__)

SYSTEM_PROMPT = """You are Study Buddy, a patient study assistant for students.
Explain concepts accurately and at the student's level, check understanding,
and say so plainly when you are not sure about a fact."""


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


@dataclass
class GenerationResult:
    """Outcome of one generation call."""
    content: str
    model_used: str
    provider_used: str
    tokens_used: TokenUsage
    latency_ms: float


class LLMClient:
    """Client for a single LLM provider."""

    def __init__(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        config: Optional[LLMConfig] = None
    ):
        self.config = config or settings.llm
        provider = provider or self.config.provider
        self.provider = provider.value if isinstance(provider, LLMProvider) else provider
        self.temperature = temperature if temperature is not None else self.config.temperature
        self.max_tokens = max_tokens or self.config.max_tokens

        if self.provider == LLMProvider.OPENAI:
            api_key = api_key or self.config.openai_api_key
            if not api_key:
                raise LLMError("OpenAI API key not configured")
            self.model = model or self.config.openai_model
            self.client = AsyncOpenAI(api_key=api_key)
        elif self.provider == LLMProvider.ANTHROPIC:
            api_key = api_key or self.config.anthropic_api_key
            if not api_key:
                raise LLMError("Anthropic API key not configured")
            self.model = model or self.config.anthropic_model
            self.client = AsyncAnthropic(api_key=api_key)
        else:
            raise LLMError(f"Unsupported provider: {self.provider}")

    async def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        """
        Get a completion from the provider.

        Args:
            prompt: User prompt
            system_prompt: Optional system prompt
            temperature: Override default temperature
            max_tokens: Override default max_tokens

        Returns:
            GenerationResult with content, usage and latency
        """
        temperature = temperature if temperature is not None else self.temperature
        max_tokens = max_tokens or self.max_tokens
        start = time.perf_counter()

        try:
            if self.provider == LLMProvider.OPENAI:
                content, usage = await self._openai_completion(
                    prompt, system_prompt, temperature, max_tokens
                )
            else:
                content, usage = await self._anthropic_completion(
                    prompt, system_prompt, temperature, max_tokens
                )
        except Exception as e:
            raise LLMError(f"LLM completion failed: {str(e)}") from e

        return GenerationResult(
            content=content,
            model_used=self.model,
            provider_used=self.provider,
            tokens_used=usage,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
        )

    async def _openai_completion(
        self,
        prompt: str,
        system_prompt: Optional[str],
        temperature: float,
        max_tokens: int,
    ) -> tuple[str, TokenUsage]:
        """OpenAI-specific completion."""
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=self._openai_messages(prompt, system_prompt),
            temperature=temperature,
            max_tokens=max_tokens,
        )
        usage = TokenUsage()
        if response.usage:
            usage = TokenUsage(
                input=response.usage.prompt_tokens or 0,
                output=response.usage.completion_tokens or 0,
            )
        return response.choices[0].message.content or "", usage

    async def _anthropic_completion(
        self,
        prompt: str,
        system_prompt: Optional[str],
        temperature: float,
        max_tokens: int,
    ) -> tuple[str, TokenUsage]:
        """Anthropic-specific completion."""
        # Anthropic uses system parameter, not system message
        completion_kwargs: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            completion_kwargs["system"] = system_prompt

        response = await self.client.messages.create(**completion_kwargs)
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        usage = TokenUsage(
            input=response.usage.input_tokens,
            output=response.usage.output_tokens,
        )
        return text, usage

    async def stream(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """Yield completion text chunks as the provider produces them."""
        temperature = temperature if temperature is not None else self.temperature
        max_tokens = max_tokens or self.max_tokens

        if self.provider == LLMProvider.OPENAI:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=self._openai_messages(prompt, system_prompt),
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
            )
            async for chunk in response:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        else:
            stream_kwargs: Dict[str, Any] = {
                "model": self.model,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "messages": [{"role": "user", "content": prompt}],
            }
            if system_prompt:
                stream_kwargs["system"] = system_prompt
            async with self.client.messages.stream(**stream_kwargs) as stream:
                async for text in stream.text_stream:
                    yield text

    async def ping(self) -> bool:
        """Cheap reachability probe against the provider's model listing."""
        try:
            await self.client.models.list()
            return True
        except Exception as e:
            logger.warning(f"{self.provider} ping failed: {str(e)}")
            return False

    @staticmethod
    def _openai_messages(prompt: str, system_prompt: Optional[str]) -> List[Dict[str, str]]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages


class AiServiceManager:
    """Provider fallback chain for generation, streaming and health probes."""

    def __init__(
        self,
        clients: Optional[List[LLMClient]] = None,
        config: Optional[LLMConfig] = None
    ):
        self.config = config or settings.llm
        self.timeout = self.config.request_timeout_seconds

        if clients is None:
            clients = []
            for name in dict.fromkeys([self.config.provider, *self.config.fallback_providers]):
                try:
                    clients.append(LLMClient(provider=name, config=self.config))
                except LLMError as e:
                    logger.info(f"Skipping LLM provider {name}: {str(e)}")

        self.clients: Dict[str, LLMClient] = {str(c.provider): c for c in clients}
        self._status: Dict[str, bool] = {name: True for name in self.clients}

    @property
    def available_providers(self) -> List[str]:
        return list(self.clients)

    def provider_status(self) -> Dict[str, bool]:
        """Last known health per provider (from calls and pings)."""
        return dict(self._status)

    def build_system_prompt(
        self,
        context: str = "",
        preferences: Optional[Dict[str, Any]] = None
    ) -> str:
        prompt = SYSTEM_PROMPT
        if preferences:
            lines = [f"- {key.replace('_', ' ')}: {value}" for key, value in preferences.items() if value]
            if lines:
                prompt += "\n\n## How to respond to this student\n" + "\n".join(lines)
        if context:
            prompt += f"\n\n## Relevant context\n{context}"
        return prompt

    def _ordered_clients(self, preferred_provider: Optional[str]) -> List[LLMClient]:
        clients = list(self.clients.values())
        if preferred_provider and preferred_provider in self.clients:
            clients.sort(key=lambda c: 0 if c.provider == preferred_provider else 1)
        return clients

    async def generate(
        self,
        prompt: str,
        context: str = "",
        preferences: Optional[Dict[str, Any]] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        preferred_provider: Optional[str] = None,
    ) -> GenerationResult:
        """
        Generate a response, trying each provider in turn.

        Raises:
            LLMError if no provider is configured or every provider fails
        """
        if not self.clients:
            raise LLMError("No LLM provider configured", retry_after=60)

        system_prompt = self.build_system_prompt(context, preferences)
        last_error: Optional[Exception] = None

        for client in self._ordered_clients(preferred_provider):
            try:
                result = await asyncio.wait_for(
                    client.complete(
                        prompt,
                        system_prompt=system_prompt,
                        temperature=temperature,
                        max_tokens=max_tokens,
                    ),
                    timeout=self.timeout,
                )
                self._status[str(client.provider)] = True
                return result
            except (LLMError, asyncio.TimeoutError) as e:
                self._status[str(client.provider)] = False
                last_error = e
                logger.warning(f"Provider {client.provider} failed, trying next: {str(e)}")

        raise LLMError(f"All LLM providers failed: {last_error}", retry_after=30)

    async def stream(
        self,
        prompt: str,
        context: str = "",
        preferences: Optional[Dict[str, Any]] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        preferred_provider: Optional[str] = None,
        on_provider: Optional[Callable[[str], None]] = None,
    ) -> AsyncIterator[str]:
        """
        Stream a response. Falls back to the next provider only if the
        current one fails before producing its first chunk.

        `on_provider` is called with the serving provider's name just before
        its first chunk is yielded.
        """
        if not self.clients:
            raise LLMError("No LLM provider configured", retry_after=60)

        system_prompt = self.build_system_prompt(context, preferences)
        last_error: Optional[Exception] = None

        for client in self._ordered_clients(preferred_provider):
            started = False
            try:
                async for chunk in client.stream(
                    prompt,
                    system_prompt=system_prompt,
                    temperature=temperature,
                    max_tokens=max_tokens,
                ):
                    if not started and on_provider is not None:
                        on_provider(str(client.provider))
                    started = True
                    yield chunk
                self._status[str(client.provider)] = True
                return
            except Exception as e:
                self._status[str(client.provider)] = False
                if started:
                    raise LLMError(f"Stream interrupted: {str(e)}", retry_after=10) from e
                last_error = e
                logger.warning(f"Provider {client.provider} stream failed, trying next: {str(e)}")

        raise LLMError(f"All LLM providers failed: {last_error}", retry_after=30)

    async def health_check(self) -> bool:
        """Ping every provider; healthy when at least one answers."""
        if not self.clients:
            return False
        names = list(self.clients)
        results = await asyncio.gather(*(self.clients[n].ping() for n in names))
        for name, ok in zip(names, results):
            self._status[name] = ok
        return any(results)
