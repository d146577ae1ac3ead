from typing import Optional
from openai import AsyncOpenAI
from anthropic import AsyncAnthropic

from knowflow.config import settings
from knowflow.core.logging import get_logger

logger = get_logger("integrations.llm")

SUPPORTED_PROVIDERS = ("openai", "anthropic")

class LLMProvider:
    _openai_client: Optional[AsyncOpenAI] = None
    _anthropic_client: Optional[AsyncAnthropic] = None

    @classmethod
    def _get_openai_client(cls) -> AsyncOpenAI:
        if cls._openai_client is None:
            cls._openai_client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        return cls._openai_client

    @classmethod
    def _get_anthropic_client(cls) -> AsyncAnthropic:
        if cls._anthropic_client is None:
            cls._anthropic_client = AsyncAnthropic(api_key=settings.ANTHROPIC_API_KEY)
        return cls._anthropic_client

    @staticmethod
    async def chat_completion(
        provider: str,
        model: str,
        user_prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
    ) -> str:
        logger.info(f"LLM Chat Completion: provider={provider} model={model}")

        if provider == "openai":
            client = LLMProvider._get_openai_client()
            messages = []
            if system_prompt:
                messages.append({"role": "system", "content": system_prompt})
            messages.append({"role": "user", "content": user_prompt})

            response = await client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
            return response.choices[0].message.content or ""

        if provider == "anthropic":
            client = LLMProvider._get_anthropic_client()
            response = await client.messages.create(
                model=model,
                system=system_prompt or "",
                messages=[{"role": "user", "content": user_prompt}],
                max_tokens=max_tokens,
                temperature=temperature,
            )
            return response.content[0].text

        raise ValueError(f"Unsupported LLM provider: {provider}")
