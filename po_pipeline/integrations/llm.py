"""
LLM access for the pipeline.
Builds a LangChain chat model from a tenant's AI configuration and
exposes a single ``complete(prompt) -> text`` capability.
"""

import asyncio
from typing import Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

from po_pipeline.config import get_config
from po_pipeline.exceptions import UnsupportedProviderError
from po_pipeline.schemas.records import AiConfiguration, AiProvider
from po_pipeline.schemas.results import ConnectionTestResult
from po_pipeline.utils import truncate
from po_pipeline.utils.logging import setup_logging


logger = setup_logging(__name__)
config = get_config()

DEFAULT_SYSTEM_PROMPT = "You are a data extraction assistant. Respond with valid JSON only, no explanations."
CONNECTION_TEST_PROMPT = "Hello, this is a test message. Please respond with 'Test successful'."


def get_llm(ai_config: AiConfiguration, temperature: Optional[float] = None, max_tokens: Optional[int] = None):
    """Get a chat model for the tenant's configured provider."""
    temperature = config.LLM_TEMPERATURE if temperature is None else temperature
    max_tokens = max_tokens or config.LLM_MAX_TOKENS

    if ai_config.provider == AiProvider.GEMINI:
        return ChatGoogleGenerativeAI(
            model=ai_config.model_name,
            google_api_key=ai_config.api_key,
            temperature=temperature,
            max_output_tokens=max_tokens,
            timeout=config.LLM_TIMEOUT_SECONDS,
        )
    elif ai_config.provider == AiProvider.OPENAI:
        return ChatOpenAI(
            model=ai_config.model_name,
            api_key=ai_config.api_key,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=config.LLM_TIMEOUT_SECONDS,
        )
    elif ai_config.provider == AiProvider.CUSTOM:
        # OpenAI-compatible endpoint; local servers often ignore the key
        return ChatOpenAI(
            model=ai_config.model_name,
            api_key=ai_config.api_key or "not-needed",
            base_url=ai_config.endpoint,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=config.LLM_TIMEOUT_SECONDS,
        )

    raise UnsupportedProviderError(f"Unsupported AI provider: {ai_config.provider}")


def get_llm_response_text(response) -> str:
    """Reply text from a chat message, an LLMResult, a dict or a plain string."""
    if isinstance(response, str):
        return response

    if hasattr(response, "content"):
        content = response.content
        # Gemini can return a list of content parts
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part) for part in content
            )
        if content and str(content).strip():
            return str(content)

    # LangChain LLMResult: .generations -> list[list[Generation]]
    if hasattr(response, "generations") and response.generations:
        gen0 = response.generations[0]
        first = gen0[0] if isinstance(gen0, list) and gen0 else gen0
        if getattr(first, "text", None):
            return str(first.text)

    if isinstance(response, dict):
        for key in ("content", "text", "output_text", "response"):
            if response.get(key):
                return str(response[key])

    raise ValueError(
        f"Could not extract text content from LLM response. "
        f"Response type: {type(response)}, Response preview: {truncate(str(response), 200)}"
    )


async def complete(
    prompt: str,
    ai_config: AiConfiguration,
    max_tokens: Optional[int] = None,
    system_prompt: Optional[str] = DEFAULT_SYSTEM_PROMPT,
) -> str:
    """
    Send one prompt to the tenant's model and return the raw text reply.

    Raises on provider errors and on timeout; callers decide how to degrade.
    """
    llm = get_llm(ai_config, max_tokens=max_tokens)
    messages = [HumanMessage(content=prompt)]
    if system_prompt:
        messages.insert(0, SystemMessage(content=system_prompt))

    response = await asyncio.wait_for(llm.ainvoke(messages), timeout=config.LLM_TIMEOUT_SECONDS)
    text = get_llm_response_text(response).strip()
    logger.debug(
        f"LLM ({ai_config.provider.value}/{ai_config.model_name}) replied: "
        f"{truncate(text, config.LLM_RESPONSE_PREVIEW_CHARS)}"
    )
    return text


async def check_ai_connection(ai_config: AiConfiguration) -> ConnectionTestResult:
    """Round-trip a trivial prompt to verify provider credentials."""
    try:
        reply = await complete(CONNECTION_TEST_PROMPT, ai_config, max_tokens=50, system_prompt=None)
        return ConnectionTestResult(
            success=True,
            details={
                "provider": ai_config.provider.value,
                "model": ai_config.model_name,
                "response": truncate(reply, 100),
            },
        )
    except Exception as e:
        logger.warning(f"AI connection test failed for {ai_config.provider.value}/{ai_config.model_name}: {e}")
        return ConnectionTestResult(success=False, error=str(e))
