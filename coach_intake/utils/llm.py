"""LLM completion service: plain, structured and streaming calls.

Model ids come from config (``<role>_model``). Ids starting with ``gemini``
are served by Google GenAI, everything else by Anthropic.
"""

from contextlib import aclosing

from langchain_anthropic import ChatAnthropic
from langchain_google_genai import ChatGoogleGenerativeAI

from coach_intake.config import get_config
from coach_intake.utils.parsing import ainvoke_with_retry, content_text

DEFAULT_MAX_TOKENS = 4096


def is_anthropic_model(model_name: str) -> bool:
    return not model_name.startswith("gemini")


def model_for(role: str) -> str:
    """Return the configured model id for an agent role (extractor, questioner, builder)."""
    return get_config()[f"{role}_model"]


def get_chat_model(role: str, temperature: float | None = None, max_tokens: int = DEFAULT_MAX_TOKENS):
    """Instantiate the chat model configured for role."""
    config = get_config()
    model_name = model_for(role)
    if temperature is None:
        temperature = config.get("llm_temperature_creative", 0.7)

    if is_anthropic_model(model_name):
        return ChatAnthropic(model=model_name, temperature=temperature, max_tokens=max_tokens)
    return ChatGoogleGenerativeAI(model=model_name, temperature=temperature, max_output_tokens=max_tokens)


def _messages(system_prompt: str, user_prompt: str | None, history: list[dict] | None) -> list[dict]:
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend(history or [])
    if user_prompt:
        messages.append({"role": "user", "content": user_prompt})
    return messages


async def complete(
    system_prompt: str,
    user_prompt: str | None,
    role: str,
    history: list[dict] | None = None,
    temperature: float | None = None,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> str:
    """Single completion returning the response text."""
    llm = get_chat_model(role, temperature=temperature, max_tokens=max_tokens)
    response = await ainvoke_with_retry(llm, _messages(system_prompt, user_prompt, history))
    return content_text(response.content)


async def complete_structured(system_prompt: str, user_prompt: str, role: str, schema: dict):
    """Completion constrained to a JSON schema. Returns whatever the model produced (usually a dict)."""
    temperature = get_config().get("llm_temperature_structured", 0)
    llm = get_chat_model(role, temperature=temperature).with_structured_output(schema)
    return await ainvoke_with_retry(llm, _messages(system_prompt, user_prompt, None))


async def stream_complete(
    system_prompt: str,
    user_prompt: str | None,
    role: str,
    history: list[dict] | None = None,
    temperature: float | None = None,
):
    """Async generator of text chunks.

    Closing this generator closes the underlying model stream, which
    releases the HTTP request.
    """
    llm = get_chat_model(role, temperature=temperature)
    async with aclosing(llm.astream(_messages(system_prompt, user_prompt, history))) as stream:
        async for chunk in stream:
            text = content_text(chunk.content)
            if text:
                yield text
