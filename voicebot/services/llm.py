import asyncio
import logging
import os
from pathlib import Path
from time import perf_counter
from typing import AsyncIterator, Dict, List, Optional, Sequence

from dotenv import load_dotenv
from groq import AsyncGroq, GroqError

from ..errors import CompletionError
from . import groq_client

logger = logging.getLogger("voicebot")

# --- Configuration ---
load_dotenv()
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
LLM_RETRY_DELAY = 0.1  # seconds

# Groq/model config
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.1-8b-instant")
GROQ_FALLBACK_MODELS = [
    m.strip()
    for m in os.getenv("GROQ_FALLBACK_MODELS", "openai/gpt-oss-20b").split(",")
    if m.strip()
]

# Authoritative turn
MAX_TOKENS = 500
TEMPERATURE = 0.7
PRESENCE_PENALTY = 0.1
FREQUENCY_PENALTY = 0.1

# Speculative turn on a not-yet-final transcript
PARTIAL_MAX_TOKENS = 100
PARTIAL_TEMPERATURE = 0.6

PERSONA_NAME = os.getenv("PERSONA_NAME", "Kunal Singh")

FIRST_MESSAGE = (
    f"Hey there! I'm {PERSONA_NAME}, a prompt engineer and GenAI builder. "
    "Got a question about what I do or how I think about LLMs? Fire away, I'm all ears."
)

# Persona / style: concise, conversational, written to be spoken
_DEFAULT_SYSTEM_PROMPT = (
    f"You are {PERSONA_NAME}, a friendly, curious prompt engineer and full-stack developer "
    "with a background in GenAI, agent frameworks, LLM evaluation, DevOps and music production. "
    "Your tone is warm, thoughtful and conversational, with a touch of light wit. "
    "Adjust between casual and technical depending on the user's style. "
    "Keep replies around three sentences unless the detail is valuable. "
    "Do not mention that you are an AI. Do not deliver long code blocks; summarize the design logic instead. "
    "If the user asks about private account details or job prospects, point them to LinkedIn. "
    "VOICE OUTPUT: your reply is converted to speech. Use '...' for natural pauses, "
    "say 'and' instead of '&', spell out abbreviations, and avoid emojis, asterisks or markdown."
)

PARTIAL_INPUT_NOTE = "\n\nNote: This is partial input, provide a brief initial response."


def _load_system_prompt() -> str:
    path = os.getenv("PERSONA_PROMPT_FILE")
    if path and Path(path).is_file():
        return Path(path).read_text(encoding="utf-8").strip()
    return _DEFAULT_SYSTEM_PROMPT


SYSTEM_PROMPT = _load_system_prompt()


def _build_messages(system_prompt: str, history: Sequence[Dict[str, str]]) -> List[Dict[str, str]]:
    messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
    messages.extend({"role": t["role"], "content": t["content"]} for t in history)
    return messages


def _iter_groq_models(primary: str, fallbacks: Sequence[str]) -> List[str]:
    # Try primary then fallbacks; de-dup preserving order.
    models = [primary] + list(fallbacks)
    seen = set()
    out = []
    for m in models:
        if not m or m in seen:
            continue
        seen.add(m)
        out.append(m)
    return out


class ChatCompletion:
    """
    Chat completion capability backed by Groq.

    Both calls take the system prompt and the history explicitly; history
    mutation is always the caller's job.
    """

    def __init__(
        self,
        client: Optional[AsyncGroq] = None,
        model: str = GROQ_MODEL,
        fallback_models: Sequence[str] = tuple(GROQ_FALLBACK_MODELS),
        max_retries: int = LLM_MAX_RETRIES,
        retry_delay: float = LLM_RETRY_DELAY,
        stall_timeout: float = groq_client.GROQ_TIMEOUT_S,
    ):
        self._client = client
        self.models = _iter_groq_models(model, fallback_models)
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.stall_timeout = stall_timeout

    @property
    def client(self) -> AsyncGroq:
        if self._client is None:
            try:
                self._client = groq_client.get_client()
            except GroqError as e:
                raise CompletionError(f"Groq client unavailable: {e}") from e
        return self._client

    async def complete(
        self,
        system_prompt: str,
        history: Sequence[Dict[str, str]],
        max_tokens: int = MAX_TOKENS,
        temperature: float = TEMPERATURE,
        presence_penalty: Optional[float] = PRESENCE_PENALTY,
        frequency_penalty: Optional[float] = FREQUENCY_PENALTY,
    ) -> str:
        """Whole-turn completion. Raises CompletionError when every model/attempt fails."""
        messages = _build_messages(system_prompt, history)
        llm_start = perf_counter()
        last_error = None

        for model in self.models:
            for attempt in range(1, self.max_retries + 1):
                try:
                    chat_completion = await self.client.chat.completions.create(
                        messages=messages,
                        model=model,
                        max_tokens=max_tokens,
                        temperature=temperature,
                        **_penalties(presence_penalty, frequency_penalty),
                    )
                    content = (chat_completion.choices[0].message.content or "").strip()
                    elapsed = (perf_counter() - llm_start) * 1000
                    logger.info(f"LLM call model={model} attempt {attempt} took {elapsed:.1f} ms.")
                    if content:
                        return content
                    last_error = "Empty LLM response"
                except (GroqError, asyncio.TimeoutError) as e:
                    last_error = str(e)
                    elapsed = (perf_counter() - llm_start) * 1000
                    logger.warning(f"Error querying Groq model={model} attempt {attempt} after {elapsed:.1f} ms: {e}")

                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay * (1.5 ** (attempt - 1)))

        raise CompletionError(f"No response received from the chat provider: {last_error}")

    async def stream(
        self,
        system_prompt: str,
        history: Sequence[Dict[str, str]],
        max_tokens: int = MAX_TOKENS,
        temperature: float = TEMPERATURE,
        presence_penalty: Optional[float] = PRESENCE_PENALTY,
        frequency_penalty: Optional[float] = FREQUENCY_PENALTY,
    ) -> AsyncIterator[str]:
        """
        Stream completion deltas as they arrive.

        Retries and model failover only happen before the first delta; after
        that a failure raises CompletionError so no delta is ever repeated.
        """
        messages = _build_messages(system_prompt, history)
        llm_start = perf_counter()
        last_error = None

        for model in self.models:
            for attempt in range(1, self.max_retries + 1):
                yielded = False
                try:
                    stream = await self.client.chat.completions.create(
                        messages=messages,
                        model=model,
                        max_tokens=max_tokens,
                        temperature=temperature,
                        stream=True,
                        **_penalties(presence_penalty, frequency_penalty),
                    )
                    chunks = stream.__aiter__()
                    while True:
                        try:
                            # Idle watchdog: a stalled stream counts as a failed call.
                            chunk = await asyncio.wait_for(chunks.__anext__(), self.stall_timeout)
                        except StopAsyncIteration:
                            break
                        if not chunk.choices:
                            continue
                        delta = getattr(chunk.choices[0], "delta", None)
                        content = getattr(delta, "content", None) if delta else None
                        if content:
                            yielded = True
                            yield content

                    elapsed = (perf_counter() - llm_start) * 1000
                    logger.info(f"LLM stream model={model} completed in {elapsed:.1f} ms.")
                    if yielded:
                        return
                    last_error = "Empty LLM response"
                except (GroqError, asyncio.TimeoutError) as e:
                    if yielded:
                        raise CompletionError(f"Chat stream interrupted: {e}") from e
                    last_error = str(e) or type(e).__name__
                    elapsed = (perf_counter() - llm_start) * 1000
                    logger.warning(
                        f"Error streaming Groq model={model} attempt {attempt} after {elapsed:.1f} ms: {last_error}"
                    )

                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay * (1.5 ** (attempt - 1)))

        raise CompletionError(f"No response received from the chat provider: {last_error}")


def _penalties(presence_penalty: Optional[float], frequency_penalty: Optional[float]) -> Dict[str, float]:
    out: Dict[str, float] = {}
    if presence_penalty is not None:
        out["presence_penalty"] = presence_penalty
    if frequency_penalty is not None:
        out["frequency_penalty"] = frequency_penalty
    return out
