from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Optional

from ..errors import CompletionError
from . import llm
from .history import ConversationHistory
from .llm import ChatCompletion

logger = logging.getLogger("voicebot")

MIN_INPUT_LENGTH = 10  # characters before a partial answer is attempted
MIN_INPUT_GROWTH = 5  # new characters needed since the last partial answer

PARTIAL = "partial"
COMPLETE = "complete"


@dataclass(frozen=True)
class CompletionFragment:
    kind: str  # "partial" | "complete"
    text: str
    source_input: str


class IncrementalCompleter:
    """
    Feeds a growing transcript into the chat capability.

    While transcripts arrive, short speculative answers are streamed as
    partial fragments. Once the transcript stream ends, one authoritative
    answer over the full history is streamed as complete fragments and
    recorded in the history.
    """

    def __init__(
        self,
        chat: ChatCompletion,
        history: ConversationHistory,
        system_prompt: Optional[str] = None,
        min_input_length: int = MIN_INPUT_LENGTH,
        min_growth: int = MIN_INPUT_GROWTH,
    ):
        self.chat = chat
        self.history = history
        self.system_prompt = system_prompt or llm.SYSTEM_PROMPT
        self.min_input_length = min_input_length
        self.min_growth = min_growth

        self.accumulated_input = ""
        self.last_processed_length = 0
        self.partial_calls = 0
        self.failed_partial_calls = 0

    def _should_answer_partially(self) -> bool:
        size = len(self.accumulated_input)
        return size >= self.min_input_length and size - self.last_processed_length >= self.min_growth

    async def _partial_answer(self) -> AsyncIterator[CompletionFragment]:
        snapshot = self.accumulated_input
        logger.info(f"Processing partial input: \"{snapshot[:50]}...\"")
        self.partial_calls += 1
        try:
            # Stateless one-shot: the shared history is deliberately left out.
            async for delta in self.chat.stream(
                self.system_prompt + llm.PARTIAL_INPUT_NOTE,
                [{"role": "user", "content": f"Partial input: {snapshot}"}],
                max_tokens=llm.PARTIAL_MAX_TOKENS,
                temperature=llm.PARTIAL_TEMPERATURE,
                presence_penalty=None,
                frequency_penalty=None,
            ):
                yield CompletionFragment(PARTIAL, delta, snapshot)
        except CompletionError as e:
            self.failed_partial_calls += 1
            logger.warning(f"Partial processing error, continuing: {e}")
            return
        self.last_processed_length = len(snapshot)

    async def complete(self, transcripts: AsyncIterable[str]) -> AsyncIterator[CompletionFragment]:
        async for fragment in transcripts:
            fragment = fragment.strip()
            if not fragment:
                continue
            self.accumulated_input = f"{self.accumulated_input} {fragment}" if self.accumulated_input else fragment

            if self._should_answer_partially():
                async for partial in self._partial_answer():
                    yield partial

        final_input = self.accumulated_input.strip()
        if not final_input:
            logger.info("No transcript accumulated; skipping final response.")
            return

        logger.info("Processing complete input for final response...")
        self.history.append("user", final_input)

        answer = []
        async for delta in self.chat.stream(self.system_prompt, self.history.turns()):
            answer.append(delta)
            yield CompletionFragment(COMPLETE, delta, final_input)

        final_response = "".join(answer)
        if not final_response:
            raise CompletionError("No response received from the chat provider")
        self.history.append("assistant", final_response)
        logger.info("Completed incremental streaming response processing")
