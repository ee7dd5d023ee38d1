"""
Summarizer collaborators.

The engine only needs "produce a short text from N source texts". Two
implementations ship here:

- TruncatingSummarizer: deterministic stub for unit tests
- LLMSummarizer: any LangChain chat model, used by integrations
"""

import logging
import re
from typing import Protocol, Sequence, runtime_checkable

from .exceptions import SummarizationFailed

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """You are a conversation summarizer. Summarize the following conversation messages concisely.
Focus on:
- Key topics discussed
- Important decisions made
- Open questions and next steps
- Relevant context for future conversation

Output a concise summary (at most 150 words) in the same language as the conversation. Do NOT use markdown headers."""

MERGE_SYSTEM_PROMPT = """Merge the following {count} level-{source_level} summaries into a single level-{target_level} summary.
Keep only what matters for the rest of the conversation: durable facts, decisions, open threads.
Output at most 80 words in the same language as the summaries. Do NOT use markdown headers."""

_WS = re.compile(r"\s+")


@runtime_checkable
class Summarizer(Protocol):
    """Produce one summary text from several source texts."""

    async def summarize(self, texts: Sequence[str], target_level: int) -> str:
        ...


class TruncatingSummarizer:
    """
    Deterministic summarizer for tests.

    Joins the sources, collapses whitespace, prefixes ``[L<level>]`` and cuts
    the result to ``max_chars``.
    """

    def __init__(self, max_chars: int = 120, separator: str = " | "):
        self.max_chars = max_chars
        self.separator = separator
        self.calls = 0

    async def summarize(self, texts: Sequence[str], target_level: int) -> str:
        self.calls += 1
        joined = _WS.sub(" ", self.separator.join(t.strip() for t in texts)).strip()
        text = f"[L{target_level}] {joined}"
        if len(text) > self.max_chars:
            text = text[: self.max_chars - 3].rstrip() + "..."
        return text


class LLMSummarizer:
    """Summaries generated by a LangChain chat model."""

    def __init__(self, llm, max_source_chars: int = 500):
        self._llm = llm
        self.max_source_chars = max_source_chars

    def _build_messages(self, texts: Sequence[str], target_level: int) -> list:
        lines = []
        for text in texts:
            # Truncate very long sources for summarization
            if len(text) > self.max_source_chars:
                text = text[: self.max_source_chars] + "..."
            lines.append(text)

        if target_level <= 1:
            system = SUMMARY_SYSTEM_PROMPT
            body = "\n".join(lines)
        else:
            system = MERGE_SYSTEM_PROMPT.format(
                count=len(texts),
                source_level=target_level - 1,
                target_level=target_level,
            )
            body = "\n\n".join(lines)

        return [
            {"role": "system", "content": system},
            {"role": "user", "content": body},
        ]

    async def summarize(self, texts: Sequence[str], target_level: int) -> str:
        if not texts:
            raise SummarizationFailed("nothing to summarize")
        try:
            response = await self._llm.ainvoke(self._build_messages(texts, target_level))
        except Exception as e:
            logger.warning("LLM summarization failed: %s", e)
            raise SummarizationFailed(str(e)) from e

        content = response.content if hasattr(response, "content") else str(response)
        if isinstance(content, list):
            content = "\n".join(
                block.get("text", "") if isinstance(block, dict) else str(block)
                for block in content
            )
        return content.strip()
