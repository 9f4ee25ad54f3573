"""SQL generation backends (LangChain chat models)"""
from __future__ import annotations

from typing import AsyncIterator, List, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.output_parsers import StrOutputParser

from bicopilot.core.llm_factory import LLMHandle, create_llm

SYSTEM_INSTRUCTION = (
    "You are a senior BI engineer. Reply with a single SQL SELECT statement only: "
    "no explanations, no markdown, no code fences."
)


def extract_sql(text: str) -> str:
    """Strip markdown fences / language tags the model may wrap around the SQL."""
    sql = (text or "").strip()
    if sql.startswith("```"):
        lines = sql.split("\n")
        body = lines[1:-1] if lines[-1].strip().startswith("```") else lines[1:]
        sql = "\n".join(body).strip()
    if sql.lower().startswith("sql\n") or sql.lower().startswith("sql "):
        sql = sql[3:].strip()
    return sql.rstrip(";").strip()


class GenerationBackend:
    """External text generation collaborator."""

    async def generate(self, prompt: str) -> str:
        raise NotImplementedError

    async def generate_stream(self, prompt: str) -> AsyncIterator[str]:
        # Default: one chunk carrying the full completion.
        yield await self.generate(prompt)


class LangChainGenerationBackend(GenerationBackend):
    """Generation over any LangChain chat model"""

    def __init__(self, handle: Optional[LLMHandle] = None, *, system_instruction: str = SYSTEM_INSTRUCTION):
        self.handle = handle or create_llm(purpose="sql_generation")
        self.system_instruction = system_instruction
        self.chain = self.handle.llm | StrOutputParser()

    def _messages(self, prompt: str) -> List:
        return [SystemMessage(content=self.system_instruction), HumanMessage(content=prompt)]

    async def generate(self, prompt: str) -> str:
        return await self.chain.ainvoke(self._messages(prompt))

    async def generate_stream(self, prompt: str) -> AsyncIterator[str]:
        async for chunk in self.chain.astream(self._messages(prompt)):
            if chunk:
                yield chunk
