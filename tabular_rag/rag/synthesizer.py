import logging
from typing import List, Sequence

from tabular_rag.models import ScoredChunk
from tabular_rag.rag.deadline import CallRunner, Deadline
from tabular_rag.rag.generator import GeneratorClient

logger = logging.getLogger(__name__)

NO_ANSWER_FALLBACK = "Sorry, I could not find an answer to your question."

ANSWER_PROMPT = """You are a CSV data analysis assistant. You should analyze and answer questions about the CSV data provided below. Accept data analysis questions but refuse clearly unrelated topics.

GUIDELINES:
- Answer questions about data analysis, insights, statistics, summaries, and any CSV content
- Accept broad requests like: "analyze the data", "give insights", "tell me about the data", "summarize", "give data analysis"
- Answer strictly from the context below. Do not use outside knowledge or invent rows.
- If the question cannot be answered from the provided data, say so clearly and politely.
- ONLY refuse obviously non-data questions (weather, cooking, news, personal advice)

Dataset: {dataset} ({row_total} rows)
Context:
{context}

Question: {question}

Provide analysis based on the CSV data above."""


class AnswerSynthesizer:
    """Builds the grounded prompt and asks the model for the answer."""

    def __init__(self, generator: GeneratorClient, runner: CallRunner, retries: int = 0):
        self.gen = generator
        self.runner = runner
        self.retries = retries

    def build_prompt(
        self,
        question: str,
        hits: Sequence[ScoredChunk],
        filenames: List[str],
        row_total: int,
    ) -> str:
        context = "\n\n".join(hit.chunk.content for hit in hits)
        return ANSWER_PROMPT.format(
            dataset=", ".join(filenames),
            row_total=row_total,
            context=context,
            question=question,
        )

    def synthesize(
        self,
        question: str,
        hits: Sequence[ScoredChunk],
        filenames: List[str],
        row_total: int,
        deadline: Deadline,
    ) -> str:
        """Answer the question from the retrieved chunks.

        An empty ``hits`` list still goes to the model, which is expected
        to reply that the data cannot answer the question.
        """
        prompt = self.build_prompt(question, hits, filenames, row_total)
        if hits:
            preview = [hit.chunk.content[:100] + "..." for hit in hits[:2]]
            logger.debug(f"First few context items: {preview}")
        answer = self.runner.call(
            "answer synthesis",
            self.gen.complete,
            prompt,
            deadline=deadline,
            retries=self.retries,
        )
        answer = (answer or "").strip()
        return answer or NO_ANSWER_FALLBACK
