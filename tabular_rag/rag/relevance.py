"""Relevance gate run before retrieval.

A single YES/NO completion decides whether a question could be answered
from tabular data. Anything other than an explicit NO counts as YES.
"""

import logging
import re

from tabular_rag.rag.deadline import CallRunner, Deadline
from tabular_rag.rag.generator import GeneratorClient

logger = logging.getLogger(__name__)

OUT_OF_SCOPE_MESSAGE = (
    "I can only answer questions about the CSV data you've uploaded. "
    "Please ask questions about your data such as counts, statistics, "
    "specific records, or data analysis."
)

RELEVANCE_PROMPT = """You are a filter that determines if a question is related to CSV data analysis or completely unrelated.

Question: {question}

Respond with only "YES" if the question is about:
- Data analysis, statistics, insights, summaries
- CSV content, rows, columns, records
- Asking to analyze, summarize, or explore data
- Any question that could be answered using CSV data

Respond with only "NO" if the question is clearly about:
- Weather, cooking, news, entertainment, personal advice
- Topics completely unrelated to data or CSV files

When in doubt, respond with "YES".
"""


def parse_verdict(text: str) -> bool:
    """Return False only for an explicit NO."""
    verdict = re.sub(r"[^A-Za-z]", "", text.strip().split()[0]) if text.strip() else ""
    return verdict.upper() != "NO"


class RelevanceGate:
    def __init__(self, generator: GeneratorClient, runner: CallRunner, retries: int = 0):
        self.gen = generator
        self.runner = runner
        self.retries = retries

    def build_prompt(self, question: str) -> str:
        return RELEVANCE_PROMPT.format(question=question)

    def is_in_domain(self, question: str, deadline: Deadline) -> bool:
        """Classify a question as answerable from the uploaded data.

        Raises:
            ModelError: If the classifier call fails.
            RequestTimeoutError: If the deadline passes first.
        """
        raw = self.runner.call(
            "relevance gate",
            self.gen.complete,
            self.build_prompt(question),
            deadline=deadline,
            retries=self.retries,
            temperature=0.0,
            max_new_tokens=5,
        )
        in_domain = parse_verdict(raw)
        logger.info(f"Relevance gate verdict={raw!r} in_domain={in_domain}")
        return in_domain
