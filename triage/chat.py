"""
Conversational Query Workflow: officer questions answered from retrieved issues.

Two branches:
- small talk ("hi", "thanks") gets a polite reply without any issue context
- everything else is answered only from issues the Similarity Index returns

When retrieval comes back empty for a real question, the workflow answers with
the fixed decline phrase itself. The model is not asked, so it gets no chance
to invent issue IDs.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from triage.config import TriageSettings
from triage.errors import IssueValidationError
from triage.llm_provider import EmbeddingClient, GenerationClient
from triage.metrics import record_workflow_run
from triage.models import utcnow
from triage.prompts import DECLINE_PHRASE, format_chat_context_line, prepare_chat_prompt
from triage.similarity import SimilarityIndex, SimilarityMatch

logger = logging.getLogger("officer-chat")

_SMALL_TALK = {
    "hi",
    "hello",
    "hey",
    "good morning",
    "good afternoon",
    "good evening",
    "how are you",
    "thanks",
    "thank you",
    "ok",
    "okay",
    "bye",
    "goodbye",
}

_SMALL_TALK_FILLER = {
    "there",
    "again",
    "all",
    "everyone",
    "a lot",
    "so much",
    "very much",
}

_NON_WORD = re.compile(r"[^a-z\s]+")


def is_small_talk(question: str) -> bool:
    """
    True only for a bare greeting or thanks, optionally followed by a filler
    word ("hi there", "thanks a lot"). Anything carrying a question, even after
    a greeting, goes through retrieval.
    """
    normalized = " ".join(_NON_WORD.sub(" ", (question or "").lower()).split())
    if not normalized:
        return False
    if normalized in _SMALL_TALK:
        return True
    for phrase in _SMALL_TALK:
        if normalized.startswith(phrase + " ") and normalized[len(phrase) + 1:] in _SMALL_TALK_FILLER:
            return True
    return False


@dataclass
class ChatAnswer:
    answer: str
    sources: list[SimilarityMatch] = field(default_factory=list)
    declined: bool = False

    def to_dict(self) -> dict:
        return {
            "answer": self.answer,
            "sources": [m.to_dict() for m in self.sources],
        }


class ConversationalQueryWorkflow:
    def __init__(
        self,
        embedder: EmbeddingClient,
        index: SimilarityIndex,
        generator: GenerationClient,
        settings: TriageSettings,
    ):
        self.embedder = embedder
        self.index = index
        self.generator = generator
        self.settings = settings

    def answer(self, question: Optional[str]) -> ChatAnswer:
        question = (question or "").strip()
        if not question:
            raise IssueValidationError({"question": ["Question is required"]}, "Question is required")

        if is_small_talk(question):
            record_workflow_run("chat", "small_talk")
            return ChatAnswer(answer=self.generator.generate(prepare_chat_prompt(question, [])))

        query_vector = self.embedder.embed(question)
        matches = self.index.search(
            query_vector,
            self.settings.chat_match_threshold,
            self.settings.chat_match_count,
        )
        if not matches:
            logger.info("chat_declined reason=empty_retrieval")
            record_workflow_run("chat", "declined")
            return ChatAnswer(answer=DECLINE_PHRASE, declined=True)

        now = utcnow()
        context_lines = [format_chat_context_line(m.issue, now) for m in matches]
        answer = self.generator.generate(prepare_chat_prompt(question, context_lines))
        logger.info(f"chat_answered context={len(matches)}")
        record_workflow_run("chat", "answered")
        return ChatAnswer(answer=answer, sources=matches)
