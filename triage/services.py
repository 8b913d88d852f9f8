"""
Builds the workflows from one explicit TriageSettings value.

The API, the Celery tasks and the CLI runner all go through `TriageServices`,
so each entry point runs the same workflow code with its own store and clients
and there are no process-wide client singletons.

    services = TriageServices.build(TriageSettings())
    services.escalation().run()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from triage.chat import ConversationalQueryWorkflow
from triage.classification import ClassificationWorkflow
from triage.config import TriageSettings
from triage.embedding_queue import EmbeddingQueueWorker
from triage.escalation import EscalationWorkflow
from triage.feedback import FeedbackRecorder
from triage.llm_provider import EmbeddingClient, GenerationClient, HttpEmbeddingClient, HttpGenerationClient
from triage.officer_actions import OfficerAssistant
from triage.similarity import SimilarityIndex, build_similarity_index
from triage.storage import LocalImageStore
from triage.store import IssueStore
from triage.submission import ComplaintService
from triage.summarization import SummarizationWorkflow


@dataclass
class TriageServices:
    settings: TriageSettings
    store: IssueStore
    embedder: EmbeddingClient
    generator: GenerationClient
    index: SimilarityIndex

    @classmethod
    def build(
        cls,
        settings: Optional[TriageSettings] = None,
        *,
        session_factory=None,
        embedder: Optional[EmbeddingClient] = None,
        generator: Optional[GenerationClient] = None,
    ) -> "TriageServices":
        settings = settings or TriageSettings()
        store = IssueStore(session_factory)
        return cls(
            settings=settings,
            store=store,
            embedder=embedder or HttpEmbeddingClient(settings),
            generator=generator or HttpGenerationClient(settings),
            index=build_similarity_index(store, settings.similarity_backend),
        )

    def classification(self) -> ClassificationWorkflow:
        return ClassificationWorkflow(self.store, self.index, self.generator, self.settings)

    def chat(self) -> ConversationalQueryWorkflow:
        return ConversationalQueryWorkflow(self.embedder, self.index, self.generator, self.settings)

    def escalation(self) -> EscalationWorkflow:
        return EscalationWorkflow(self.store, self.generator, self.settings)

    def summarization(self) -> SummarizationWorkflow:
        return SummarizationWorkflow(self.store, self.generator, self.settings)

    def feedback(self) -> FeedbackRecorder:
        return FeedbackRecorder(self.store)

    def officer(self) -> OfficerAssistant:
        return OfficerAssistant(self.store, self.generator, self.feedback())

    def embedding_queue(self) -> EmbeddingQueueWorker:
        return EmbeddingQueueWorker(self.store, self.embedder, self.settings)

    def complaints(self) -> ComplaintService:
        images = LocalImageStore(self.settings.upload_dir, self.settings.max_upload_bytes)
        return ComplaintService(self.store, self.embedder, images, self.settings)

    def model_server_healthy(self) -> bool:
        checker = getattr(self.generator, "health_check", None)
        return bool(checker()) if callable(checker) else True
