"""
Triage Configuration Constants

Every tunable number used by the workflows lives here, read from the
environment with a documented default. Modules import the constant they need:

    from triage.config import CLASSIFY_MATCH_THRESHOLD

Workflows do not read these directly at call time. `TriageSettings()`
snapshots them into one frozen value that is handed to each workflow
constructor, so tests and the CLI can override a single run
(`TriageSettings(summary_window_days=14)`) without touching the process
environment.
"""

import os
from dataclasses import dataclass


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# =============================================================================
# MODEL SERVER (OLLAMA-COMPATIBLE HTTP API)
# =============================================================================

# Base URL of the inference server. Both embeddings and chat go here.
LLM_HTTP_BASE_URL = os.getenv("LLM_HTTP_BASE_URL", "http://localhost:11434").rstrip("/")

# nomic-embed-text produces 768-dimensional vectors.
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "nomic-embed-text")
GENERATION_MODEL = os.getenv("GENERATION_MODEL", "llama3")

# Global timeout budget. The per-operation budgets fall back to it when unset.
LLM_HTTP_TIMEOUT_SECONDS = int(os.getenv("LLM_HTTP_TIMEOUT_SECONDS", "60"))
LLM_HTTP_TIMEOUT_EMBED_SECONDS = int(
    os.getenv("LLM_HTTP_TIMEOUT_EMBED_SECONDS", str(min(LLM_HTTP_TIMEOUT_SECONDS, 30)))
)
LLM_HTTP_TIMEOUT_GENERATE_SECONDS = int(
    os.getenv("LLM_HTTP_TIMEOUT_GENERATE_SECONDS", str(LLM_HTTP_TIMEOUT_SECONDS))
)

# Retries inside the client. Zero means the caller owns retry policy
# (Celery tasks retry with a countdown instead).
LLM_HTTP_MAX_RETRIES = int(os.getenv("LLM_HTTP_MAX_RETRIES", "0"))

# Wait (attempt x backoff) seconds between client retries.
LLM_HTTP_RETRY_BACKOFF_SECONDS = float(os.getenv("LLM_HTTP_RETRY_BACKOFF_SECONDS", "2"))


# =============================================================================
# RETRIEVAL (SIMILARITY SEARCH)
# =============================================================================

# "numpy" scans every stored embedding. "rpc" calls the match_issues()
# database function instead.
SIMILARITY_BACKEND = os.getenv("SIMILARITY_BACKEND", "numpy").strip().lower()

# Classification wants a few close neighbours only.
CLASSIFY_MATCH_THRESHOLD = float(os.getenv("CLASSIFY_MATCH_THRESHOLD", "0.75"))
CLASSIFY_MATCH_COUNT = int(os.getenv("CLASSIFY_MATCH_COUNT", "3"))

# Officer chat uses a looser threshold and a wider window for open questions.
CHAT_MATCH_THRESHOLD = float(os.getenv("CHAT_MATCH_THRESHOLD", "0.70"))
CHAT_MATCH_COUNT = int(os.getenv("CHAT_MATCH_COUNT", "20"))


# =============================================================================
# BATCH AGENTS (ESCALATION / WEEKLY SUMMARY)
# =============================================================================

# High/Critical issues still "new" after this many hours get an escalation draft.
ESCALATION_THRESHOLD_HOURS = float(os.getenv("ESCALATION_THRESHOLD_HOURS", "48"))

# Upper bound on issues escalated per run.
ESCALATION_BATCH_LIMIT = int(os.getenv("ESCALATION_BATCH_LIMIT", "20"))

# Trailing window for the weekly bulletin.
SUMMARY_WINDOW_DAYS = int(os.getenv("SUMMARY_WINDOW_DAYS", "7"))

# Concurrent model calls per batch run. The inference server is usually a
# single local process with no admission control, so keep this small (1-4).
BATCH_CONCURRENCY = max(1, int(os.getenv("BATCH_CONCURRENCY", "1")))


# =============================================================================
# EMBEDDING QUEUE
# =============================================================================

# "sync" embeds during submission. "queue" stores the issue and defers the
# embedding to the queue worker.
SUBMISSION_EMBEDDING_MODE = os.getenv("SUBMISSION_EMBEDDING_MODE", "sync").strip().lower()

# Jobs claimed per drain.
EMBEDDING_QUEUE_BATCH_SIZE = int(os.getenv("EMBEDDING_QUEUE_BATCH_SIZE", "5"))

# A claim older than this is considered abandoned and may be re-claimed.
EMBEDDING_QUEUE_VISIBILITY_TIMEOUT_SECONDS = int(
    os.getenv("EMBEDDING_QUEUE_VISIBILITY_TIMEOUT_SECONDS", "300")
)

# After this many failed attempts the entry is parked as "failed".
EMBEDDING_QUEUE_MAX_ATTEMPTS = int(os.getenv("EMBEDDING_QUEUE_MAX_ATTEMPTS", "5"))


# =============================================================================
# CITIZEN SUBMISSIONS
# =============================================================================

# Uploaded photos are written here. Served by the web tier, not by this API.
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./data/uploads")

# 10MB is plenty for a phone photo.
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

# Chunk size when writing uploads to disk.
FILE_WRITE_CHUNK_SIZE = 8192

TITLE_MIN_CHARS = 3
DESCRIPTION_MIN_CHARS = 10


# =============================================================================
# CELERY
# =============================================================================

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/0")

# Seconds before a task retries after the model server was unreachable.
TASK_RETRY_COUNTDOWN_SECONDS = int(os.getenv("TASK_RETRY_COUNTDOWN_SECONDS", "60"))

# Beat schedule. Disabled schedules are simply not registered.
SCHEDULE_ESCALATION_MINUTES = int(os.getenv("SCHEDULE_ESCALATION_MINUTES", "60"))
SCHEDULE_EMBEDDING_QUEUE_SECONDS = int(os.getenv("SCHEDULE_EMBEDDING_QUEUE_SECONDS", "60"))
SCHEDULE_WEEKLY_SUMMARY_ENABLED = _env_bool("SCHEDULE_WEEKLY_SUMMARY_ENABLED", "true")


@dataclass(frozen=True)
class TriageSettings:
    llm_base_url: str = LLM_HTTP_BASE_URL
    embedding_model: str = EMBEDDING_MODEL
    generation_model: str = GENERATION_MODEL
    embed_timeout_seconds: int = LLM_HTTP_TIMEOUT_EMBED_SECONDS
    generate_timeout_seconds: int = LLM_HTTP_TIMEOUT_GENERATE_SECONDS
    max_retries: int = LLM_HTTP_MAX_RETRIES
    retry_backoff_seconds: float = LLM_HTTP_RETRY_BACKOFF_SECONDS
    similarity_backend: str = SIMILARITY_BACKEND
    classify_match_threshold: float = CLASSIFY_MATCH_THRESHOLD
    classify_match_count: int = CLASSIFY_MATCH_COUNT
    chat_match_threshold: float = CHAT_MATCH_THRESHOLD
    chat_match_count: int = CHAT_MATCH_COUNT
    escalation_threshold_hours: float = ESCALATION_THRESHOLD_HOURS
    escalation_batch_limit: int = ESCALATION_BATCH_LIMIT
    summary_window_days: int = SUMMARY_WINDOW_DAYS
    batch_concurrency: int = BATCH_CONCURRENCY
    submission_embedding_mode: str = SUBMISSION_EMBEDDING_MODE
    queue_batch_size: int = EMBEDDING_QUEUE_BATCH_SIZE
    queue_visibility_timeout_seconds: int = EMBEDDING_QUEUE_VISIBILITY_TIMEOUT_SECONDS
    queue_max_attempts: int = EMBEDDING_QUEUE_MAX_ATTEMPTS
    upload_dir: str = UPLOAD_DIR
    max_upload_bytes: int = MAX_UPLOAD_BYTES
