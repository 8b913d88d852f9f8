import os
import logging
import hmac
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Path, Depends, Header, Request, Form, File, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from celery.result import AsyncResult

from triage.cache import SUMMARIES_CACHE_PREFIX, cached
from triage.config import TriageSettings
from triage.db_session import make_session_factory
from triage.errors import (
    IssueNotFoundError,
    IssueValidationError,
    PersistenceError,
    ProviderError,
)
from triage.models import db_connect
from triage.services import TriageServices
from triage.store import IssueStore
from triage.tasks import (
    classify_issue_task,
    run_escalation_task,
    run_weekly_summary_task,
    drain_embedding_queue_task,
    app as celery_app,
)

# Metrics are internal-only and are scraped by Prometheus from the Docker network.
from api.metrics import instrument_app, record_api_error

# Set up Rate Limiting
# Every AI route ends in a call to a single local model server.
limiter = Limiter(key_func=get_remote_address)

# Set up structured logging for production observability
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("triage-api")

DEFAULT_API_KEY = "dev_secret_key_change_me"

engine = db_connect()
SessionLocal = make_session_factory(engine)


# Dependency Injection: each request gets services built from one settings
# snapshot. Tests swap this out through app.dependency_overrides.
def get_services() -> TriageServices:
    return TriageServices.build(TriageSettings(), session_factory=SessionLocal)


# SECURITY: API Key Verification
# Officer routes trigger model calls and change issue state.
async def verify_api_key(request: Request, x_api_key: str = Header(None)):
    expected_key = os.getenv("API_AUTH_KEY", DEFAULT_API_KEY)
    # Constant-time comparison reduces timing side-channels.
    if not hmac.compare_digest(x_api_key or "", expected_key):
        client_ip = request.client.host if request and request.client else "unknown"
        logger.warning(
            "Unauthorized API access attempt: invalid or missing API key",
            extra={"client_ip": client_ip, "path": request.url.path},
        )
        raise HTTPException(status_code=401, detail="Invalid or missing API Key")


# PERFORMANCE: Use ORJSONResponse for faster JSON serialization
app = FastAPI(
    title="Civic Triage API",
    description="Citizen complaint intake and AI-assisted triage for municipal officers.",
    default_response_class=ORJSONResponse
)

# /metrics, plus request counters and latency by route template and route group.
instrument_app(app)


# SECURITY: Startup Guardrail
# Warn the administrator if they forgot to change the default secret.
@app.on_event("startup")
async def check_security_config():
    key = os.getenv("API_AUTH_KEY", DEFAULT_API_KEY)
    if key == DEFAULT_API_KEY:
        logger.critical("SECURITY WARNING: You are using the default API Key. Please set API_AUTH_KEY in production.")


# Add Rate Limit handler to the app
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# --------------------------------------------------------------------------
# ERROR MAPPING
# --------------------------------------------------------------------------

@app.exception_handler(IssueValidationError)
async def _validation_error_handler(request: Request, exc: IssueValidationError):
    record_api_error(exc, 400)
    return ORJSONResponse(status_code=400, content={"detail": str(exc), "errors": exc.errors})


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError):
    # Body/query schema failures use the same 400 shape as workflow validation.
    errors = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors.setdefault(".".join(loc) or "__root__", []).append(err.get("msg", "Invalid value"))
    record_api_error(exc, 400)
    return ORJSONResponse(status_code=400, content={"detail": "Invalid input", "errors": errors})


@app.exception_handler(IssueNotFoundError)
async def _not_found_handler(request: Request, exc: IssueNotFoundError):
    record_api_error(exc, 404)
    return ORJSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ProviderError)
@app.exception_handler(PersistenceError)
async def _upstream_error_handler(request: Request, exc: Exception):
    logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
    record_api_error(exc, 500)
    return ORJSONResponse(status_code=500, content={"error": {"message": str(exc)}})


# SECURITY: Global Error Interceptor
# This catches any crash (500 error) and hides the stack trace from the user.
# The user gets "Internal Server Error", but we get the full details in the secure server logs.
@app.middleware("http")
async def catch_exceptions_middleware(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception as e:
        logger.error(f"Unhandled Exception: {str(e)}", exc_info=True)
        return ORJSONResponse(
            status_code=500,
            content={"error": {"message": "Internal Server Error. Our team has been notified."}}
        )


# SECURITY: Restrict CORS (Cross-Origin Resource Sharing)
# We load the allowed domains from the environment.
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
)


@app.get("/")
def read_root():
    return {"status": "ok", "message": "Civic Triage API is running. Go to /docs for the Swagger UI."}


@app.get("/health")
def health_check(services: TriageServices = Depends(get_services)):
    """
    Deep Health Check: verifies DB connectivity and probes the model server.
    Only the database decides the status code; the model server being down
    degrades AI features but intake and officer updates still work.
    """
    if not services.store.ping():
        logger.error("Health check failed: database unreachable")
        raise HTTPException(status_code=503, detail="Database unreachable")
    model_ok = services.model_server_healthy()
    return {
        "status": "healthy" if model_ok else "degraded",
        "database": "connected",
        "model_server": "reachable" if model_ok else "unreachable",
    }


# --------------------------------------------------------------------------
# CITIZEN INTAKE
# --------------------------------------------------------------------------

@app.post("/complaints")
@limiter.limit("10/minute")
def submit_complaint(
    request: Request,
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    latitude: Optional[str] = Form(None),
    longitude: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    services: TriageServices = Depends(get_services),
):
    """
    Public complaint form. Every field is optional at the HTTP layer so that
    missing values come back as field-level errors in one 400 response.
    """
    form = {"title": title, "description": description, "latitude": latitude, "longitude": longitude}
    issue = services.complaints().submit(
        form,
        image.file if image is not None else None,
        image.content_type if image is not None else None,
        image.filename if image is not None else None,
    )
    return {
        "status": "success",
        "message": "Complaint submitted successfully",
        "issue": issue.to_dict(),
    }


# --------------------------------------------------------------------------
# OFFICER CONSOLE
# --------------------------------------------------------------------------

class IssueUpdate(BaseModel):
    status: Optional[str] = None
    category: Optional[str] = None
    severity: Optional[str] = None


class SuggestionAcceptance(BaseModel):
    category: str
    severity: str


class Correction(BaseModel):
    """
    Officer override of an AI suggestion. `original_*` is what the AI
    suggested; `corrected_*` is what the officer saved.
    """
    original_category: Optional[str] = None
    original_severity: Optional[str] = None
    corrected_category: str
    corrected_severity: str
    status: Optional[str] = None


class FeedbackIn(BaseModel):
    issue_id: int = Field(..., ge=1)
    original_category: Optional[str] = None
    original_severity: Optional[str] = None
    corrected_category: Optional[str] = None
    corrected_severity: Optional[str] = None


class ChatQuestion(BaseModel):
    question: Optional[str] = Field(None, max_length=2000)


@app.get("/issues", dependencies=[Depends(verify_api_key)])
def list_issues(
    status: Optional[str] = Query(None, description="Filter by status: new, in_progress, resolved"),
    limit: int = Query(200, ge=1, le=1000),
    services: TriageServices = Depends(get_services),
):
    issues = services.store.list_issues(status=status, limit=limit)
    return {"issues": [i.to_dict() for i in issues], "count": len(issues)}


@app.get("/issues/{issue_id}", dependencies=[Depends(verify_api_key)])
def get_issue(issue_id: int = Path(..., ge=1), services: TriageServices = Depends(get_services)):
    return services.store.get_issue(issue_id).to_dict()


@app.post("/issues/{issue_id}/analyze", dependencies=[Depends(verify_api_key)])
@limiter.limit("20/minute")
def analyze_issue(request: Request, issue_id: int = Path(..., ge=1), services: TriageServices = Depends(get_services)):
    """
    Runs the classification workflow inline; the officer is waiting on the
    issue page. Returns the suggestion even if saving it failed (`persisted`).
    """
    result = services.classification().classify(issue_id)
    return result.to_dict()


@app.post("/issues/{issue_id}/update", dependencies=[Depends(verify_api_key)])
def update_issue(
    update: IssueUpdate,
    issue_id: int = Path(..., ge=1),
    services: TriageServices = Depends(get_services),
):
    issue = services.officer().update_issue(
        issue_id, status=update.status, category=update.category, severity=update.severity
    )
    return {"status": "success", "issue": issue.to_dict()}


@app.post("/issues/{issue_id}/accept-suggestion", dependencies=[Depends(verify_api_key)])
def accept_suggestion(
    suggestion: SuggestionAcceptance,
    issue_id: int = Path(..., ge=1),
    services: TriageServices = Depends(get_services),
):
    issue = services.officer().accept_suggestion(issue_id, suggestion.category, suggestion.severity)
    return {"status": "success", "issue": issue.to_dict()}


@app.post("/issues/{issue_id}/correction", dependencies=[Depends(verify_api_key)])
def submit_correction(
    correction: Correction,
    issue_id: int = Path(..., ge=1),
    services: TriageServices = Depends(get_services),
):
    result = services.officer().submit_correction(
        issue_id,
        original_category=correction.original_category,
        original_severity=correction.original_severity,
        corrected_category=correction.corrected_category,
        corrected_severity=correction.corrected_severity,
        status=correction.status,
    )
    return {"status": "success", "issue": result.issue.to_dict(), "feedback_logged": result.feedback_logged}


@app.post("/issues/{issue_id}/action-plan", dependencies=[Depends(verify_api_key)])
@limiter.limit("20/minute")
def suggest_action_plan(request: Request, issue_id: int = Path(..., ge=1), services: TriageServices = Depends(get_services)):
    issue = services.store.get_issue(issue_id)
    return {"issue_id": issue_id, "plan": services.officer().suggest_action_plan(issue)}


@app.post("/issues/{issue_id}/reply", dependencies=[Depends(verify_api_key)])
@limiter.limit("20/minute")
def draft_reply(request: Request, issue_id: int = Path(..., ge=1), services: TriageServices = Depends(get_services)):
    issue = services.store.get_issue(issue_id)
    return {"issue_id": issue_id, "reply": services.officer().draft_reply(issue)}


@app.post("/feedback", dependencies=[Depends(verify_api_key)])
def log_feedback(feedback: FeedbackIn, services: TriageServices = Depends(get_services)):
    """
    Standalone feedback record. Never fails because of the feedback write
    itself; `logged` tells the console whether it was kept.
    """
    services.store.get_issue(feedback.issue_id)
    logged = services.feedback().record(
        feedback.issue_id,
        original_category=feedback.original_category,
        original_severity=feedback.original_severity,
        corrected_category=feedback.corrected_category,
        corrected_severity=feedback.corrected_severity,
    )
    return {"status": "success", "logged": logged}


@app.post("/chat", dependencies=[Depends(verify_api_key)])
@limiter.limit("30/minute")
def chat(request: Request, body: ChatQuestion, services: TriageServices = Depends(get_services)):
    return services.chat().answer(body.question).to_dict()


@app.get("/escalations", dependencies=[Depends(verify_api_key)])
def list_escalations(services: TriageServices = Depends(get_services)):
    drafts = services.store.list_unsent_drafts()
    return {"drafts": [d.to_dict() for d in drafts], "count": len(drafts)}


@cached(expire=300, key_prefix=SUMMARIES_CACHE_PREFIX)
def _latest_summaries(store: IssueStore, limit: int) -> List[dict]:
    return [s.to_dict() for s in store.latest_summaries(limit)]


@app.get("/summaries", dependencies=[Depends(verify_api_key)])
def list_summaries(
    limit: int = Query(1, ge=1, le=52),
    services: TriageServices = Depends(get_services),
):
    """
    Latest weekly bulletins, newest first. Cached in Redis for five minutes;
    the summary task and CLI drop the cache when they append a bulletin.
    """
    return {"summaries": _latest_summaries(services.store, limit)}


# --------------------------------------------------------------------------
# BACKGROUND AGENTS (CELERY)
# --------------------------------------------------------------------------

def _task_accepted(task):
    return {
        "status": "processing",
        "task_id": str(task.id),
        "poll_url": f"/tasks/{task.id}"
    }


@app.post("/issues/{issue_id}/analyze-async", dependencies=[Depends(verify_api_key)])
@limiter.limit("20/minute")
def analyze_issue_async(request: Request, issue_id: int = Path(..., ge=1), services: TriageServices = Depends(get_services)):
    """
    Queues classification on the worker instead of waiting for the model.
    Use GET /tasks/{id} to check progress.
    """
    services.store.get_issue(issue_id)
    return _task_accepted(classify_issue_task.delay(issue_id))


@app.post("/agents/escalate", dependencies=[Depends(verify_api_key)])
@limiter.limit("5/minute")
def trigger_escalation(request: Request):
    return _task_accepted(run_escalation_task.delay())


@app.post("/agents/summarize", dependencies=[Depends(verify_api_key)])
@limiter.limit("5/minute")
def trigger_weekly_summary(request: Request):
    return _task_accepted(run_weekly_summary_task.delay())


@app.post("/agents/embed-queue", dependencies=[Depends(verify_api_key)])
@limiter.limit("10/minute")
def trigger_embedding_queue(request: Request, limit: Optional[int] = Query(None, ge=1, le=100)):
    return _task_accepted(drain_embedding_queue_task.delay(limit))


@app.get("/tasks/{task_id}")
def get_task_status(task_id: str):
    """
    Check the status of a background agent task.
    """
    task = AsyncResult(task_id, app=celery_app)

    if task.ready():
        result = task.result
        # Handle errors propagated from the worker
        if isinstance(result, Exception):
            return {"status": "failed", "error": str(result)}
        elif isinstance(result, dict) and "error" in result:
            return {"status": "failed", "error": result["error"]}

        return {
            "status": "complete",
            "result": result
        }
    else:
        return {"status": "processing"}
