"""
MAIN API - FastAPI adapter over the fair play engine

The engine is an in-process library; this surface exists for the game
engine and admin tooling:

GAMEPLAY:  /gate, /telemetry/answer, /sessions/{id}/finalize, /captcha/next
ADMIN:     /alerts, /links, /users/{id}/profile, /sessions/{id}/audit

Anomaly scores, evidence and link confidences only appear on admin
endpoints; the gate answers {allowed, reason, userMessage} and nothing else.
"""

import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .auth import get_api_key
from .engine import FairPlayEngine
from .models import (
    AccountLink, AnswerRequest, BehaviorProfile, ChallengePayload, ChallengeRequest,
    FinalizeRequest, FraudAlert, GateRequest, GateResponse, LinkReviewRequest,
    ResolveRequest, SessionSummary,
)

VERSION = "1.0.0"

engine = FairPlayEngine()

logging.basicConfig(
    level=engine.config.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Fair Play Engine API", version=VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "version": VERSION}


# ======================================================================
# GAMEPLAY
# ======================================================================

@app.post("/gate", response_model=GateResponse)
async def gate(request: GateRequest, api_key: str = Depends(get_api_key)):
    maintenance = engine.restrictions.maintenance_status()
    if maintenance.active:
        return GateResponse(allowed=False, reason="maintenance", userMessage=maintenance.message)

    decision = engine.restrictions.can_play(request.userId, request.mode)
    return GateResponse(
        allowed=decision.allowed,
        reason=decision.reason.value if decision.reason else None,
        userMessage=decision.user_message,
    )


@app.post("/telemetry/answer")
async def record_answer(request: AnswerRequest, api_key: str = Depends(get_api_key)):
    outcome = engine.telemetry.record_answer(
        request.sessionId, request.userId, request.questionNumber, request.responseTimeMs)
    return {"recorded": outcome.ok}


@app.post("/sessions/{session_id}/finalize", response_model=SessionSummary)
async def finalize_session(session_id: str, request: FinalizeRequest,
                           api_key: str = Depends(get_api_key)):
    summary = engine.telemetry.finalize_session(session_id, request.userId)
    if summary is None:
        raise HTTPException(status_code=404, detail="No telemetry for session")
    return summary


@app.post("/captcha/next", response_model=Optional[ChallengePayload])
async def next_challenge(request: ChallengeRequest, api_key: str = Depends(get_api_key)):
    """Challenge to show before this question, or null. The answer stays server-side."""
    challenge = engine.maybe_challenge(
        request.sessionId, request.userId, request.questionNumber, request.shownAt)
    if challenge is None:
        return None
    return ChallengePayload(
        type=challenge.type,
        prompt=challenge.prompt,
        options=list(challenge.options) if challenge.options else None,
        expiresInSeconds=challenge.expires_in_seconds,
    )


# ======================================================================
# ADMIN
# ======================================================================

@app.get("/alerts", response_model=List[FraudAlert])
async def list_alerts(status: Optional[str] = "new", severity: Optional[str] = None,
                      limit: int = 50, api_key: str = Depends(get_api_key)):
    try:
        return engine.alerts.list_alerts(status=status, severity=severity, limit=limit)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid status or severity")


@app.post("/alerts/{alert_id}/resolve", response_model=FraudAlert)
async def resolve_alert(alert_id: int, request: ResolveRequest, api_key: str = Depends(get_api_key)):
    alert = engine.alerts.resolve(alert_id, request.adminId, request.notes)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return alert


@app.get("/users/{user_id}/links", response_model=List[AccountLink])
async def user_links(user_id: str, api_key: str = Depends(get_api_key)):
    return engine.correlation.linked_accounts(user_id)


@app.post("/links/{link_id}/review", response_model=AccountLink)
async def review_link(link_id: int, request: LinkReviewRequest, api_key: str = Depends(get_api_key)):
    link = engine.correlation.review_link(link_id, request.adminId, request.confirmed)
    if link is None:
        raise HTTPException(status_code=404, detail="Link not found")
    return link


@app.get("/users/{user_id}/profile", response_model=BehaviorProfile)
async def user_profile(user_id: str, api_key: str = Depends(get_api_key)):
    profile = engine.behavior.get_profile(user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not available")
    return profile


@app.get("/sessions/{session_id}/audit")
async def session_audit(session_id: str, api_key: str = Depends(get_api_key)):
    report = engine.audit.session_report(session_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return report
