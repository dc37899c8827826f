"""
api/routes/v1/dashboard.py -- Account summary for the signed-in user.

Returns a single payload suitable for a post-login landing page:
  - the user's profile
  - how many sessions are live
  - those sessions, newest first, with the current one flagged

Read-only -- no mutations here. /api/v1/dashboard is in the default
PRIVATE_PREFIXES, so unauthenticated browsers are redirected to login by the
gate before this handler runs; the get_current_user dependency covers deployments
that configure the gate differently.
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from api.limiter import limiter
from api.models import DashboardResponse
from api.routes.v1.auth import session_to_info, user_to_me
from auth.dependencies import current_session_id, get_current_user
from auth.models import User
from auth.sessions import SessionManager

router = APIRouter()


@limiter.limit("60/minute")
@router.get("/dashboard", response_model=DashboardResponse)
def get_dashboard(request: Request, current_user: User = Depends(get_current_user)) -> DashboardResponse:
    sessions: SessionManager = request.app.state.sessions
    outcome = sessions.list_sessions(current_user.id)
    if not outcome.ok:
        raise HTTPException(
            status_code=503,
            detail={"code": outcome.kind.value, "message": outcome.message},
        )

    current_id = current_session_id(request)
    infos = [session_to_info(s, current_id) for s in outcome.value]
    return DashboardResponse(
        user=user_to_me(current_user),
        active_sessions=len(infos),
        sessions=infos,
    )
