"""
FastAPI routes for directory lookups used when inviting attendees.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from services.api.service_meeting import get_agent
from services.teams_agent.main import MeetingAgentService
from shared.errors import MeetingAgentError, ServiceUnavailableError

logger = logging.getLogger(__name__)

router = APIRouter()


def _graph(agent: MeetingAgentService):
    if not agent.graph_client.is_available():
        raise ServiceUnavailableError("Microsoft Graph is not configured")
    return agent.graph_client


@router.get("/search")
async def search_users(
    q: str = Query(..., min_length=2),
    limit: int = Query(20, ge=1, le=100),
    agent: MeetingAgentService = Depends(get_agent),
):
    """Search the organization directory by name or email prefix."""
    try:
        users = await _graph(agent).search_users(q, limit=limit)
        return {"users": users, "count": len(users)}
    except MeetingAgentError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        logger.error(f"Error searching users: {e}")
        raise HTTPException(status_code=500, detail="Failed to search users")


@router.get("/")
async def list_users(
    limit: int = Query(50, ge=1, le=200),
    agent: MeetingAgentService = Depends(get_agent),
):
    try:
        users = await _graph(agent).list_users(limit=limit)
        return {"users": users, "count": len(users)}
    except MeetingAgentError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        logger.error(f"Error listing users: {e}")
        raise HTTPException(status_code=500, detail="Failed to list users")


class ResolveUsersRequest(BaseModel):
    names: List[str] = []


@router.post("/resolve")
async def resolve_users(
    request: ResolveUsersRequest,
    agent: MeetingAgentService = Depends(get_agent),
):
    """Resolve display names to directory users and their emails."""
    names = [n.strip() for n in request.names if n and n.strip()]
    if not names:
        raise HTTPException(status_code=400, detail="An array of 'names' is required")
    try:
        logger.info("🔍 Resolving user names to emails", extra={"names": names})
        resolved = await _graph(agent).resolve_users(names)
        found = {user["requested_name"] for user in resolved}
        return {
            "success": True,
            "resolved_users": resolved,
            "unresolved": [n for n in names if n not in found],
            "summary": {"requested": len(names), "found": len(resolved)},
        }
    except MeetingAgentError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception as e:
        logger.error(f"Error resolving users: {e}")
        raise HTTPException(status_code=500, detail="Failed to resolve user names")
