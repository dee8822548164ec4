"""Vote casting and ledger endpoints."""
from fastapi import APIRouter, Depends, Query, Request, status

from evote.api.auth import get_current_voter, require_admin
from evote.api.models import CastVoteRequest
from evote.api.rate_limit import cast_vote_limit, limiter
from evote.shared.models import Voter

router = APIRouter(prefix="/votes", tags=["Votes"])


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit(cast_vote_limit)
async def cast_vote(
    request: Request,
    body: CastVoteRequest,
    voter: Voter = Depends(get_current_voter)
):
    """
    Cast the authenticated voter's single ballot.

    - **candidateId**: Candidate to vote for

    Returns the ballot receipt (id, candidateId, timestamp).
    """
    receipt = await request.app.state.vote_service.cast_vote(voter.id, body.candidate_id)
    return {
        "success": True,
        "message": "Vote cast successfully",
        "data": {"vote": receipt.to_dict()},
    }


@router.get("/stats")
async def get_vote_stats(request: Request):
    """Turnout and per-candidate totals counted from the ledger."""
    stats = await request.app.state.vote_service.vote_stats()
    return {"success": True, "data": stats}


@router.get("/my-vote")
async def get_my_vote(request: Request, voter: Voter = Depends(get_current_voter)):
    """Return the caller's own ballot."""
    vote = await request.app.state.vote_service.my_vote(voter.id)
    return {"success": True, "data": {"vote": vote}}


@router.get("", dependencies=[Depends(require_admin)])
async def get_votes(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1, le=100)
):
    """List ballots newest first (admin only)."""
    rows, pagination = await request.app.state.vote_service.list_recent(page, limit)
    return {
        "success": True,
        "count": len(rows),
        "pagination": pagination,
        "data": rows,
    }
