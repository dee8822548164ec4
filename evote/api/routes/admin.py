"""Admin endpoints: user management, election reset and reconciliation."""
from fastapi import APIRouter, Depends, Query, Request

from evote.api.auth import require_admin
from evote.api.models import VoterUpdate

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


@router.get("/users")
async def get_users(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1, le=100)
):
    voters, pagination = await request.app.state.voters.list(page, limit)
    return {
        "success": True,
        "count": len(voters),
        "pagination": pagination,
        "data": [v.to_dict() for v in voters],
    }


@router.get("/users/{voter_id}")
async def get_user(request: Request, voter_id: int):
    voter = await request.app.state.voters.get(voter_id)
    return {"success": True, "data": voter.to_dict()}


@router.put("/users/{voter_id}")
async def update_user(request: Request, voter_id: int, body: VoterUpdate):
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    voter = await request.app.state.voters.update(voter_id, fields)
    return {"success": True, "data": voter.to_dict()}


@router.delete("/users/{voter_id}")
async def delete_user(request: Request, voter_id: int):
    await request.app.state.voters.delete(voter_id)
    return {"success": True, "message": "User deleted successfully"}


@router.post("/reset-votes")
async def reset_votes(request: Request):
    """
    Delete all ballots and reset every counter and has-voted flag.

    Irreversible; runs as one transaction.
    """
    result = await request.app.state.vote_service.reset_election()
    return {
        "success": True,
        "message": "All votes have been reset successfully",
        "data": result,
    }


@router.post("/reconcile")
async def reconcile(request: Request):
    """Re-derive vote counts and has-voted flags from the ballot ledger."""
    result = await request.app.state.vote_service.reconcile()
    return {"success": True, "data": result}


@router.get("/consistency")
async def consistency(request: Request):
    """Report counters and flags that disagree with the ledger, without repairing."""
    discrepancies = await request.app.state.vote_service.find_discrepancies()
    consistent = not discrepancies["candidates"] and not discrepancies["voters"]
    return {"success": True, "data": {"consistent": consistent, **discrepancies}}


@router.get("/stats")
async def get_stats(request: Request):
    stats = await request.app.state.vote_service.admin_stats()
    return {"success": True, "data": stats}
