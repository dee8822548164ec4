"""Candidate endpoints."""
from fastapi import APIRouter, Depends, Request, status

from evote.api.auth import require_admin
from evote.api.models import CandidateCreate, CandidateUpdate

router = APIRouter(prefix="/candidates", tags=["Candidates"])


@router.get("")
async def get_candidates(request: Request):
    candidates = await request.app.state.candidates.list()
    return {
        "success": True,
        "count": len(candidates),
        "data": [c.to_dict() for c in candidates],
    }


@router.get("/position/{position}")
async def get_candidates_by_position(request: Request, position: str):
    candidates = await request.app.state.candidates.list(position)
    return {
        "success": True,
        "count": len(candidates),
        "data": [c.to_dict() for c in candidates],
    }


@router.get("/{candidate_id}")
async def get_candidate(request: Request, candidate_id: int):
    candidate = await request.app.state.candidates.get(candidate_id)
    return {"success": True, "data": candidate.to_dict()}


@router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(require_admin)])
async def create_candidate(request: Request, body: CandidateCreate):
    candidate = await request.app.state.candidates.create(
        body.name, body.party, body.position, body.bio, body.image_url
    )
    return {"success": True, "data": candidate.to_dict()}


@router.put("/{candidate_id}", dependencies=[Depends(require_admin)])
async def update_candidate(request: Request, candidate_id: int, body: CandidateUpdate):
    candidate = await request.app.state.candidates.update(candidate_id, body.model_dump())
    return {"success": True, "data": candidate.to_dict()}


@router.delete("/{candidate_id}", dependencies=[Depends(require_admin)])
async def delete_candidate(request: Request, candidate_id: int):
    """Delete a candidate; refused while the candidate has votes."""
    await request.app.state.candidates.delete(candidate_id)
    return {"success": True, "message": "Candidate deleted successfully"}
