"""Voter registration endpoints."""
from fastapi import APIRouter, Depends, Request, status

from evote.api.auth import get_current_voter
from evote.api.models import VoterRegistration
from evote.shared.models import Voter

router = APIRouter(prefix="/voters", tags=["Voters"])


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register_voter(request: Request, body: VoterRegistration):
    """
    Register a voter.

    Voter ID is stored upper-case and email lower-case; each of voter ID,
    email and phone may be registered only once.
    """
    voter = await request.app.state.voters.register(
        body.name, body.voter_code, body.email, body.phone
    )
    return {"success": True, "data": {"user": voter.to_dict()}}


@router.get("/me")
async def get_me(voter: Voter = Depends(get_current_voter)):
    return {"success": True, "data": {"user": voter.to_dict()}}
