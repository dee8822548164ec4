"""Published results."""
from fastapi import APIRouter, Query, Request

from evote.shared.models import TallySource

router = APIRouter(prefix="/results", tags=["Results"])


@router.get("")
async def get_results(
    request: Request,
    source: TallySource = Query(TallySource.COUNTERS)
):
    """
    Get the tally: most votes first, ties broken by candidate ID.

    - **source**: `counters` reads each candidate's vote count,
      `ledger` recounts the ballots
    """
    rows = await request.app.state.vote_service.published_results(source)
    return {"success": True, "source": source.value, "data": rows}
