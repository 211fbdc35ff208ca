"""FastAPI routes exposing session statistics, aliases and client identities."""

from fastapi import APIRouter, HTTPException, Request

from controllers.session_controller import fresh_alias, issue_identity, session_stats

router = APIRouter()


@router.get("/sessions/stats")
async def session_stats_route(request: Request):
	try:
		return await session_stats(request)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/identity/alias")
async def alias_route():
	"""Return a freshly picked display alias."""
	return await fresh_alias()


@router.post("/identity")
async def identity_route():
	"""Issue an anonymous client id; clients without one call this before connecting."""
	return await issue_identity()
