from fastapi import APIRouter, Request

from kiosk.dependencies.auth import CurrentUser

router = APIRouter(tags=["health"])


@router.get("/ping")
async def ping(request: Request) -> dict[str, str]:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    return {"status": "ok", "queue": "ready" if dispatcher is not None else "unavailable"}


@router.get("/ping/secure")
async def secure_ping(user: CurrentUser) -> dict[str, object]:
    return {"status": "ok", "user": user.username, "roles": [role.value for role in user.roles]}
