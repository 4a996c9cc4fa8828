from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from kiosk.dependencies.auth import Role, User, role_required
from kiosk.queue.dispatcher import QueueDispatcher

require_staff = role_required(Role.STAFF)
require_admin = role_required(Role.ADMIN)

StaffUser = Annotated[User, Depends(require_staff)]
AdminUser = Annotated[User, Depends(require_admin)]


async def get_dispatcher(request: Request) -> QueueDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Queue service is not configured")
    return dispatcher


DispatcherDep = Annotated[QueueDispatcher, Depends(get_dispatcher)]
