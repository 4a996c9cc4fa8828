from collections.abc import Callable
from enum import Enum
from typing import Annotated

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer


class Role(str, Enum):
    """Supported roles."""

    ADMIN = "admin"
    STAFF = "staff"
    KIOSK = "kiosk"


class User:
    """Simple representation of an authenticated user.

    ``departments`` limits which offices a staff member may operate; ``None``
    means every department.
    """

    def __init__(self, username: str, roles: tuple[Role, ...], departments: tuple[str, ...] | None = None):
        self.username = username
        self.roles = roles
        self.departments = departments

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    def can_operate(self, department: str) -> bool:
        return self.departments is None or department in self.departments


TOKEN_USER_MAP: dict[str, tuple[str, tuple[Role, ...], tuple[str, ...] | None]] = {
    "admin-token": ("admin", (Role.ADMIN, Role.STAFF, Role.KIOSK), None),
    "registrar-staff-token": ("registrar-staff", (Role.STAFF, Role.KIOSK), ("registrar",)),
    "admissions-staff-token": ("admissions-staff", (Role.STAFF, Role.KIOSK), ("admissions",)),
}

bearer_scheme = HTTPBearer(auto_error=False)


def resolve_user_from_token(token: str | None) -> User:
    """Return a user instance associated with the provided bearer token."""

    if token is None:
        return User(username="kiosk", roles=(Role.KIOSK,), departments=())

    if token not in TOKEN_USER_MAP:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")

    username, roles, departments = TOKEN_USER_MAP[token]
    return User(username=username, roles=roles, departments=departments)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    request: Request,
) -> User:
    """Very small authentication stub.

    Staff sign-in lives outside this service; static tokens map to known
    operators so the console endpoints can be exercised.
    """

    cached = getattr(request.state, "user", None)
    if isinstance(cached, User):
        return cached

    token = credentials.credentials if credentials is not None else None
    user = resolve_user_from_token(token)
    request.state.user = user
    return user


def role_required(role: Role) -> Callable[[User], User]:
    """Dependency factory ensuring the current user has the requested role.

    When the route carries a ``department`` path parameter the user must also
    be allowed to operate that department.
    """

    async def dependency(request: Request, user: Annotated[User, Depends(get_current_user)]) -> User:
        if not user.has_role(role):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        department = request.path_params.get("department")
        if department is not None and not user.can_operate(str(department).lower()):
            raise HTTPException(status_code=403, detail=f"Not allowed to operate the {department} queue")
        return user

    return dependency


CurrentUser = Annotated[User, Depends(get_current_user)]
