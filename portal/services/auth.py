from typing import Dict

from fastapi import Depends, Request

from portal.core.exceptions import AuthenticationError, AuthorizationError

DEALER_ROLES = ("dealer", "admin")


def get_current_user(request: Request) -> Dict:
    """User attached by AuthMiddleware."""
    user = getattr(request.state, "user", None)
    if not user:
        raise AuthenticationError(message="User not authenticated", code="not_authenticated")
    return user


def require_role(*roles: str):
    """Dependency factory that only lets the given roles through."""
    def _check(user: Dict = Depends(get_current_user)) -> Dict:
        if user.get("role") not in roles:
            raise AuthorizationError(
                message=f"Requires one of roles: {', '.join(roles)}",
                code="forbidden",
                details={"user_role": user.get("role"), "allowed_roles": list(roles)},
            )
        return user
    return _check


def get_current_dealer(user: Dict = Depends(require_role(*DEALER_ROLES))) -> str:
    """Id of the dealer making the request."""
    return user["id"]
