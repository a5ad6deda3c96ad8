from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException

from sha_claims.config import settings

ADMIN = "admin"
CLAIMS_MANAGER = "claims_manager"
CLINICAL_OFFICER = "clinical_officer"
RECEPTIONIST = "receptionist"

ALL_ROLES = (ADMIN, CLAIMS_MANAGER, CLINICAL_OFFICER, RECEPTIONIST)


@dataclass
class UserContext:
    api_key: str
    role: str

    @property
    def actor(self) -> str:
        """Name recorded as the performer of an action."""
        return f"{self.role}:{self.api_key[-4:]}"


def require_auth(x_api_key: str = Header(...)) -> UserContext:
    role = settings.api_keys.get(x_api_key)
    if role is None:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return UserContext(api_key=x_api_key, role=role)


def require_role(*allowed: str):
    """Dependency that admits the listed roles.  Admins are always admitted."""
    def checker(user: UserContext = Depends(require_auth)) -> UserContext:
        if user.role != ADMIN and user.role not in allowed:
            raise HTTPException(
                status_code=403,
                detail=f"Requires role: {', '.join(allowed)}"
            )
        return user
    return checker
