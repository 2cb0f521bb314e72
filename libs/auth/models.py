from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

CLIENT_ROLE = "client"
COACH_ROLE = "coach"
ADMIN_ROLE = "admin"
SERVICE_ROLE = "service_role"


class AuthUser(BaseModel):
    """
    Represents an authenticated actor resolved from a bearer token.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="sub")
    email: Optional[EmailStr] = None
    name: Optional[str] = None
    role: str = CLIENT_ROLE

    @property
    def is_admin(self) -> bool:
        return self.role in (ADMIN_ROLE, SERVICE_ROLE)

    @property
    def is_staff(self) -> bool:
        return self.role == COACH_ROLE or self.is_admin
