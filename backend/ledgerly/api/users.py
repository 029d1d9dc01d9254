"""User endpoints."""
from fastapi import APIRouter, Depends

from ledgerly.api.deps import get_current_user
from ledgerly.models.user import User
from ledgerly.schemas.auth import UserResponse

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=UserResponse)
def get_me(current_user: User = Depends(get_current_user)):
    """Get the authenticated user's identity record."""
    return current_user
