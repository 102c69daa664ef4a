from fastapi import APIRouter, HTTPException, status
from rentalhub.models.user import UserLogin, UserLoginResponse
from rentalhub.utils.auth import verify_password, create_access_token
from rentalhub.database.db_operations import db_ops
from rentalhub.config.database import Collections

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.post("/login", response_model=UserLoginResponse)
async def login(credentials: UserLogin):
    """
    Authenticate a renter, owner or admin by phone number and return a JWT token
    """
    user = await db_ops.get_one(Collections.USERS, {"phone": credentials.phone})

    if not user or not verify_password(credentials.password, user.get("password", "")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid phone number or password"
        )

    if not user.get("is_active", True):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is deactivated"
        )

    token_data = {
        "sub": str(user["_id"]),
        "phone": user["phone"],
        "role": user.get("role", "renter"),
    }
    access_token = create_access_token(data=token_data)

    return UserLoginResponse(
        access_token=access_token,
        user_id=str(user["_id"]),
        role=token_data["role"],
        full_name=user.get("full_name"),
    )
