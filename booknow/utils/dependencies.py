from fastapi import BackgroundTasks, Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.background import BackgroundDispatcher
from ..services.booking_service import BookingService
from ..services.payment_gateway import PaymentGateway, get_payment_gateway

from .security import Principal, principal_from_token
from .logging_config import principal_var

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    """Resolve the caller from the Bearer token"""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    principal = principal_from_token(credentials.credentials)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    principal_var.set(str(principal))
    return principal


def require_role(*roles: str):
    """Dependency factory restricting an endpoint to the given roles"""
    def checker(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"This action requires role: {', '.join(roles)}",
            )
        return principal
    return checker


def get_booking_service(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> BookingService:
    """BookingService bound to this request's session and background tasks"""
    return BookingService(db, gateway, scheduler=BackgroundDispatcher(background_tasks))
