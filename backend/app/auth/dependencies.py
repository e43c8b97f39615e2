"""
FastAPI dependencies for authentication.
Provides get_current_user dependency that verifies Firebase JWT tokens.
"""
import logging
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.config import settings
from app.database import get_db
from app.models.user import User
from app.models.credit_ledger import LedgerReason
from app.auth.firebase import verify_firebase_token
from app.services.credit_service import CreditService
from app.utils.metrics import credits_granted_total

logger = logging.getLogger(__name__)

# HTTPBearer scheme for extracting Authorization header
security = HTTPBearer()


async def _get_or_create_user(db: AsyncSession, firebase_uid: str, email: str = None) -> User:
    """
    Lookup user by firebase_uid, creating it on first sight.
    New users get their welcome credits through the ledger.
    """
    result = await db.execute(
        select(User).where(User.firebase_uid == firebase_uid)
    )
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(firebase_uid=firebase_uid, email=email, credits_remaining=0)
    db.add(user)
    try:
        # The user row and its welcome grant commit together
        await db.flush()
        user_id = user.id
        if settings.welcome_credits > 0:
            await CreditService.grant(db, user_id, settings.welcome_credits, LedgerReason.WELCOME, commit=False)
        await db.commit()
    except IntegrityError:
        # Another request created the same user first
        await db.rollback()
        result = await db.execute(
            select(User).where(User.firebase_uid == firebase_uid)
        )
        return result.scalar_one()
    except Exception:
        await db.rollback()
        logger.error(f"Failed to create user for {firebase_uid}", exc_info=True)
        raise

    if settings.welcome_credits > 0:
        credits_granted_total.labels(reason=LedgerReason.WELCOME.value).inc(settings.welcome_credits)
        logger.info(f"Created user {user_id} with {settings.welcome_credits} welcome credits")

    await db.refresh(user)
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    FastAPI dependency that verifies Firebase JWT token and returns User.

    Flow:
    1. Extract Bearer token from Authorization header
    2. Verify token with Firebase Admin SDK
    3. Extract uid and email from token claims
    4. Lookup user in database by firebase_uid
    5. Create user if doesn't exist (with welcome credits)
    6. Return User object

    Raises:
        HTTPException 401: If token is missing, invalid, or expired
    """
    token = credentials.credentials
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        # Validates signature, expiration, issuer and audience
        decoded_token = verify_firebase_token(token)
        firebase_uid = decoded_token.get("uid")
        email = decoded_token.get("email")
        if not firebase_uid:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token: missing uid"
            )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return await _get_or_create_user(db, firebase_uid, email)
