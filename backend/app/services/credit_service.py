"""
Credit service: the ledger and its denormalized balance.
Every balance change is a conditional/atomic UPDATE on users.credits_remaining
plus a ledger insert, committed together. One video generation = 1 credit.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User
from app.models.credit_ledger import CreditLedgerEntry, LedgerReason


class CreditService:
    """Service for credit management with atomic operations."""

    # Cost per video generation
    VIDEO_GENERATION_COST = 1

    @staticmethod
    async def debit_one(db: AsyncSession, user_id: str, job_id: Optional[str] = None) -> bool:
        """
        Atomically debit one credit for a video generation job.

        The decrement only matches when credits_remaining >= 1, so the row
        lock taken by the UPDATE serializes concurrent debits for the same
        user and at most one of them can consume the last credit.

        Args:
            db: Database session
            user_id: User ID
            job_id: Internal Job id the debit pays for

        Returns:
            True if debited, False if insufficient credits (no change made)
        """
        cost = CreditService.VIDEO_GENERATION_COST
        result = await db.execute(
            update(User)
            .where(User.id == user_id)
            .where(User.credits_remaining >= cost)
            .values(
                credits_remaining=User.credits_remaining - cost,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            # Nothing was written; end the transaction
            await db.commit()
            return False

        db.add(CreditLedgerEntry(
            user_id=user_id,
            delta=-cost,
            reason=LedgerReason.VIDEO_GENERATION.value,
            job_id=job_id,
        ))
        await db.commit()
        return True

    @staticmethod
    async def refund(db: AsyncSession, user_id: str, job_id: Optional[str] = None) -> None:
        """
        Give back one credit for a job that never started.

        Raises:
            ValueError: If the user does not exist
        """
        await CreditService._apply_increment(
            db,
            user_id,
            CreditService.VIDEO_GENERATION_COST,
            LedgerReason.REFUND,
            job_id=job_id,
        )
        await db.commit()

    @staticmethod
    async def grant(
        db: AsyncSession,
        user_id: str,
        amount: int,
        reason: LedgerReason,
        related_id: Optional[str] = None,
        plan: Optional[str] = None,
        commit: bool = True,
    ) -> None:
        """
        Add credits to a user balance and record the ledger entry.

        Args:
            db: Database session
            user_id: User ID
            amount: Credits to add (must be positive)
            reason: Ledger reason (welcome, promo, subscription_renewal...)
            related_id: External reference such as a Stripe invoice id
            plan: Plan key for subscription grants
            commit: Set False to leave the transaction open for the caller

        Raises:
            ValueError: If amount is not positive or the user does not exist
        """
        if amount <= 0:
            raise ValueError("Credit amount must be positive")

        await CreditService._apply_increment(
            db, user_id, amount, reason, related_id=related_id, plan=plan
        )
        if commit:
            await db.commit()

    @staticmethod
    async def _apply_increment(
        db: AsyncSession,
        user_id: str,
        amount: int,
        reason: LedgerReason,
        job_id: Optional[str] = None,
        related_id: Optional[str] = None,
        plan: Optional[str] = None,
    ) -> None:
        result = await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                credits_remaining=User.credits_remaining + amount,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ValueError(f"User {user_id} not found")

        db.add(CreditLedgerEntry(
            user_id=user_id,
            delta=amount,
            reason=reason.value,
            job_id=job_id,
            related_id=related_id,
            plan=plan,
        ))
        await db.flush()

    @staticmethod
    async def get_balance(db: AsyncSession, user_id: str) -> int:
        """
        Get cached credit balance for user.

        Returns:
            Current credit balance (0 if user not found)
        """
        result = await db.execute(
            select(User.credits_remaining).where(User.id == user_id)
        )
        credits = result.scalar_one_or_none()
        return credits or 0

    @staticmethod
    async def get_ledger_balance(db: AsyncSession, user_id: str) -> int:
        """Recompute the balance from the ledger (must equal get_balance)."""
        result = await db.execute(
            select(func.coalesce(func.sum(CreditLedgerEntry.delta), 0))
            .where(CreditLedgerEntry.user_id == user_id)
        )
        return int(result.scalar() or 0)

    @staticmethod
    async def get_history(db: AsyncSession, user_id: str, limit: int = 50) -> List[CreditLedgerEntry]:
        """Most recent ledger entries first."""
        result = await db.execute(
            select(CreditLedgerEntry)
            .where(CreditLedgerEntry.user_id == user_id)
            .order_by(CreditLedgerEntry.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
