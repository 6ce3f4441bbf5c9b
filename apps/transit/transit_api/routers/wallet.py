from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user, get_db
from ..models import User
from ..schemas import WalletEntryOut, WalletOut
from ..wallet_ledger import WalletLedger, get_wallet_ledger


router = APIRouter(prefix="/wallet", tags=["wallet"])


@router.get("", response_model=WalletOut)
def get_wallet(
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    ledger: WalletLedger = Depends(get_wallet_ledger),
):
    entries = ledger.list_entries(db, user.id, limit=limit)
    return WalletOut(
        balance=ledger.get_balance(db, user.id),
        entries=[
            WalletEntryOut(
                id=str(e.id),
                direction=e.direction,
                amount=e.amount,
                amount_signed=e.amount_signed,
                reason=e.reason,
                related_id=e.related_id,
                balance_after=e.balance_after,
                created_at=e.created_at,
            )
            for e in entries
        ],
    )
