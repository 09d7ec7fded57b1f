"""
=============================================================================
CABINEX - Endpoints de Administración
=============================================================================
API REST para el panel de administración.
Incluye:
- Vista de todos los saldos y ajuste manual con auditoría
- Historial global (todos los estados, filtro opcional por cabinet)
- Logout forzado de un cabinet
- Gestión de claves de acceso
=============================================================================
"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db_session
from . import history, ledger, security

router = APIRouter(prefix="/api/admin", tags=["Admin"])
keys_router = APIRouter(prefix="/api/auth/keys", tags=["Access Keys"])


# =============================================================================
# SCHEMAS
# =============================================================================

class BalanceUpdateRequest(BaseModel):
    """Ajuste manual de un saldo. El comentario es obligatorio."""
    amount: Decimal
    admin_name: Optional[str] = None
    comment: Optional[str] = None


class AccessKeyCreateRequest(BaseModel):
    access_key: str = Field(..., min_length=1, max_length=64)
    cabinet: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=255)


# =============================================================================
# ENDPOINTS: SALDOS
# =============================================================================

@router.get("/balances/all")
async def list_all_balances(db: AsyncSession = Depends(get_db_session)):
    balances = await ledger.list_balances(db)
    return [b.to_dict() for b in balances]


@router.patch("/balances/{balance_id}")
async def update_balance(
    balance_id: int,
    body: BalanceUpdateRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """
    Sobrescribe el saldo y registra en admin_logs el valor anterior y el
    nuevo. No recalcula nada desde el historial.
    """
    await ledger.set_balance(db, balance_id, body.amount, body.admin_name, body.comment)
    return {"success": True}


# =============================================================================
# ENDPOINTS: HISTORIAL / SESIONES
# =============================================================================

@router.get("/history")
async def get_admin_history(
    cabinet: Optional[str] = Query(None, description="Cabinet o 'all'"),
    db: AsyncSession = Depends(get_db_session),
):
    return await history.collect_history(
        db,
        cabinet=history.normalize_cabinet_filter(cabinet),
        completed_only=False,
    )


@router.post("/force-logout/{cabinet}")
async def force_logout(cabinet: str, db: AsyncSession = Depends(get_db_session)):
    await security.force_logout(db, cabinet)
    return {"success": True}


# =============================================================================
# ENDPOINTS: CLAVES DE ACCESO
# =============================================================================

@keys_router.get("")
async def list_keys(db: AsyncSession = Depends(get_db_session)):
    keys = await security.list_access_keys(db)
    return [k.to_dict() for k in keys]


@keys_router.post("")
async def create_key(body: AccessKeyCreateRequest, db: AsyncSession = Depends(get_db_session)):
    record = await security.create_access_key(db, body.access_key, body.cabinet, body.description)
    return record.to_dict()


@keys_router.patch("/{key_id}/deactivate")
async def deactivate_key(key_id: int, db: AsyncSession = Depends(get_db_session)):
    await security.set_access_key_active(db, key_id, False)
    return {"success": True}


@keys_router.patch("/{key_id}/activate")
async def activate_key(key_id: int, db: AsyncSession = Depends(get_db_session)):
    await security.set_access_key_active(db, key_id, True)
    return {"success": True}


@keys_router.delete("/{key_id}")
async def delete_key(key_id: int, db: AsyncSession = Depends(get_db_session)):
    await security.delete_access_key(db, key_id)
    return {"success": True}
