"""
Cafe Amore — Saved addresses API
"""
from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_amore.api.deps import current_user
from cafe_amore.db.database import get_db
from cafe_amore.models.address import Address
from cafe_amore.schemas.address import AddressCreate, AddressOut
from cafe_amore.services.addresses import (
    AddressError,
    AddressNotFound,
    delete_address,
    list_addresses,
    save_address,
)

router = APIRouter(prefix="/addresses", tags=["addresses"])


def _address_out(address: Address) -> AddressOut:
    return AddressOut(
        id=address.id,
        full_address=address.full_address,
        barangay=address.barangay,
        delivery_fee=address.delivery_fee,
        created_at=address.created_at,
    )


@router.get("", response_model=list[AddressOut])
async def get_addresses(user: dict = Depends(current_user), db: AsyncSession = Depends(get_db)):
    return [_address_out(a) for a in await list_addresses(db, user["uid"])]


@router.post("", response_model=AddressOut, status_code=status.HTTP_201_CREATED)
async def create_address(
    payload: AddressCreate, user: dict = Depends(current_user), db: AsyncSession = Depends(get_db)
):
    try:
        address = await save_address(db, user["uid"], **payload.model_dump())
    except AddressError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _address_out(address)


@router.delete("/{address_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_address(address_id: str, user: dict = Depends(current_user), db: AsyncSession = Depends(get_db)):
    try:
        await delete_address(db, user["uid"], address_id)
    except AddressNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
