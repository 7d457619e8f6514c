"""
Cafe Amore — Delivery addresses and fees

The delivery fee always comes from the barangay fee table, never from the
client. A saved address keeps the fee it was saved with.
"""
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_amore.core.config import get_settings
from cafe_amore.models.address import Address

settings = get_settings()
logger = logging.getLogger(__name__)


class AddressError(ValueError):
    """The address cannot be delivered to."""


class AddressNotFound(LookupError):
    pass


def delivery_fee_for(barangay: str | None) -> int:
    barangay = (barangay or "").strip()
    if not barangay:
        raise AddressError("Select a barangay for delivery.")
    if barangay not in settings.DELIVERY_FEES:
        raise AddressError(f"Delivery is not available in {barangay}.")
    return settings.DELIVERY_FEES[barangay]


async def list_addresses(db: AsyncSession, user_id: str) -> list[Address]:
    result = await db.execute(
        select(Address).where(Address.user_id == user_id).order_by(Address.created_at, Address.id)
    )
    return list(result.scalars().all())


async def get_address(db: AsyncSession, user_id: str, address_id: str) -> Address:
    address = await db.scalar(select(Address).where(Address.id == address_id, Address.user_id == user_id))
    if address is None:
        raise AddressNotFound(f"Address {address_id} not found.")
    return address


async def save_address(
    db: AsyncSession,
    user_id: str,
    barangay: str,
    house_number: str = "",
    city: str = "",
    province: str = "",
    region: str = "",
) -> Address:
    address = Address(
        user_id=user_id,
        house_number=house_number.strip(),
        barangay=barangay.strip(),
        city=city.strip(),
        province=province.strip(),
        region=region.strip(),
        delivery_fee=delivery_fee_for(barangay),
    )
    db.add(address)
    await db.commit()
    await db.refresh(address)
    logger.info("Saved address %s for %s (fee=%d)", address.id, user_id, address.delivery_fee)
    return address


async def delete_address(db: AsyncSession, user_id: str, address_id: str) -> None:
    await db.delete(await get_address(db, user_id, address_id))
    await db.commit()


async def resolve_delivery_address(
    db: AsyncSession,
    user_id: str,
    address_id: str | None,
    address: str | None,
    barangay: str | None,
) -> tuple[str, int]:
    """(address text, delivery fee) for a checkout, from a saved address or an in-line one."""
    if address_id:
        try:
            saved = await get_address(db, user_id, address_id)
        except AddressNotFound:
            raise AddressError("The selected address no longer exists.") from None
        return saved.full_address, saved.delivery_fee

    if not (address or "").strip():
        raise AddressError("Select an address.")
    return address.strip(), delivery_fee_for(barangay)
