from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.errors import EmptyCartError, PreconditionFailedError
from app.models.cart import Cart, CartItem
from app.services import pricing


@dataclass(frozen=True)
class CartLine:
    product_id: UUID
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return pricing.line_total(self.unit_price, self.quantity)


@dataclass(frozen=True)
class CartSnapshot:
    cart_id: UUID
    lines: tuple[CartLine, ...]

    @property
    def total(self) -> Decimal:
        return pricing.quantize_money(sum((line.subtotal for line in self.lines), start=Decimal("0.00")))


async def get_cart(session: AsyncSession, user_id: UUID) -> Cart | None:
    result = await session.execute(
        select(Cart).options(selectinload(Cart.items).selectinload(CartItem.product)).where(Cart.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def read_snapshot(session: AsyncSession, user_id: UUID) -> CartSnapshot:
    """Return the user's cart priced from the catalog; the client never supplies prices."""
    cart = await get_cart(session, user_id)
    if cart is None or not cart.items:
        raise EmptyCartError()

    lines: list[CartLine] = []
    for item in cart.items:
        product = item.product
        if product is None or not product.is_active:
            raise PreconditionFailedError(f"Product {item.product_id} is no longer available")
        if int(item.quantity or 0) < 1:
            raise PreconditionFailedError(f"Invalid quantity for product {item.product_id}")
        lines.append(
            CartLine(
                product_id=product.id,
                quantity=int(item.quantity),
                unit_price=pricing.quantize_money(product.price),
            )
        )
    return CartSnapshot(cart_id=cart.id, lines=tuple(lines))


async def clear_cart(session: AsyncSession, cart_id: UUID) -> None:
    """Stage removal of every cart line; the caller owns the commit."""
    await session.execute(delete(CartItem).where(CartItem.cart_id == cart_id))
