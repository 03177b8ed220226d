import argparse
import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from pydantic import ValidationError

from app.core.config import settings
from app.core.errors import LifecycleError
from app.core.logging_config import configure_logging
from app.db.session import SessionLocal
from app.models.coupon import DiscountType
from app.schemas.coupon import CouponCreate
from app.services import coupons as coupons_service
from app.services import payments as payments_service
from app.services.gateways import PaymentMethod


def _parse_uuid(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID((raw or "").strip())
    except ValueError:
        raise SystemExit(f"Invalid id: {raw}")


def _parse_amount(raw: str | None) -> Decimal | None:
    if raw is None:
        return None
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise SystemExit(f"Invalid amount: {raw}")


async def reconcile_payment(*, order_id: uuid.UUID, method: str, reference: str) -> None:
    async with SessionLocal() as session:
        try:
            order = await payments_service.confirm_payment(
                session, order_id=order_id, reference=reference, method=method, user=None
            )
        except LifecycleError as exc:
            raise SystemExit(f"Reconciliation failed ({exc.code}): {exc.detail}")
    print(f"Order {order.id}: payment_status={order.payment_status.value} order_status={order.order_status.value}")


async def create_coupon(
    *,
    code: str,
    discount_type: str,
    discount_value: Decimal,
    min_purchase_amount: Decimal | None,
    max_discount_amount: Decimal | None,
    usage_limit: int | None,
    days: int,
) -> None:
    now = datetime.now(timezone.utc)
    try:
        payload = CouponCreate(
            code=code,
            discount_type=DiscountType(discount_type),
            discount_value=discount_value,
            min_purchase_amount=min_purchase_amount or Decimal("0.00"),
            max_discount_amount=max_discount_amount,
            usage_limit=usage_limit,
            valid_from=now,
            valid_until=now + timedelta(days=days),
        )
    except ValidationError as exc:
        raise SystemExit(f"Invalid coupon: {exc}")
    async with SessionLocal() as session:
        try:
            coupon = await coupons_service.create_coupon(session, payload)
        except LifecycleError as exc:
            raise SystemExit(f"Coupon not created: {exc.detail}")
    print(f"Coupon {coupon.code} created, valid until {coupon.valid_until.isoformat()}")


def _add_payment_commands(subparsers) -> None:
    reconcile = subparsers.add_parser(
        "reconcile-payment", help="Ask the gateway for a payment outcome and apply it to an order"
    )
    reconcile.add_argument("--order-id", required=True, help="Order id")
    reconcile.add_argument(
        "--payment-method", required=True, choices=[m.value for m in PaymentMethod], help="Gateway that took the payment"
    )
    reconcile.add_argument("--reference", required=True, help="Gateway payment reference (intent or payment id)")


def _add_coupon_commands(subparsers) -> None:
    coupon = subparsers.add_parser("create-coupon", help="Create a discount coupon")
    coupon.add_argument("--code", required=True)
    coupon.add_argument("--type", dest="discount_type", required=True, choices=[t.value for t in DiscountType])
    coupon.add_argument("--value", dest="discount_value", required=True)
    coupon.add_argument("--min-purchase", dest="min_purchase_amount")
    coupon.add_argument("--max-discount", dest="max_discount_amount")
    coupon.add_argument("--usage-limit", type=int)
    coupon.add_argument("--days", type=int, default=30, help="Validity window from now, in days")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=f"{settings.app_name} operator utilities")
    subparsers = parser.add_subparsers(dest="command")
    _add_payment_commands(subparsers)
    _add_coupon_commands(subparsers)
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "reconcile-payment":
        asyncio.run(
            reconcile_payment(
                order_id=_parse_uuid(args.order_id),
                method=args.payment_method,
                reference=args.reference,
            )
        )
        return True

    if args.command == "create-coupon":
        value = _parse_amount(args.discount_value)
        asyncio.run(
            create_coupon(
                code=args.code,
                discount_type=args.discount_type,
                discount_value=value if value is not None else Decimal("0"),
                min_purchase_amount=_parse_amount(args.min_purchase_amount),
                max_discount_amount=_parse_amount(args.max_discount_amount),
                usage_limit=args.usage_limit,
                days=args.days,
            )
        )
        return True

    return False


def main(argv: list[str] | None = None):
    configure_logging(settings.log_json)
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
