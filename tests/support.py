"""Seed helpers for the upstream tables used by integration tests."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

COMPANY = "company-1"
OTHER_COMPANY = "company-2"


async def seed_property(
    db: AsyncSession, property_id: str, price: int, company_id: str = COMPANY
) -> None:
    await db.execute(
        text("INSERT INTO properties (id, company_id, price) VALUES (:id, :company_id, :price)"),
        {"id": property_id, "company_id": company_id, "price": price},
    )
    await db.commit()


async def seed_sale_payment(
    db: AsyncSession,
    payment_id: str,
    property_id: str,
    amount: int,
    *,
    company_id: str = COMPANY,
    commission: int = 0,
    vat_on_commission: int = 0,
    vat_on_sale: int = 0,
    payment_type: str = "sale",
    status: str = "completed",
    is_provisional: bool = False,
    payer_id: str | None = "buyer-1",
    payment_date: str = "2026-03-01 10:00:00",
) -> None:
    await db.execute(
        text("""
            INSERT INTO payments (
                id, company_id, property_id, payer_id, payment_type, status,
                is_provisional, is_in_suspense, amount, commission_amount,
                vat_on_commission, vat_on_sale, reference_number, payment_date
            ) VALUES (
                :id, :company_id, :property_id, :payer_id, :payment_type, :status,
                :is_provisional, 0, :amount, :commission,
                :vat_on_commission, :vat_on_sale, :reference, :payment_date
            )
        """),
        {
            "id": payment_id,
            "company_id": company_id,
            "property_id": property_id,
            "payer_id": payer_id,
            "payment_type": payment_type,
            "status": status,
            "is_provisional": 1 if is_provisional else 0,
            "amount": amount,
            "commission": commission,
            "vat_on_commission": vat_on_commission,
            "vat_on_sale": vat_on_sale,
            "reference": f"REF-{payment_id}",
            "payment_date": payment_date,
        },
    )
    await db.commit()
