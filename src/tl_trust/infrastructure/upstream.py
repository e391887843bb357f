"""Read-only adapters over tables owned by upstream systems.

`properties` belongs to the property registry and `payments` to the
payment-intake pipeline. The trust ledger never writes to either; amounts are
stored there in cents like everywhere else.
"""

from sqlalchemy import DateTime, text
from sqlalchemy.ext.asyncio import AsyncSession

from src.tl_common.datetime_utils import ensure_utc
from src.tl_trust.domain.models import PropertyRecord, SalePayment

_PURCHASE_PRICE_SQL = text("""
    SELECT price
    FROM properties
    WHERE id = :property_id AND company_id = :company_id
""")

_PROPERTIES_SQL = text("""
    SELECT id, company_id, price
    FROM properties
    ORDER BY id
    LIMIT :limit
""")

_PROPERTIES_AFTER_SQL = text("""
    SELECT id, company_id, price
    FROM properties
    WHERE id > :after_id
    ORDER BY id
    LIMIT :limit
""")

_PAYMENT_COLUMNS = """
    id, company_id, property_id, payer_id, payment_type, status,
    amount, commission_amount, vat_on_commission, vat_on_sale,
    reference_number, payment_date
"""

_SETTLEMENT_PAYMENTS_SQL = text(f"""
    SELECT {_PAYMENT_COLUMNS}
    FROM payments
    WHERE company_id = :company_id
      AND property_id = :property_id
      AND payment_type = 'sale'
      AND status = 'completed'
      AND NOT COALESCE(is_provisional, FALSE)
      AND NOT COALESCE(is_in_suspense, FALSE)
    ORDER BY payment_date DESC, id DESC
""").columns(payment_date=DateTime(timezone=True))

_COMPANY_SALE_PAYMENTS_SQL = text(f"""
    SELECT {_PAYMENT_COLUMNS}
    FROM payments
    WHERE company_id = :company_id
      AND payment_type = 'sale'
      AND status = 'completed'
    ORDER BY payment_date, id
""").columns(payment_date=DateTime(timezone=True))

_COMPANIES_WITH_SALES_SQL = text("""
    SELECT DISTINCT company_id
    FROM payments
    WHERE payment_type = 'sale'
    ORDER BY company_id
""")

_PAYMENT_BY_ID_SQL = text(f"""
    SELECT {_PAYMENT_COLUMNS}
    FROM payments
    WHERE id = :payment_id AND company_id = :company_id
""").columns(payment_date=DateTime(timezone=True))


def _row_to_sale_payment(row: object) -> SalePayment:
    return SalePayment(
        payment_id=str(row.id),  # type: ignore[attr-defined]
        company_id=str(row.company_id),  # type: ignore[attr-defined]
        property_id=str(row.property_id),  # type: ignore[attr-defined]
        amount=int(row.amount or 0),  # type: ignore[attr-defined]
        commission=int(row.commission_amount or 0),  # type: ignore[attr-defined]
        vat_on_commission=int(row.vat_on_commission or 0),  # type: ignore[attr-defined]
        vat_on_sale=int(row.vat_on_sale or 0),  # type: ignore[attr-defined]
        payer_id=row.payer_id,  # type: ignore[attr-defined]
        reference=row.reference_number,  # type: ignore[attr-defined]
        payment_date=ensure_utc(row.payment_date),  # type: ignore[attr-defined]
        payment_type=str(row.payment_type),  # type: ignore[attr-defined]
        status=str(row.status),  # type: ignore[attr-defined]
    )


class SqlPropertyDirectory:
    async def get_purchase_price(
        self, db: AsyncSession, company_id: str, property_id: str
    ) -> int | None:
        result = await db.execute(
            _PURCHASE_PRICE_SQL, {"property_id": property_id, "company_id": company_id}
        )
        price = result.scalar_one_or_none()
        return int(price) if price is not None else None

    async def list_properties(
        self, db: AsyncSession, after_id: str | None, limit: int
    ) -> list[PropertyRecord]:
        if after_id is None:
            result = await db.execute(_PROPERTIES_SQL, {"limit": limit})
        else:
            result = await db.execute(_PROPERTIES_AFTER_SQL, {"after_id": after_id, "limit": limit})
        return [
            PropertyRecord(
                property_id=str(row.id),
                company_id=str(row.company_id),
                price=int(row.price) if row.price is not None else None,
            )
            for row in result.fetchall()
        ]


class SqlSalePaymentSource:
    async def find_completed_sale_payments(
        self, db: AsyncSession, company_id: str, property_id: str
    ) -> list[SalePayment]:
        result = await db.execute(
            _SETTLEMENT_PAYMENTS_SQL, {"company_id": company_id, "property_id": property_id}
        )
        return [_row_to_sale_payment(r) for r in result.fetchall()]

    async def list_completed_sale_payments(
        self, db: AsyncSession, company_id: str
    ) -> list[SalePayment]:
        result = await db.execute(_COMPANY_SALE_PAYMENTS_SQL, {"company_id": company_id})
        return [_row_to_sale_payment(r) for r in result.fetchall()]

    async def list_companies_with_sale_payments(self, db: AsyncSession) -> list[str]:
        result = await db.execute(_COMPANIES_WITH_SALES_SQL)
        return [str(company_id) for company_id in result.scalars().all()]

    async def get_payment(
        self, db: AsyncSession, company_id: str, payment_id: str
    ) -> SalePayment | None:
        result = await db.execute(
            _PAYMENT_BY_ID_SQL, {"payment_id": payment_id, "company_id": company_id}
        )
        row = result.fetchone()
        return _row_to_sale_payment(row) if row is not None else None
