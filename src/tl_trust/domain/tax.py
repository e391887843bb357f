"""Settlement tax engine — CGT, VAT on sale, commission and VAT on commission.

Pure functions over int cents and basis-point rates; the application service
feeds it the completed sale payments for a property plus any operator overrides.
"""

from dataclasses import dataclass, field, replace
from typing import Any

from src.tl_common.enums import DeductionType, TaxType, TrustTransactionType
from src.tl_common.errors import NoSalePaymentsError
from src.tl_common.money import apply_rate_bps
from src.tl_trust.domain.models import Deduction, SalePayment, TrustSettlement

# Ledger transaction type posted for each deduction line
DEDUCTION_TRANSACTION_TYPES: dict[str, TrustTransactionType] = {
    DeductionType.CGT.value: TrustTransactionType.CGT_DEDUCTION,
    DeductionType.COMMISSION.value: TrustTransactionType.COMMISSION_DEDUCTION,
    DeductionType.VAT_ON_COMMISSION.value: TrustTransactionType.VAT_ON_COMMISSION,
    DeductionType.VAT.value: TrustTransactionType.VAT_DEDUCTION,
}

# Deduction lines that are owed to the tax authority (get a TaxRecord)
TAX_DEDUCTIONS: dict[str, TaxType] = {
    DeductionType.CGT.value: TaxType.CGT,
    DeductionType.VAT.value: TaxType.VAT,
    DeductionType.VAT_ON_COMMISSION.value: TaxType.VAT_ON_COMMISSION,
}


@dataclass(frozen=True)
class TaxRates:
    cgt_rate_bps: int = 2000
    vat_sale_rate_bps: int = 1500
    vat_on_commission_rate_bps: int = 1550
    apply_vat_on_sale: bool = False

    @classmethod
    def from_settings(cls, settings: Any) -> "TaxRates":
        return cls(
            cgt_rate_bps=settings.CGT_RATE_BPS,
            vat_sale_rate_bps=settings.VAT_SALE_RATE_BPS,
            vat_on_commission_rate_bps=settings.VAT_ON_COMMISSION_RATE_BPS,
            apply_vat_on_sale=settings.APPLY_VAT_ON_SALE,
        )


@dataclass(frozen=True)
class SettlementOverrides:
    """Operator-supplied values. Payment data wins wherever it carries a value."""
    sale_price: int | None = None
    commission_amount: int | None = None
    cgt_amount: int | None = None
    apply_vat_on_sale: bool | None = None
    cgt_rate_bps: int | None = None
    vat_sale_rate_bps: int | None = None
    vat_on_commission_rate_bps: int | None = None


@dataclass
class SettlementFigures:
    sale_price: int
    commission: int
    cgt: int
    vat_on_sale: int
    vat_on_commission: int
    rates: TaxRates
    sources: dict[str, str] = field(default_factory=dict)

    @property
    def total_deductions(self) -> int:
        return self.cgt + self.commission + self.vat_on_commission + self.vat_on_sale

    @property
    def net_payout(self) -> int:
        return max(0, self.sale_price - self.total_deductions)

    def deductions(self) -> list[Deduction]:
        lines = [
            Deduction(DeductionType.CGT.value, self.cgt),
            Deduction(DeductionType.COMMISSION.value, self.commission),
            Deduction(DeductionType.VAT_ON_COMMISSION.value, self.vat_on_commission),
            Deduction(DeductionType.VAT.value, self.vat_on_sale),
        ]
        return [d for d in lines if d.amount > 0]


@dataclass
class SettlementCalculation:
    settlement: TrustSettlement
    figures: SettlementFigures


def resolve_rates(base: TaxRates, overrides: SettlementOverrides) -> TaxRates:
    return replace(
        base,
        cgt_rate_bps=_pick(overrides.cgt_rate_bps, base.cgt_rate_bps),
        vat_sale_rate_bps=_pick(overrides.vat_sale_rate_bps, base.vat_sale_rate_bps),
        vat_on_commission_rate_bps=_pick(
            overrides.vat_on_commission_rate_bps, base.vat_on_commission_rate_bps
        ),
        apply_vat_on_sale=_pick(overrides.apply_vat_on_sale, base.apply_vat_on_sale),
    )


def compute_settlement(
    property_id: str,
    payments: list[SalePayment],
    rates: TaxRates,
    overrides: SettlementOverrides | None = None,
) -> SettlementFigures:
    """Derive settlement figures from completed sale payments.

    Sale price and commission come from the payments when they carry a value;
    overrides only fill the gaps. Without payments an override sale price is
    required, otherwise NoSalePaymentsError.
    """
    overrides = overrides or SettlementOverrides()
    rates = resolve_rates(rates, overrides)
    sources: dict[str, str] = {}

    derived_sale = sum(p.amount for p in payments)
    if payments:
        sale_price = derived_sale
        sources["sale_price"] = "payments.sum(amount)"
    elif overrides.sale_price is not None:
        sale_price = overrides.sale_price
        sources["sale_price"] = "override"
    else:
        raise NoSalePaymentsError(property_id)

    derived_commission = sum(p.commission for p in payments)
    if derived_commission > 0:
        commission = derived_commission
        sources["commission"] = "payments.sum(commission)"
    else:
        commission = max(0, overrides.commission_amount or 0)
        sources["commission"] = "override" if commission else "none"

    if overrides.cgt_amount is not None:
        cgt = max(0, overrides.cgt_amount)
        sources["cgt"] = "override"
    else:
        cgt = apply_rate_bps(sale_price, rates.cgt_rate_bps)
        sources["cgt"] = "tax-engine"

    derived_vat_on_sale = sum(p.vat_on_sale for p in payments)
    if derived_vat_on_sale > 0:
        vat_on_sale = derived_vat_on_sale
        sources["vat_on_sale"] = "payments.sum(vat_on_sale)"
    elif rates.apply_vat_on_sale:
        vat_on_sale = apply_rate_bps(sale_price, rates.vat_sale_rate_bps)
        sources["vat_on_sale"] = "tax-engine"
    else:
        vat_on_sale = 0
        sources["vat_on_sale"] = "not-applied"

    derived_vat_on_commission = sum(p.vat_on_commission for p in payments)
    if derived_vat_on_commission > 0:
        vat_on_commission = derived_vat_on_commission
        sources["vat_on_commission"] = "payments.sum(vat_on_commission)"
    else:
        vat_on_commission = apply_rate_bps(commission, rates.vat_on_commission_rate_bps)
        sources["vat_on_commission"] = "tax-engine"

    return SettlementFigures(
        sale_price=sale_price,
        commission=commission,
        cgt=cgt,
        vat_on_sale=vat_on_sale,
        vat_on_commission=vat_on_commission,
        rates=rates,
        sources=sources,
    )


def applied_by_deduction(transactions: list[Any]) -> dict[str, int]:
    """Sum debits already posted per deduction line (rows tagged with one settlement)."""
    by_tx_type = {tx_type.value: d for d, tx_type in DEDUCTION_TRANSACTION_TYPES.items()}
    applied: dict[str, int] = {}
    for tx in transactions:
        deduction = by_tx_type.get(tx.type)
        if deduction is None:
            continue
        applied[deduction] = applied.get(deduction, 0) + tx.debit
    return applied


def _pick(value: Any, default: Any) -> Any:
    return default if value is None else value
