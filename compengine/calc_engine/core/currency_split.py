"""
Currency conversion and booking / collection / year-end splitting.

Rates are stored as ``rate_to_usd``: USD per one unit of local currency.
Variable pay converts at the employee's fixed compensation rate; every
other payout type converts at the month's market rate.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, Optional, Tuple

from pydantic import BaseModel

from .errors import InvalidExchangeRateError, MissingExchangeRateError
from ...models.comp_schemas import (
    BOOKING_ONLY,
    HUNDRED,
    ZERO,
    EmployeeProfile,
    ExchangeRate,
    PayoutComponent,
    PayoutSplit,
    PayoutType,
    RateType,
    round_money,
)

logger = logging.getLogger(__name__)

USD = "USD"
ONE = Decimal("1")


class SplitAmounts(BaseModel):
    booking: Decimal = ZERO
    collection: Decimal = ZERO
    year_end: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.booking + self.collection + self.year_end


def usd_to_local(amount_usd: Decimal, rate_to_usd: Decimal, places: int = 2) -> Decimal:
    """
    Raises:
        InvalidExchangeRateError: if the rate is zero or negative
    """
    if rate_to_usd <= 0:
        raise InvalidExchangeRateError(rate_to_usd)
    return round_money(Decimal(amount_usd) / Decimal(rate_to_usd), places)


def local_to_usd(amount_local: Decimal, rate_to_usd: Decimal, places: int = 2) -> Decimal:
    return round_money(Decimal(amount_local) * Decimal(rate_to_usd), places)


def compensation_rate_from_ote(ote_usd: Decimal, ote_local: Decimal, currency_code: str = USD) -> Decimal:
    """Fixed compensation rate (USD per local unit) implied by the two OTE figures."""
    if currency_code == USD:
        return ONE
    if ote_local is None or Decimal(ote_local) <= 0:
        raise MissingExchangeRateError(currency_code, rate_type=RateType.COMPENSATION.value)
    return Decimal(ote_usd) / Decimal(ote_local)


class ExchangeRateTable:
    """Monthly market rates keyed by (currency, first day of month)."""

    def __init__(self, rates: Iterable[ExchangeRate] = ()):
        self._rates: Dict[Tuple[str, date], Decimal] = {}
        for rate in rates:
            self.add(rate)

    def add(self, rate: ExchangeRate) -> None:
        if rate.rate_to_usd <= 0:
            raise InvalidExchangeRateError(rate.rate_to_usd, rate.currency_code.upper())
        self._rates[(rate.currency_code.upper(), rate.month_year.replace(day=1))] = rate.rate_to_usd

    def has_rate(self, currency_code: str, month: date) -> bool:
        return currency_code.upper() == USD or (currency_code.upper(), month.replace(day=1)) in self._rates

    def market_rate(self, currency_code: str, month: date) -> Decimal:
        """
        Raises:
            MissingExchangeRateError: if no rate was loaded for the currency and month
        """
        code = currency_code.upper()
        if code == USD:
            return ONE
        try:
            return self._rates[(code, month.replace(day=1))]
        except KeyError:
            raise MissingExchangeRateError(code, month, RateType.MARKET.value) from None

    def __len__(self) -> int:
        return len(self._rates)


def split_payout(gross: Decimal, split: PayoutSplit, places: int = 2,
                 clawback_exempt: bool = False) -> SplitAmounts:
    """
    Split ``gross`` into booking, collection and year-end tranches.

    Each tranche is rounded and the rounding residue lands on the largest
    tranche, so the three always add back to the rounded gross.
    """
    if clawback_exempt:
        split = BOOKING_ONLY
    gross = round_money(gross, places)
    pcts = {
        'booking': split.booking_pct,
        'collection': split.collection_pct,
        'year_end': split.year_end_pct,
    }
    amounts = {name: round_money(gross * pct / HUNDRED, places) for name, pct in pcts.items()}
    residue = gross - sum(amounts.values(), ZERO)
    if residue:
        largest = max(pcts, key=lambda name: pcts[name])
        amounts[largest] += residue
    return SplitAmounts(**amounts)


def rate_type_for(payout_type: PayoutType) -> RateType:
    if payout_type == PayoutType.VARIABLE_PAY:
        return RateType.COMPENSATION
    return RateType.MARKET


def resolve_rate(profile: EmployeeProfile, rate_type: RateType, rates: ExchangeRateTable,
                 month: date) -> Decimal:
    if profile.local_currency.upper() == USD:
        return ONE
    if rate_type == RateType.COMPENSATION:
        if profile.compensation_rate_to_usd is None:
            raise MissingExchangeRateError(profile.local_currency, rate_type=RateType.COMPENSATION.value)
        if profile.compensation_rate_to_usd <= 0:
            raise InvalidExchangeRateError(profile.compensation_rate_to_usd, profile.local_currency,
                                           RateType.COMPENSATION.value)
        return profile.compensation_rate_to_usd
    return rates.market_rate(profile.local_currency, month)


def apply_currency_and_split(component: PayoutComponent, split: PayoutSplit, profile: EmployeeProfile,
                             rates: ExchangeRateTable, month: date, clawback_exempt: bool = False,
                             places: int = 2, rate_type: Optional[RateType] = None) -> PayoutComponent:
    """Return ``component`` with USD and local tranches filled in."""
    rate_type = rate_type or rate_type_for(component.payout_type)
    rate = resolve_rate(profile, rate_type, rates, month)

    usd = split_payout(component.gross_payout_usd, split, places, clawback_exempt)
    local_gross = usd_to_local(usd.total, rate, places)
    local = split_payout(local_gross, split, places, clawback_exempt)

    return component.model_copy(update={
        'gross_payout_usd': usd.total,
        'booking_amount_usd': usd.booking,
        'collection_amount_usd': usd.collection,
        'year_end_amount_usd': usd.year_end,
        'local_currency': profile.local_currency,
        'exchange_rate_used': rate,
        'rate_type': rate_type,
        'gross_payout_local': local.total,
        'booking_amount_local': local.booking,
        'collection_amount_local': local.collection,
        'year_end_amount_local': local.year_end,
    })
