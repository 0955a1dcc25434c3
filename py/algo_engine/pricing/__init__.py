from algo_engine.pricing.charges import ChargeBreakdown, ChargeSchedule, charge_breakdown, flat_costs, transaction_costs
from algo_engine.pricing.options import (
    OptionQuote,
    atm_strike,
    expiry_for,
    is_valid_strike,
    option_symbol,
    quote_option,
    select_strike,
    strike_increment,
    theoretical_price,
    weekly_expiry,
    years_to_expiry,
)

__all__ = [
    "ChargeBreakdown",
    "ChargeSchedule",
    "charge_breakdown",
    "flat_costs",
    "transaction_costs",
    "OptionQuote",
    "atm_strike",
    "expiry_for",
    "is_valid_strike",
    "option_symbol",
    "quote_option",
    "select_strike",
    "strike_increment",
    "theoretical_price",
    "weekly_expiry",
    "years_to_expiry",
]
