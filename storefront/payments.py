"""
Currency conversion, order totals and UPI payment links.

Amounts are kept in rupees first; dollar figures are derived with the
configured exchange rate.
"""

from typing import Dict, Optional
from urllib.parse import urlencode

from .config import Config

DEFAULT_USD_TO_INR = 83.0

FREE_SHIPPING_ABOVE_INR = 4000
SHIPPING_FEE_INR = 800
GST_RATE = 0.18


def exchange_rate() -> float:
    return Config.USD_TO_INR or DEFAULT_USD_TO_INR


def usd_to_inr(amount: float, rate: Optional[float] = None) -> float:
    return round(amount * (rate or exchange_rate()), 2)


def inr_to_usd(amount: float, rate: Optional[float] = None) -> float:
    return round(amount / (rate or exchange_rate()), 2)


def format_inr(amount: Optional[float]) -> str:
    amount = amount or 0
    if float(amount).is_integer():
        return f"{int(amount):,}"
    return f"{amount:,.2f}"


def money(inr: float, rate: Optional[float] = None) -> Dict[str, float]:
    return {"inr": round(inr, 2), "usd": inr_to_usd(inr, rate)}


def order_totals(subtotal_inr: float, rate: Optional[float] = None) -> Dict[str, Dict[str, float]]:
    """Shipping is free above the threshold; GST is charged on the subtotal."""
    shipping = 0 if subtotal_inr > FREE_SHIPPING_ABOVE_INR else SHIPPING_FEE_INR
    tax = round(subtotal_inr * GST_RATE)
    total = subtotal_inr + shipping + tax
    return {
        "subtotal": money(subtotal_inr, rate),
        "shipping": money(shipping, rate),
        "tax": money(tax, rate),
        "total": money(total, rate),
    }


def build_upi_link(vpa: str, payee_name: str = "", amount: float = 0, note: str = "", ref: str = "") -> str:
    params = {
        "pa": vpa,
        "pn": payee_name or "",
        "am": format_upi_amount(amount),
        "tn": note or "",
        "cu": "INR",
        "tr": ref or "",
    }
    return f"upi://pay?{urlencode(params)}"


def format_upi_amount(amount: Optional[float]) -> str:
    amount = amount or 0
    if float(amount).is_integer():
        return str(int(amount))
    return f"{amount:.2f}"
