from decimal import Decimal

# ISO 4217 code -> number of minor-unit digits
MINOR_UNITS = {
    "aed": 2, "aud": 2, "bhd": 3, "brl": 2, "cad": 2, "chf": 2, "clp": 0,
    "cny": 2, "czk": 2, "dkk": 2, "egp": 2, "etb": 2, "eur": 2, "gbp": 2,
    "ghs": 2, "hkd": 2, "huf": 2, "idr": 2, "ils": 2, "inr": 2, "isk": 0,
    "jod": 3, "jpy": 0, "kes": 2, "krw": 0, "kwd": 3, "mad": 2, "mxn": 2,
    "myr": 2, "ngn": 2, "nok": 2, "nzd": 2, "omr": 3, "php": 2, "pln": 2,
    "qar": 2, "rub": 2, "rwf": 0, "sar": 2, "sek": 2, "sgd": 2, "thb": 2,
    "try": 2, "twd": 2, "tzs": 2, "uah": 2, "ugx": 0, "usd": 2, "vnd": 0,
    "xaf": 0, "xof": 0, "zar": 2, "zmw": 2,
}


def normalize_currency(code) -> str | None:
    """Lowercased code if recognized, else None."""
    if not isinstance(code, str):
        return None
    code = code.strip().lower()
    return code if code in MINOR_UNITS else None


def to_major_units(amount: int, currency: str) -> str:
    """10050 usd -> "100.50", 500 jpy -> "500"."""
    exponent = MINOR_UNITS[currency.lower()]
    value = Decimal(amount).scaleb(-exponent)
    return f"{value:.{exponent}f}"
