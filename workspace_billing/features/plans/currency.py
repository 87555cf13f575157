"""Static country -> currency lookup. No conversion."""

EURO_COUNTRIES = frozenset({
    "EU", "DE", "FR", "ES", "IT", "NL", "BE", "AT", "IE", "PT", "FI", "GR", "LU",
})

_COUNTRY_CURRENCY = {
    "US": "USD",
    "IN": "INR",
    "GB": "GBP",
}

CURRENCY_SYMBOLS = {
    "USD": "$",
    "INR": "₹",
    "GBP": "£",
    "EUR": "€",
}

DEFAULT_CURRENCY = "USD"


def currency_for_country(country_code: str) -> str:
    code = (country_code or "").upper()
    if code in EURO_COUNTRIES:
        return "EUR"
    return _COUNTRY_CURRENCY.get(code, DEFAULT_CURRENCY)


def currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get((currency or "").upper(), "$")


def format_price(amount: float, currency: str) -> str:
    return f"{currency_symbol(currency)}{amount:,.2f}"
