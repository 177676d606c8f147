import re

from reconciler.errors import InvalidInput

DEFAULT_COUNTRY_CODE = "254"

_re_separators = re.compile(r"[\s\-().]")


def normalize_phone(raw: str, default_country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Приводит номер к виду E.164: "+2547XXXXXXXX".

    0712 345 678, 254712345678, +254-712-345-678 -> +254712345678
    """
    if raw is None:
        raise InvalidInput("phone number is missing")

    value = _re_separators.sub("", str(raw).strip())
    if value.startswith("00"):
        value = "+" + value[2:]

    if value.startswith("+"):
        digits = value[1:]
    elif value.startswith(default_country_code) and len(value) > 10:
        digits = value
    elif value.startswith("0"):
        digits = default_country_code + value[1:]
    elif len(value) == 9:
        # 712345678: национальный номер без ведущего нуля
        digits = default_country_code + value
    else:
        digits = value

    if not digits.isdigit() or not 8 <= len(digits) <= 15:
        raise InvalidInput(f"not a phone number: {raw!r}")
    return "+" + digits
