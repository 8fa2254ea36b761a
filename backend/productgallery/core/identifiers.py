from __future__ import annotations

import random
import re
from typing import List, Optional

_NON_DIGITS = re.compile(r"[^\d]")

# GS1 prefixes 200-299 are reserved for in-store numbering
IN_STORE_PREFIX = "290"


def digits_only(raw: Optional[str]) -> str:
    """
    Strip everything that is not a digit:
      - "5901-234 123457" => "5901234123457"
      - "EAN: 012345678905" => "012345678905"
    """
    if not raw:
        return ""
    return _NON_DIGITS.sub("", raw)


def identifier_variants(raw: Optional[str]) -> List[str]:
    """
    Equivalent identifiers for one raw input, in lookup order.

    - 12 digits (UPC-A): the input, then its zero-padded EAN-13 form
    - 13 digits: the input, then the 12-digit form when it starts with "0"
    - anything else: the digits as-is
    - no digits: empty list
    """
    code = digits_only(raw)
    if not code:
        return []

    variants = [code]
    if len(code) == 12:
        variants.append("0" + code)
    elif len(code) == 13 and code.startswith("0"):
        variants.append(code[1:])

    # Keep order, drop repeats
    return list(dict.fromkeys(variants))


def ean13_check_digit(twelve: str) -> str:
    """GS1 check digit: weights 1,3,1,3... over the first 12 digits, mod 10."""
    if len(twelve) != 12 or not twelve.isdigit():
        raise ValueError("EAN-13 body must be exactly 12 digits")

    total = 0
    for i, ch in enumerate(twelve):
        d = int(ch)
        total += d if i % 2 == 0 else d * 3
    return str((10 - (total % 10)) % 10)


def is_valid_ean13(raw: Optional[str]) -> bool:
    code = digits_only(raw)
    if len(code) != 13:
        return False

    return ean13_check_digit(code[:12]) == code[12]


def generate_ean13(prefix: str = IN_STORE_PREFIX, rng: Optional[random.Random] = None) -> str:
    """
    Random valid EAN-13 for products without a barcode.
    The default 290 prefix sits in the GS1 in-store range (200-299), so the
    code never collides with a registered product.
    """
    if not prefix.isdigit() or len(prefix) > 12:
        raise ValueError("prefix must be at most 12 digits")
    rng = rng or random.Random()
    body = prefix + "".join(str(rng.randrange(10)) for _ in range(12 - len(prefix)))
    return body + ean13_check_digit(body)
