from __future__ import annotations

import re

from core.errors import ValidationFailed

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
KVK_RE = re.compile(r"^\d{8}$")
POSTAL_CODE_RE = re.compile(r"^\d{4}\s?[A-Z]{2}$")
LOONHEFFINGEN_RE = re.compile(r"^\d{9}L\d{2}$")
IBAN_RE = re.compile(r"^[A-Z]{2}\d{2}[A-Z0-9]{10,30}$")


def normalize_email(value: str) -> str:
    return (value or "").strip().lower()


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_RE.match(normalize_email(value)))


def password_problems(password: str) -> list[str]:
    problems: list[str] = []
    pw = password or ""
    if len(pw) < 8:
        problems.append("at least 8 characters")
    if not re.search(r"[A-Z]", pw):
        problems.append("an uppercase letter")
    if not re.search(r"[a-z]", pw):
        problems.append("a lowercase letter")
    if not re.search(r"\d", pw):
        problems.append("a digit")
    return problems


def ensure_password_policy(password: str) -> None:
    problems = password_problems(password)
    if problems:
        raise ValidationFailed(
            "password must contain " + ", ".join(problems), code="weak_password", details={"missing": problems}
        )


def is_valid_kvk(value: str) -> bool:
    return bool(KVK_RE.match((value or "").strip()))


def normalize_postal_code(value: str) -> str:
    """'1234ab' -> '1234 AB'."""
    s = (value or "").strip().upper()
    if POSTAL_CODE_RE.match(s):
        return f"{s[:4]} {s[-2:]}"
    return s


def is_valid_postal_code(value: str) -> bool:
    return bool(POSTAL_CODE_RE.match((value or "").strip().upper()))


def is_valid_loonheffingennummer(value: str) -> bool:
    return bool(LOONHEFFINGEN_RE.match((value or "").strip().upper()))


def is_valid_bsn(value: str) -> bool:
    """Elfproef: 9 digits, weights 9..2 and -1 on the last digit, sum divisible by 11."""
    digits = (value or "").strip()
    if len(digits) == 8:
        digits = "0" + digits
    if len(digits) != 9 or not digits.isdigit() or digits == "000000000":
        return False
    total = sum(int(d) * w for d, w in zip(digits[:8], range(9, 1, -1)))
    total -= int(digits[8])
    return total % 11 == 0


def normalize_iban(value: str) -> str:
    return "".join((value or "").split()).upper()


def is_valid_iban(value: str) -> bool:
    """Shape plus mod-97 check."""
    iban = normalize_iban(value)
    if not IBAN_RE.match(iban):
        return False
    rearranged = iban[4:] + iban[:4]
    numeric = "".join(str(int(ch, 36)) for ch in rearranged)
    return int(numeric) % 97 == 1
