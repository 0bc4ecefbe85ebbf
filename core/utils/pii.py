from __future__ import annotations

import os
from typing import List

from cryptography.fernet import Fernet, InvalidToken


def _get_fernets() -> List[Fernet]:
    """Fernet instances from PII_ENC_KEYS (comma-separated) or PII_ENC_KEY.

    First item is used for encryption; all are tried for decryption.
    """
    keys_raw = (os.environ.get("PII_ENC_KEYS") or "").strip()
    if not keys_raw:
        single = (os.environ.get("PII_ENC_KEY") or "").strip()
        keys = [single] if single else []
    else:
        keys = [k.strip() for k in keys_raw.split(",") if k.strip()]
    out: List[Fernet] = []
    for k in keys:
        try:
            out.append(Fernet(k))
        except ValueError:
            continue
    return out


def mask_bsn(bsn: str) -> str:
    digits = "".join(c for c in (bsn or "") if c.isdigit())
    if len(digits) >= 4:
        return f"*****{digits[-4:]}"
    return ""


def encrypt_bsn(value: str) -> str:
    """Encrypt a BSN when a key is configured; otherwise keep only the masked form.

    Stored format: 'enc:<token>' to distinguish from masked values.
    """
    s = (value or "").strip()
    if not s:
        return ""
    f_list = _get_fernets()
    if not f_list:
        return mask_bsn(s)
    tok = f_list[0].encrypt(s.encode("utf-8")).decode("utf-8")
    return f"enc:{tok}"


def decrypt_bsn(value: str) -> str:
    """Clear BSN for an encrypted value; '' when it cannot be decrypted."""
    s = (value or "").strip()
    if not s:
        return ""
    if not s.startswith("enc:"):
        return s
    tok = s[4:].encode("utf-8")
    for f in _get_fernets():
        try:
            return f.decrypt(tok).decode("utf-8")
        except InvalidToken:
            continue
    return ""


def display_bsn(stored: str) -> str:
    """Masked form for API responses, whatever the storage format."""
    s = (stored or "").strip()
    if s.startswith("enc:"):
        return mask_bsn(decrypt_bsn(s)) or "*********"
    return s if s.startswith("*") else mask_bsn(s)
