import hashlib


def mask_payee(payee: str) -> str:
    """Return a stable pseudonym for a payee name, safe to write to logs."""
    digest = hashlib.sha256(payee.encode()).hexdigest()[:8].upper()
    return f"PAYEE#{digest}"
