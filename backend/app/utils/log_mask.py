"""Log and response masking for PII and bank details.

Keeps emails and account numbers out of INFO-level logs shipped to log
aggregators and Sentry.
"""


def mask_email(email: str | None) -> str:
    """Mask an email address for logging: 'user@domain.com' -> 'u***@domain.com'."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.rsplit("@", 1)
    if len(local) <= 1:
        return f"{local}***@{domain}"
    return f"{local[0]}***@{domain}"


def mask_account_number(account_number: str | None) -> str:
    """'001234567890' -> '****7890'."""
    if not account_number:
        return "****"
    return "****" + account_number[-4:]


def mask_bank_details(details: dict | None) -> dict | None:
    if not details:
        return details
    masked = dict(details)
    if "account_number" in masked:
        masked["account_number"] = mask_account_number(masked["account_number"])
    return masked
