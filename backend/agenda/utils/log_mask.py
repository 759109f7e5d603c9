"""Keep participant contact details out of INFO-level logs."""


def mask_email(email: str | None) -> str:
    """Mask an email address for logging: 'user@domain.com' -> 'u***@domain.com'."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.rsplit("@", 1)
    if len(local) <= 1:
        return f"{local}***@{domain}"
    return f"{local[0]}***@{domain}"


def mask_recipient(address: str | None) -> str:
    """Mask an email or phone number, keeping only the last two phone digits."""
    if address and "@" in address:
        return mask_email(address)
    if not address or len(address) < 4:
        return "***"
    return f"***{address[-2:]}"
