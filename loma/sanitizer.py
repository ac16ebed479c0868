import bleach


def sanitize_text(value: str) -> str:
    """Return *value* with any HTML stripped.

    Used on free text typed by clinicians (session notes, task titles)
    before it is sent to the API.
    """
    if not value:
        return ""
    return bleach.clean(value, tags=[], attributes={}, strip=True).strip()
