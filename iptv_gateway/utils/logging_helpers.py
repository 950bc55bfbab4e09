"""
Logging helpers for values that must not appear verbatim in logs.
"""
import logging


def mask_signature(signature: str | None) -> str:
    """
    Mask an upstream signature for logging.

    Long tokens keep 8 characters at each end; short ones keep only the
    last 4.
    """
    if not signature:
        return ""
    if len(signature) <= 16:
        return "*" * max(0, len(signature) - 4) + signature[-4:]
    return f"{signature[:8]}{'*' * (len(signature) - 16)}{signature[-8:]}"


def signature_preview(signature: str | None, full: bool = False) -> str:
    if full:
        return signature or ""
    return mask_signature(signature)


def sanitize_url_for_logging(url: str) -> str:
    """Remove credentials from URL for safe logging."""
    if "://" not in url:
        return url
    try:
        protocol, rest = url.split("://", 1)
        if "@" in rest:
            rest = rest.split("@", 1)[1]
            return f"{protocol}://***:***@{rest}"
        return url
    except (ValueError, IndexError):
        return url


def log_refresh_summary(logger: logging.Logger, section: str, result: dict) -> None:
    """Log the outcome of a refresh cycle from its status dict."""
    status = result.get("status", "unknown")
    if status == "success":
        logger.info(f"Completed: {section} ({result})")
    elif status == "skipped":
        logger.info(f"Skipped: {section} ({result.get('message', '')})")
    else:
        logger.warning(f"Failed: {section} ({result.get('error', result)})")
