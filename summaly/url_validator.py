import structlog
from urllib.parse import urlparse

logger = structlog.get_logger(__name__)

ALLOWED_SCHEMES = ('http', 'https')


def validate_url(url: str) -> dict:
    """Check that *url* is something the fetcher can request.

    Returns:
        dict: {"valid": bool, "reason": str}
    """
    if not url or not isinstance(url, str):
        logger.warning("invalid_url_format", url=url)
        return {
            "valid": False,
            "reason": "Empty or invalid URL"
        }

    parsed = urlparse(url.strip())
    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        logger.warning("invalid_url_scheme",
                       url=url,
                       scheme=parsed.scheme)
        return {
            "valid": False,
            "reason": f"Invalid scheme: {parsed.scheme}"
        }

    if not parsed.hostname:
        logger.warning("invalid_url_host", url=url)
        return {
            "valid": False,
            "reason": "Missing host"
        }

    return {
        "valid": True,
        "reason": "Valid URL"
    }
