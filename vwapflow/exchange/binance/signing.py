import hashlib
import hmac
from urllib.parse import urlencode


def signed_query(secret: str, params: dict) -> str:
    """
    URL-encoded query with an HMAC-SHA256 `signature` appended last.
    Binance signs the exact string it receives, so the order here is the order sent.
    """
    query = urlencode(params, doseq=True)
    digest = hmac.new(secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256)
    return f"{query}&signature={digest.hexdigest()}"
