"""
Request signer for partner APIs.

Base string = partner_id + api_path + timestamp [+ access_token + shop_id]
Signature   = HMAC-SHA256(secret, base_string), lowercase hex.

Shop-scoped endpoints append the access token and shop id; public endpoints
(token renewal) stop after the timestamp.
"""
import hashlib
import hmac
from typing import Optional, Union


def build_base_string(
    partner_id: Union[str, int],
    api_path: str,
    timestamp: int,
    access_token: Optional[str] = None,
    shop_id: Union[str, int, None] = None,
) -> str:
    if (access_token is None) != (shop_id is None):
        raise ValueError("access_token and shop_id must be given together")
    base = f"{partner_id}{api_path}{int(timestamp)}"
    if access_token is not None:
        base += f"{access_token}{shop_id}"
    return base


def sign(secret: str, base_string: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        base_string.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def sign_request(
    secret: str,
    partner_id: Union[str, int],
    api_path: str,
    timestamp: int,
    access_token: Optional[str] = None,
    shop_id: Union[str, int, None] = None,
) -> str:
    """Sign one request; see module docstring for the base string layout."""
    return sign(secret, build_base_string(partner_id, api_path, timestamp, access_token, shop_id))
