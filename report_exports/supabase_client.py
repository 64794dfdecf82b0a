import logging
import os
from typing import Optional

from dotenv import load_dotenv
from jose import JWTError, jwt
from supabase import Client, create_client

load_dotenv()

logger = logging.getLogger(__name__)

_client: Optional[Client] = None


def get_supabase() -> Optional[Client]:
    """Get the Supabase client, creating it on first use. None when not configured."""
    global _client
    if _client is not None:
        return _client

    url = os.environ.get("SUPABASE_URL")
    # Service role key for backend access, anon key as a fallback
    key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or os.environ.get("SUPABASE_ANON_KEY")
    if not url:
        logger.warning("SUPABASE_URL not set. Supabase persistence is disabled.")
        return None
    if not key:
        logger.warning("No Supabase key found. Supabase persistence is disabled.")
        return None

    _client = create_client(url, key)
    return _client


def verify_token(token: str) -> Optional[dict]:
    """
    Decode a bearer token and return its claims.

    When SUPABASE_JWT_SECRET is set the signature is verified; otherwise the
    claims are read unverified, which is only suitable for local development.
    Returns None if the token cannot be decoded.
    """
    if not token:
        return None

    secret = os.environ.get("SUPABASE_JWT_SECRET")
    try:
        if secret:
            return jwt.decode(token, secret, algorithms=["HS256"], options={"verify_aud": False})
        return jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.warning(f"JWT decode error: {e}")
        return None
