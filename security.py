from fastapi import HTTPException, Security, Request
from fastapi.security.api_key import APIKeyHeader
from config import settings
from rate_limiter import get_client_ip
import secrets
import hashlib
from typing import Optional

api_key_header = APIKeyHeader(name=settings.api_key_name, auto_error=False)

class SecurityManager:
    def __init__(self):
        self.api_key_hash = hashlib.sha256(settings.api_key.encode()).hexdigest()

    def get_api_key(self, api_key: Optional[str] = Security(api_key_header)) -> str:
        """Validate API key"""
        if not api_key:
            raise HTTPException(
                status_code=401,
                detail="API key required",
                headers={"WWW-Authenticate": "Bearer"},
            )

        # Use constant-time comparison to prevent timing attacks
        provided_hash = hashlib.sha256(api_key.encode()).hexdigest()
        if not secrets.compare_digest(provided_hash, self.api_key_hash):
            raise HTTPException(
                status_code=403,
                detail="Invalid API key"
            )

        return api_key

    def get_client_ip(self, request: Request) -> str:
        """Client IP recorded on created jobs"""
        return get_client_ip(request)

# Global security manager instance
security_manager = SecurityManager()
