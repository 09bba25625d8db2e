# services/auth.py - Bearer token verification
# ============================================================================

import logging
from typing import Optional
import jwt
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from app.models.user import User
from app.core.config import settings

logger = logging.getLogger(__name__)


class AuthService:
    """Resolves the auth provider's access tokens to local users.

    Sign-in itself happens at the provider; this service only verifies the
    token signature and expiry and looks up the user named by ``sub``.
    """

    def decode_token(self, token: str) -> Optional[dict]:
        try:
            return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        except jwt.ExpiredSignatureError:
            logger.info("Rejected expired access token")
        except jwt.PyJWTError as e:
            logger.info(f"Rejected access token: {e}")
        return None

    async def get_current_user(self, token: str, db: AsyncSession) -> Optional[User]:
        """Get current user from JWT token"""
        payload = self.decode_token(token)
        if not payload or not payload.get("sub"):
            return None
        result = await db.execute(select(User).where(User.id == str(payload["sub"])))
        return result.scalar_one_or_none()
