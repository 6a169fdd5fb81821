from datetime import datetime, timedelta, timezone
import logging
from jose import jwt
from cryptography.fernet import Fernet
from inboxpay.config import settings

logger = logging.getLogger(__name__)

def create_access_token(*, subject: str, user_id: int) -> str:
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=settings.JWT_EXPIRES_MINUTES)
    payload = {
        "sub": subject,
        "uid": user_id,
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")

def decode_token(token: str) -> dict:
    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=["HS256"],
        audience=settings.JWT_AUDIENCE,
        issuer=settings.JWT_ISSUER,
    )

class TokenCipher:
    def __init__(self, key: str | None = None):
        key = key if key is not None else settings.TOKEN_ENCRYPTION_KEY
        if not key:
            logger.warning("TOKEN_ENCRYPTION_KEY not set; using an ephemeral key (stored refresh tokens will not survive a restart)")
            key = Fernet.generate_key().decode("utf-8")
        self.fernet = Fernet(key.encode("utf-8"))
    def encrypt(self, plaintext: str) -> str:
        return self.fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    def decrypt(self, ciphertext: str) -> str:
        return self.fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")

token_cipher = TokenCipher()
