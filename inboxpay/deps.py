# inboxpay/deps.py
import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
from inboxpay.security import decode_token
from inboxpay.text_utils import mask

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

def get_current_user_id(creds: HTTPAuthorizationCredentials | None = Depends(security)) -> int:
    if creds is None:
        logger.info("auth missing Authorization header")
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    token = creds.credentials
    try:
        payload = decode_token(token)
    except JWTError as e:
        logger.info("auth invalid token token=%s error=%s", mask(token, keep=10), e)
        raise HTTPException(status_code=401, detail="Invalid token")
    return int(payload["uid"])
