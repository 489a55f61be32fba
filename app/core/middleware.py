from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.core.exceptions import UnauthenticatedError
from app.core.firebase import verify_firebase_token
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> dict:
    """
    Dependency to get current authenticated user from Firebase token.
    Protects routes that require authentication.
    """
    logger.info("get_current_user: Entry")

    try:
        decoded_token = verify_firebase_token(credentials.credentials)
    except UnauthenticatedError as e:
        logger.error(f"get_current_user: Failure - {e.message}")
        raise HTTPException(
            status_code=e.status_code,
            detail=e.to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = decoded_token['uid']
    logger.info(f"get_current_user: Success - {user_id}")
    return {
        'uid': user_id,
        'email': decoded_token.get('email'),
        'token': decoded_token
    }
